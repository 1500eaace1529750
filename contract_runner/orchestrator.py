from __future__ import annotations

import asyncio
import shutil
from contextlib import aclosing
from pathlib import Path

from contract_runner import config, toolchain
from contract_runner.diagnostics import extract_errors
from contract_runner.errors import (
    CompilationError,
    CompileTimeoutError,
    JobCancelledError,
    JobFailure,
    LaunchError,
    SetupError,
)
from contract_runner.logging_config import get_logger
from contract_runner.models import CompileRequest, JobRecord, JobStatus, LogChannel
from contract_runner.runner import (
    LaunchFailed,
    OutputChunk,
    ProcessExited,
    ProcessRunner,
)
from contract_runner.settings import Settings, get_settings
from contract_runner.storage import JobStore

logger = get_logger(__name__)


class JobOrchestrator:
    """Drives each submitted job from queued to a terminal state.

    One asyncio task per job; an ``asyncio.Semaphore`` bounds how many
    compilations run at once. Jobs waiting for a slot stay ``queued``.
    """

    def __init__(
        self,
        store: JobStore,
        runner: ProcessRunner | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.runner = runner or ProcessRunner()
        self._slots = asyncio.Semaphore(max(1, self.settings.max_concurrent_jobs))
        self._active: dict[str, asyncio.Task[None]] = {}

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def submit(self, request: CompileRequest) -> JobRecord:
        """Create the job and schedule it; returns while it is still queued."""
        record = await self.store.create(request.subject_name, request.payload)
        task = asyncio.create_task(self._run(record.id), name=f"compile-{record.id}")
        self._active[record.id] = task
        task.add_done_callback(lambda _task: self._active.pop(record.id, None))
        logger.info("job.submitted", job_id=record.id, subject=record.subject_name)
        return record

    async def cancel(self, job_id: str) -> bool:
        await self.store.get(job_id)
        task = self._active.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait({task})
        # A task cancelled before its first step never reaches _run's handlers.
        await self._fail(job_id, JobCancelledError())
        return True

    async def join(self, job_id: str) -> None:
        task = self._active.get(job_id)
        if task is not None:
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        active = dict(self._active)
        for task in active.values():
            task.cancel()
        await asyncio.gather(*active.values(), return_exceptions=True)
        # A task cancelled while recording its own failure leaves it running.
        for job_id in active:
            await self._fail(job_id, JobCancelledError())

    def workspace(self, job_id: str) -> Path:
        return config.data_dir(self.settings) / job_id

    async def _run(self, job_id: str) -> None:
        log = logger.bind(job_id=job_id)
        workdir: Path | None = None
        try:
            async with self._slots:
                record = await self.store.mark_running(job_id)
                log.info("job.started")
                await self._info(job_id, f"[runner] starting job {job_id}\n")
                workdir = self._prepare_workspace(record)
                exit_code = await self._compile(record, workdir)
        except JobFailure as exc:
            await self._fail(job_id, exc)
            log.info("job.failed", error=exc.message, exit_code=exc.exit_code)
        except asyncio.CancelledError:
            await self._fail(job_id, JobCancelledError())
            log.info("job.cancelled")
            raise
        except Exception as exc:
            log.exception("job.crashed")
            await self._fail(job_id, JobFailure(f"internal error: {exc}"))
        else:
            await self.store.append_log(
                job_id,
                LogChannel.success,
                f"Contract {record.subject_name} compiled successfully\n",
            )
            await self.store.mark_completed(job_id, exit_code)
            log.info("job.completed")
        finally:
            if workdir is not None:
                shutil.rmtree(workdir, ignore_errors=True)

    def _prepare_workspace(self, record: JobRecord) -> Path:
        workdir: Path | None = None
        try:
            workdir = self.workspace(record.id)
            workdir.mkdir(exist_ok=False)
            (workdir / "lib.rs").write_text(record.payload, encoding="utf-8")
            (workdir / "Cargo.toml").write_text(
                toolchain.render_manifest(self.settings, record.subject_name),
                encoding="utf-8",
            )
        except OSError as exc:
            if workdir is not None:
                shutil.rmtree(workdir, ignore_errors=True)
            raise SetupError(f"failed to prepare workspace: {exc}") from exc
        return workdir

    async def _compile(self, record: JobRecord, workdir: Path) -> int:
        timeout = float(self.settings.compile_timeout_sec)
        events = self.runner.run(
            toolchain.build_command(self.settings),
            cwd=workdir,
            env=toolchain.build_env(self.settings, workdir, {"JOB_ID": record.id}),
            timeout=timeout,
        )
        async with aclosing(events):
            async for event in events:
                if isinstance(event, OutputChunk):
                    await self.store.append_log(
                        record.id, LogChannel(event.channel), event.text
                    )
                elif isinstance(event, LaunchFailed):
                    raise LaunchError(event.error)
                elif isinstance(event, ProcessExited):
                    if event.timed_out:
                        raise CompileTimeoutError(timeout, event.exit_code)
                    if event.exit_code != 0:
                        raise CompilationError(event.exit_code)
                    return event.exit_code
        raise LaunchError("process ended without reporting an exit code")

    async def _fail(self, job_id: str, failure: JobFailure) -> None:
        record = await self.store.get(job_id)
        if record.status.is_terminal:
            return
        if record.status is JobStatus.queued:
            # Never dispatched; keep the queued -> running -> failed sequence.
            await self.store.mark_running(job_id)
        errors = extract_errors((await self.store.get_logs(job_id)).stderr)
        await self.store.append_log(job_id, LogChannel.error, f"{failure.message}\n")
        await self.store.mark_failed(
            job_id, failure.message, exit_code=failure.exit_code, errors=errors
        )

    async def _info(self, job_id: str, text: str) -> None:
        await self.store.append_log(job_id, LogChannel.info, text)
