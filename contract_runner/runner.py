from __future__ import annotations

import asyncio
import codecs
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from contract_runner.logging_config import get_logger

logger = get_logger(__name__)

READ_CHUNK = 64 * 1024

Stream = Literal["stdout", "stderr"]


@dataclass(slots=True)
class OutputChunk:
    """Text read from the child's stdout or stderr.

    Usually one line with its newline; a trailing partial line is sent as
    soon as it is read rather than held back until the newline arrives.
    """

    channel: Stream
    text: str


@dataclass(slots=True)
class ProcessExited:
    exit_code: int
    timed_out: bool = False


@dataclass(slots=True)
class LaunchFailed:
    error: str


ProcessEvent = OutputChunk | ProcessExited | LaunchFailed


@dataclass(slots=True)
class ProcessResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    launch_error: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class ProcessRunner:
    """Spawn external commands and stream their output as typed events."""

    def __init__(self, default_timeout: float | None = None) -> None:
        self.default_timeout = default_timeout

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> AsyncIterator[ProcessEvent]:
        """Yield output chunks as produced, then one terminal event.

        The child sees exactly ``env``. Closing the generator early or
        cancelling the consuming task kills the child.
        """
        timeout = timeout if timeout is not None else self.default_timeout
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=str(cwd),
                env=dict(env),
            )
        except OSError as exc:
            logger.warning(
                "process.launch_failed", command=command[0], error=str(exc)
            )
            yield LaunchFailed(error=f"failed to start {command[0]}: {exc}")
            return

        logger.debug("process.started", command=list(command), pid=process.pid)
        queue: asyncio.Queue[OutputChunk | None] = asyncio.Queue()
        assert process.stdout is not None and process.stderr is not None
        readers = [
            asyncio.create_task(_drain(process.stdout, "stdout", queue)),
            asyncio.create_task(_drain(process.stderr, "stderr", queue)),
        ]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        open_streams = len(readers)

        try:
            while open_streams:
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    raise asyncio.TimeoutError
                chunk = await asyncio.wait_for(queue.get(), timeout=remaining)
                if chunk is None:
                    open_streams -= 1
                    continue
                yield chunk

            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            exit_code = await asyncio.wait_for(process.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            await _kill(process)
            logger.warning("process.timeout", pid=process.pid, timeout=timeout)
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            for chunk in _pending(queue):
                yield chunk
            yield ProcessExited(exit_code=process.returncode or -9, timed_out=True)
            return
        finally:
            await _kill(process)
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

        logger.debug("process.exited", pid=process.pid, exit_code=exit_code)
        yield ProcessExited(exit_code=exit_code)

    async def collect(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> ProcessResult:
        """Run to completion and return buffered output."""
        stdout: list[str] = []
        stderr: list[str] = []
        result = ProcessResult(exit_code=None)
        events = self.run(command, cwd=cwd, env=env, timeout=timeout)
        async with aclosing(events):
            async for event in events:
                if isinstance(event, OutputChunk):
                    (stdout if event.channel == "stdout" else stderr).append(event.text)
                elif isinstance(event, ProcessExited):
                    result.exit_code = event.exit_code
                    result.timed_out = event.timed_out
                else:
                    result.launch_error = event.error
        result.stdout = "".join(stdout)
        result.stderr = "".join(stderr)
        return result


async def _drain(
    pipe: asyncio.StreamReader,
    channel: Stream,
    queue: asyncio.Queue[OutputChunk | None],
) -> None:
    # Holds back at most an incomplete multi-byte character between reads.
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            data = await pipe.read(READ_CHUNK)
            if not data:
                break
            _put_lines(queue, channel, decoder.decode(data))
    finally:
        _put_lines(queue, channel, decoder.decode(b"", final=True))
        queue.put_nowait(None)


def _put_lines(
    queue: asyncio.Queue[OutputChunk | None], channel: Stream, text: str
) -> None:
    lines = text.split("\n")
    for line in lines[:-1]:
        queue.put_nowait(OutputChunk(channel, line + "\n"))
    if lines[-1]:
        queue.put_nowait(OutputChunk(channel, lines[-1]))


def _pending(queue: asyncio.Queue[OutputChunk | None]) -> list[OutputChunk]:
    chunks = []
    while not queue.empty():
        chunk = queue.get_nowait()
        if chunk is not None:
            chunks.append(chunk)
    return chunks


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()
