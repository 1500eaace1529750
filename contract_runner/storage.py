from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from contract_runner.errors import JobNotFoundError, JobStateError
from contract_runner.models import (
    OUTPUT_CHANNELS,
    CompileError,
    JobLogs,
    JobRecord,
    JobStatus,
    LogChannel,
    LogEntry,
)

TRUNCATION_NOTICE = "[runner] output limit reached, further output is not retained\n"

_ALLOWED_TRANSITIONS = {
    JobStatus.queued: {JobStatus.queued, JobStatus.running},
    JobStatus.running: {JobStatus.running, JobStatus.completed, JobStatus.failed},
}


class JobStore(ABC):
    """Job records plus their append-only logs.

    Each job is written only by its own orchestration task. Implementations
    guard their id maps; they also notify live subscribers on every append
    and when a job reaches a terminal state.
    """

    def __init__(self, max_retained_bytes: int | None = None) -> None:
        self.max_retained_bytes = max_retained_bytes

    @abstractmethod
    async def create(self, subject_name: str, payload: str) -> JobRecord: ...

    @abstractmethod
    async def get(self, job_id: str) -> JobRecord: ...

    @abstractmethod
    async def list_jobs(self) -> list[JobRecord]: ...

    @abstractmethod
    async def update(self, job_id: str, **fields: Any) -> JobRecord: ...

    @abstractmethod
    async def append_log(
        self, job_id: str, channel: LogChannel, text: str
    ) -> LogEntry: ...

    @abstractmethod
    async def get_logs(self, job_id: str) -> JobLogs: ...

    @abstractmethod
    def subscribe(self, job_id: str) -> AsyncIterator[LogEntry]:
        """Replay retained entries, then follow new ones until the job ends."""

    async def mark_running(self, job_id: str) -> JobRecord:
        return await self.update(
            job_id, status=JobStatus.running, started_at=self._now()
        )

    async def mark_completed(self, job_id: str, exit_code: int) -> JobRecord:
        return await self.update(
            job_id,
            status=JobStatus.completed,
            completed_at=self._now(),
            exit_code=exit_code,
        )

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        exit_code: int | None = None,
        errors: Iterable[CompileError] = (),
    ) -> JobRecord:
        return await self.update(
            job_id,
            status=JobStatus.failed,
            completed_at=self._now(),
            exit_code=exit_code,
            terminal_error=error,
            errors=list(errors),
        )

    @staticmethod
    def _new_record(subject_name: str, payload: str) -> JobRecord:
        return JobRecord(
            id=uuid4().hex,
            subject_name=subject_name,
            payload=payload,
            status=JobStatus.queued,
            created_at=JobStore._now(),
        )

    @staticmethod
    def _apply(record: JobRecord, fields: dict[str, Any]) -> JobRecord:
        JobStore._ensure_writable(record)
        status = fields.get("status")
        if status is not None and status not in _ALLOWED_TRANSITIONS[record.status]:
            raise JobStateError(
                f"job {record.id}: illegal transition {record.status.value} -> "
                f"{JobStatus(status).value}"
            )
        return record.model_copy(update=fields)

    @staticmethod
    def _ensure_writable(record: JobRecord) -> None:
        if record.status.is_terminal:
            raise JobStateError(f"job {record.id} is already {record.status.value}")

    def _over_budget(self, retained_bytes: int, text: str) -> bool:
        if self.max_retained_bytes is None:
            return False
        return retained_bytes + len(text.encode()) > self.max_retained_bytes

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)


@dataclass
class _LogBuffer:
    entries: list[LogEntry] = field(default_factory=list)
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    retained_bytes: int = 0
    next_seq: int = 0


class InMemoryJobStore(JobStore):
    """In-memory job store with per-subscriber queues for live logs."""

    def __init__(self, max_retained_bytes: int | None = None) -> None:
        super().__init__(max_retained_bytes)
        self._jobs: dict[str, JobRecord] = {}
        self._logs: dict[str, _LogBuffer] = {}
        self._subscribers: dict[str, list[asyncio.Queue[LogEntry | None]]] = {}
        self._lock = asyncio.Lock()

    async def create(self, subject_name: str, payload: str) -> JobRecord:
        record = self._new_record(subject_name, payload)
        async with self._lock:
            self._jobs[record.id] = record
            self._logs[record.id] = _LogBuffer()
        return record

    async def list_jobs(self) -> list[JobRecord]:
        async with self._lock:
            return list(self._jobs.values())

    async def get(self, job_id: str) -> JobRecord:
        async with self._lock:
            return self._require(job_id)

    async def update(self, job_id: str, **fields: Any) -> JobRecord:
        async with self._lock:
            record = self._apply(self._require(job_id), fields)
            self._jobs[job_id] = record
            if record.status.is_terminal:
                for queue in self._subscribers.pop(job_id, []):
                    queue.put_nowait(None)
            return record

    async def append_log(
        self, job_id: str, channel: LogChannel, text: str
    ) -> LogEntry:
        channel = LogChannel(channel)
        async with self._lock:
            record = self._require(job_id)
            self._ensure_writable(record)
            buffer = self._logs[job_id]

            if channel in OUTPUT_CHANNELS:
                if record.output_truncated or self._over_budget(
                    buffer.retained_bytes, text
                ):
                    if not record.output_truncated:
                        self._jobs[job_id] = record.model_copy(
                            update={"output_truncated": True}
                        )
                        self._record(job_id, LogChannel.info, TRUNCATION_NOTICE)
                    entry = self._next_entry(buffer, channel, text)
                    self._publish(job_id, entry)
                    return entry
                buffer.retained_bytes += len(text.encode())
                if channel is LogChannel.stdout:
                    buffer.stdout.append(text)
                else:
                    buffer.stderr.append(text)

            return self._record(job_id, channel, text)

    async def get_logs(self, job_id: str) -> JobLogs:
        async with self._lock:
            record = self._require(job_id)
            buffer = self._logs[job_id]
            return JobLogs(
                job_id=job_id,
                entries=list(buffer.entries),
                stdout="".join(buffer.stdout),
                stderr="".join(buffer.stderr),
                truncated=record.output_truncated,
            )

    async def subscribe(self, job_id: str) -> AsyncIterator[LogEntry]:
        queue: asyncio.Queue[LogEntry | None] = asyncio.Queue()
        async with self._lock:
            record = self._require(job_id)
            backlog = list(self._logs[job_id].entries)
            finished = record.status.is_terminal
            if not finished:
                self._subscribers.setdefault(job_id, []).append(queue)

        try:
            for entry in backlog:
                yield entry
            if finished:
                return
            while True:
                entry = await queue.get()
                if entry is None:
                    return
                yield entry
        finally:
            subscribers = self._subscribers.get(job_id)
            if subscribers and queue in subscribers:
                subscribers.remove(queue)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    def _require(self, job_id: str) -> JobRecord:
        record = self._jobs.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    def _record(self, job_id: str, channel: LogChannel, text: str) -> LogEntry:
        buffer = self._logs[job_id]
        entry = self._next_entry(buffer, channel, text)
        buffer.entries.append(entry)
        self._publish(job_id, entry)
        return entry

    def _next_entry(
        self, buffer: _LogBuffer, channel: LogChannel, text: str
    ) -> LogEntry:
        entry = LogEntry(
            seq=buffer.next_seq, timestamp=self._now(), channel=channel, text=text
        )
        buffer.next_seq += 1
        return entry

    def _publish(self, job_id: str, entry: LogEntry) -> None:
        for queue in self._subscribers.get(job_id, []):
            queue.put_nowait(entry)
