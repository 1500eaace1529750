from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

import redis.asyncio as redis

from contract_runner.errors import JobNotFoundError
from contract_runner.log_store import LogStore
from contract_runner.models import (
    OUTPUT_CHANNELS,
    JobLogs,
    JobRecord,
    LogChannel,
    LogEntry,
)
from contract_runner.redis_client import get_redis
from contract_runner.storage import TRUNCATION_NOTICE, JobStore


class RedisJobStore(JobStore):
    """Redis-backed job metadata store; logs live in a companion LogStore."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        max_retained_bytes: int | None = None,
    ) -> None:
        super().__init__(max_retained_bytes)
        self.redis = client or get_redis()
        self.key_prefix = "job:"
        self.index_key = "jobs:index"
        self.logs = LogStore(self.redis)

    def _key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    async def create(self, subject_name: str, payload: str) -> JobRecord:
        record = self._new_record(subject_name, payload)
        await self.logs.register(record.id)
        await self.redis.set(self._key(record.id), record.model_dump_json())
        await self.redis.rpush(self.index_key, record.id)  # type: ignore[misc]
        return record

    async def get(self, job_id: str) -> JobRecord:
        raw = await self.redis.get(self._key(job_id))
        if raw is None:
            raise JobNotFoundError(job_id)
        return JobRecord.model_validate_json(raw)

    async def list_jobs(self) -> list[JobRecord]:
        ids = await self.redis.lrange(self.index_key, 0, -1)  # type: ignore[misc]
        if not ids:
            return []
        raw = await self.redis.mget([self._key(job_id) for job_id in ids])
        return [JobRecord.model_validate_json(item) for item in raw if item is not None]

    async def update(self, job_id: str, **fields: Any) -> JobRecord:
        record = self._apply(await self.get(job_id), fields)
        await self.redis.set(self._key(job_id), record.model_dump_json())
        if record.status.is_terminal:
            await self.logs.mark_complete(job_id)
        return record

    async def append_log(
        self, job_id: str, channel: LogChannel, text: str
    ) -> LogEntry:
        channel = LogChannel(channel)
        record = await self.get(job_id)
        self._ensure_writable(record)

        retain = True
        if channel in OUTPUT_CHANNELS and self.max_retained_bytes is not None:
            size = len(text.encode())
            total = await self.logs.reserve(job_id, size)
            retain = total <= self.max_retained_bytes
            if not retain and not record.output_truncated:
                record = record.model_copy(update={"output_truncated": True})
                await self.redis.set(self._key(job_id), record.model_dump_json())
                notice = await self._entry(job_id, LogChannel.info, TRUNCATION_NOTICE)
                await self.logs.append(job_id, notice)

        entry = await self._entry(job_id, channel, text)
        await self.logs.append(job_id, entry, retain=retain)
        return entry

    async def get_logs(self, job_id: str) -> JobLogs:
        record = await self.get(job_id)
        return JobLogs(
            job_id=job_id,
            entries=await self.logs.tail(job_id),
            stdout=await self.logs.output(job_id, LogChannel.stdout),
            stderr=await self.logs.output(job_id, LogChannel.stderr),
            truncated=record.output_truncated,
        )

    async def subscribe(self, job_id: str) -> AsyncIterator[LogEntry]:
        await self.get(job_id)
        async with aclosing(self.logs.stream(job_id)) as entries:
            async for entry in entries:
                yield entry

    async def _entry(self, job_id: str, channel: LogChannel, text: str) -> LogEntry:
        return LogEntry(
            seq=await self.logs.next_seq(job_id),
            timestamp=self._now(),
            channel=channel,
            text=text,
        )
