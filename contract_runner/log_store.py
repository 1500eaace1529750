from __future__ import annotations

from typing import AsyncGenerator

import redis.asyncio as redis

from contract_runner.models import LogChannel, LogEntry
from contract_runner.redis_client import get_redis

COMPLETE = "__complete__"


class LogStore:
    """Per-job log entries in a Redis list, announced on a pub/sub channel."""

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.redis = client or get_redis()
        self._complete_key = "log:complete:"
        self._list_key = "log:list:"
        self._channel_key = "log:channel:"
        self._seq_key = "log:seq:"
        self._bytes_key = "log:bytes:"
        self._output_key = "log:output:"

    def _list(self, job_id: str) -> str:
        return f"{self._list_key}{job_id}"

    def _complete(self, job_id: str) -> str:
        return f"{self._complete_key}{job_id}"

    def _channel(self, job_id: str) -> str:
        return f"{self._channel_key}{job_id}"

    def _output(self, job_id: str, channel: LogChannel) -> str:
        return f"{self._output_key}{channel.value}:{job_id}"

    async def register(self, job_id: str) -> None:
        await self.redis.delete(
            self._list(job_id),
            self._complete(job_id),
            f"{self._seq_key}{job_id}",
            f"{self._bytes_key}{job_id}",
            self._output(job_id, LogChannel.stdout),
            self._output(job_id, LogChannel.stderr),
        )

    async def next_seq(self, job_id: str) -> int:
        return int(await self.redis.incr(f"{self._seq_key}{job_id}")) - 1

    async def reserve(self, job_id: str, size: int) -> int:
        """Add ``size`` to the retained byte counter and return the new total."""
        return int(await self.redis.incrby(f"{self._bytes_key}{job_id}", size))

    async def append(self, job_id: str, entry: LogEntry, retain: bool = True) -> None:
        payload = entry.model_dump_json()
        if retain:
            await self.redis.rpush(self._list(job_id), payload)  # type: ignore[misc]
            if entry.channel in (LogChannel.stdout, LogChannel.stderr):
                await self.redis.append(self._output(job_id, entry.channel), entry.text)
        await self.redis.publish(self._channel(job_id), payload)  # type: ignore[misc]

    async def mark_complete(self, job_id: str) -> None:
        await self.redis.set(self._complete(job_id), "1")
        await self.redis.publish(self._channel(job_id), COMPLETE)

    async def tail(self, job_id: str) -> list[LogEntry]:
        raw = await self.redis.lrange(self._list(job_id), 0, -1)  # type: ignore[misc]
        return [LogEntry.model_validate_json(self._decode(item)) for item in raw]

    async def output(self, job_id: str, channel: LogChannel) -> str:
        raw = await self.redis.get(self._output(job_id, channel))
        return self._decode(raw) if raw is not None else ""

    async def stream(self, job_id: str) -> AsyncGenerator[LogEntry, None]:
        pubsub = self.redis.pubsub()
        # Subscribe before reading the backlog so nothing published in between
        # is lost; duplicates are dropped by sequence number.
        await pubsub.subscribe(self._channel(job_id))
        try:
            finished = bool(await self.redis.exists(self._complete(job_id)))
            last_seq = -1
            for entry in await self.tail(job_id):
                last_seq = entry.seq
                yield entry
            if finished:
                return

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                data = self._decode(message["data"])
                if data == COMPLETE:
                    return
                entry = LogEntry.model_validate_json(data)
                if entry.seq <= last_seq:
                    continue
                last_seq = entry.seq
                yield entry
        finally:
            await pubsub.unsubscribe(self._channel(job_id))
            await pubsub.aclose()

    @staticmethod
    def _decode(value: str | bytes) -> str:
        if isinstance(value, bytes):
            return value.decode()
        return str(value)
