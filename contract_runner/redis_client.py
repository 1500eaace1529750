from __future__ import annotations

import redis.asyncio as redis

from contract_runner.settings import Settings, get_settings

try:
    import fakeredis
except ImportError:  # pragma: no cover - optional
    fakeredis = None

_redis_cache: redis.Redis | None = None


def get_redis(settings: Settings | None = None) -> redis.Redis:
    global _redis_cache
    if _redis_cache is not None:
        return _redis_cache
    settings = settings or get_settings()
    if settings.use_fake_redis:
        if fakeredis is None:
            raise RuntimeError("FAKE_REDIS is set but fakeredis is not installed")
        _redis_cache = fakeredis.FakeAsyncRedis(decode_responses=True)
    else:
        _redis_cache = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_cache


def reset_redis() -> None:
    global _redis_cache
    _redis_cache = None
