import asyncio

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .config import settings
from .logger import get_logger

log = get_logger("cache")
_redis: aioredis.Redis | None = None


class CacheUnavailable(RuntimeError):
    pass


def redis_client() -> aioredis.Redis:
    global _redis
    if _redis is None:
        timeout = float(settings.redis_op_timeout_seconds)
        _redis = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            retry_on_timeout=False,
        )
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        try:
            await _redis.aclose()
        except Exception:
            log.exception("redis_close_failed")
    _redis = None


async def guarded(awaitable, *, timeout: float | None = None):
    """Await a fast-cache operation with a hard deadline; any failure becomes CacheUnavailable."""
    limit = float(timeout if timeout is not None else settings.redis_op_timeout_seconds)
    try:
        return await asyncio.wait_for(awaitable, limit)
    except (asyncio.TimeoutError, RedisError, OSError) as exc:
        raise CacheUnavailable(str(exc) or exc.__class__.__name__) from exc
