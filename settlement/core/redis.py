# settlement/core/redis.py
import logging

import redis.asyncio as redis
from settlement.core.config import settings

logger = logging.getLogger(__name__)

# decode_responses=True hands back str instead of bytes
redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)

STARTUP_LOCK_KEY = "settlement:startup_lock"
STARTUP_LOCK_TTL_SECONDS = 60


async def acquire_worker_lock(client: redis.Redis = redis_client) -> bool:
    """
    Elects the main worker: the first worker to start gets the lock and runs
    the cluster-wide jobs. The TTL frees the lock if that worker dies without
    releasing it.
    """
    acquired = await client.set(STARTUP_LOCK_KEY, "1", ex=STARTUP_LOCK_TTL_SECONDS, nx=True)
    return bool(acquired)


async def release_worker_lock(client: redis.Redis = redis_client) -> None:
    try:
        await client.delete(STARTUP_LOCK_KEY)
    except redis.RedisError as e:
        logger.warning(f"Could not release the worker lock: {e!r}")
