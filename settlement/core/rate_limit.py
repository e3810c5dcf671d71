# settlement/core/rate_limit.py

import logging
import math
import time
from typing import Optional

from fastapi import Request
from limits import RateLimitItemPerSecond
from limits.aio.strategies import FixedWindowRateLimiter
from limits.storage import storage_from_string

from settlement.core.config import settings
from settlement.core.errors import RateLimited

logger = logging.getLogger(__name__)

KEY_PREFIX = "settlement:rate"


class RateLimiterGuard:
    """
    Fixed-window admission control for money-moving endpoints.

    Counters live in the external key-value store. The `limits` Redis backend
    increments and sets the expiry in a single Lua script, so a window can
    never lose its TTL between the two steps. Windows reset only by expiry.
    """

    def __init__(self, storage_uri: str):
        self.storage = storage_from_string(storage_uri)
        self.strategy = FixedWindowRateLimiter(self.storage)

    async def check(self, key: str, limit: int, window_seconds: int) -> bool:
        """
        Counts one hit for `key`. Returns True when admitted, raises RateLimited otherwise.
        """
        item = RateLimitItemPerSecond(limit, window_seconds)
        if await self.strategy.hit(item, KEY_PREFIX, key):
            return True

        stats = await self.strategy.get_window_stats(item, KEY_PREFIX, key)
        retry_after = max(1, math.ceil(stats[0] - time.time()))
        logger.warning(f"Rate limit tripped for '{key}' ({limit} per {window_seconds}s). Retry after {retry_after}s.")
        raise RateLimited(
            "Too many requests. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )


# --- Request subject ---

def client_ip(request: Request) -> str:
    """
    Peer address of the connection; request headers are never read.
    Behind a proxy, run uvicorn with --forwarded-allow-ips so only trusted hops rewrite the peer.
    """
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def subject_for(request: Request) -> str:
    """
    Authenticated user ID when the identity dependency already ran, client IP otherwise.
    """
    user = getattr(request.state, "user", None)
    if user is not None and getattr(user, "id", None):
        return f"user:{user.id}"
    return f"ip:{client_ip(request)}"


def limits_for(action: str) -> tuple[int, int]:
    config = settings.RATE_LIMITS.get(action)
    if not config:
        raise KeyError(f"No rate limit configured for action '{action}'")
    return int(config["limit"]), int(config["window_seconds"])


def rate_limit(action: str, subject: Optional[str] = None):
    """
    Returns a FastAPI dependency that admits or rejects the request before
    the endpoint body runs. Declare it as an endpoint parameter after the
    user parameter so the subject is the user rather than the IP.
    """
    limit, window_seconds = limits_for(action)

    async def _dependency(request: Request):
        guard: RateLimiterGuard = request.app.state.rate_limiter
        key = f"{action}:{subject or subject_for(request)}"
        await guard.check(key, limit, window_seconds)

    return _dependency
