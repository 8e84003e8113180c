"""
Per-IP Rate Limiting

Fixed-window request counting per client IP:
- Counters live in the injected Cache (memory by default, redis when shared)
- A window starts with the first request and lasts rate_limit_window seconds
- Best-effort only: memory counters reset on deploy and are per process
"""

import hashlib
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from .cache import Cache, create_cache
from .errors import RateLimitedError
from .settings import settings


# Instance tracking for debugging
INSTANCE_ID = uuid.uuid4().hex[:8]
STARTUP_TIME = time.time()


def get_instance_id() -> str:
    """Get unique instance ID for this server process."""
    return INSTANCE_ID


def get_uptime_seconds() -> int:
    """Get server uptime in seconds."""
    return int(time.time() - STARTUP_TIME)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    current: int = 0
    limit: int = 0
    retry_after: int = 0  # seconds until client should retry

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)


class RateLimiter:
    """
    Fixed-window limiter keyed by client IP.

    Each check increments the caller's counter; the first increment of a
    window sets its expiry, so the counter resets when the window ends.
    """

    def __init__(self, cache: Cache, limit: int = 100, window: int = 900):
        self.cache = cache
        self.limit = limit
        self.window = window

    @staticmethod
    def _key(client_ip: str) -> str:
        return f"ratelimit:{client_ip}"

    async def check(self, client_ip: str) -> RateLimitResult:
        """Count this request and report whether it is within the limit."""
        current = await self.cache.incr(self._key(client_ip), self.window)
        if current > self.limit:
            return RateLimitResult(
                allowed=False,
                current=current,
                limit=self.limit,
                retry_after=await self._retry_after(client_ip),
            )
        return RateLimitResult(allowed=True, current=current, limit=self.limit)

    async def _retry_after(self, client_ip: str) -> int:
        remaining = await self.cache.ttl(self._key(client_ip))
        if remaining is None or remaining <= 0:
            return self.window
        return max(1, int(remaining))

    async def reset(self, client_ip: str) -> None:
        await self.cache.evict(self._key(client_ip))

    async def close(self) -> None:
        await self.cache.close()


# --- Global Instance ---

_limiter: Optional[RateLimiter] = None


async def init_limiter(cache: Optional[Cache] = None) -> None:
    """Initialize the rate limiter on startup."""
    global _limiter
    if settings.limits_enabled:
        _limiter = RateLimiter(
            cache or create_cache(max_entries=10_000),
            limit=settings.rate_limit,
            window=settings.rate_limit_window,
        )
        print(f"[limits] Rate limiter initialized (backend={settings.cache_backend}, instance={INSTANCE_ID})")
        print(f"[limits] Config: {settings.rate_limit} requests per {settings.rate_limit_window}s per IP")
    else:
        _limiter = None
        print("[limits] Rate limiting disabled")


async def close_limiter() -> None:
    """Release the limiter's cache on shutdown."""
    global _limiter
    if _limiter is not None:
        await _limiter.close()
    _limiter = None


def get_limiter() -> Optional[RateLimiter]:
    """Get the global limiter instance."""
    return _limiter


def get_limiter_type() -> str:
    """Get limiter type for health endpoint."""
    if _limiter is None:
        return "disabled"
    return settings.cache_backend


def hash_client_for_logging(client_ip: str) -> str:
    """Short, non-reversible tag for a client IP in log lines."""
    return hashlib.sha256(client_ip.encode()).hexdigest()[:12]


# --- 429 Response Helpers ---

def make_rate_limit_response(result: RateLimitResult, request_id: str) -> dict:
    """
    Create a standardized 429 response body.
    """
    error = RateLimitedError(
        "Too many requests. Please try again later.",
        details={"retryAfter": result.retry_after, "requestId": request_id},
    )
    return error.to_body()
