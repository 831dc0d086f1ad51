"""Token bucket rate limiter for API requests.

Uses in-memory token buckets keyed by client address. Runs before
authentication, so a flood of unauthenticated requests is throttled too.
Default: 100 req/min (configurable globally, overridable per client).
Returns 429 Too Many Requests with Retry-After header.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

RATE_LIMITED_PREFIX = "/api/"


@dataclass
class TokenBucket:
    capacity: float
    refill_rate: float  # tokens per second
    tokens: float = 0.0
    last_refill: float = field(default_factory=time.monotonic)

    def __post_init__(self):
        self.tokens = self.capacity

    def try_consume(self, now: Optional[float] = None) -> bool:
        """Take one token if available; refills by elapsed time first."""
        if now is None:
            now = time.monotonic()

        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def time_until_token(self) -> float:
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.refill_rate


class RateLimiter:
    """In-memory per-client rate limiter using token buckets."""

    def __init__(self, default_rpm: int = 100):
        if default_rpm <= 0:
            raise ValueError("default_rpm must be positive")
        self._buckets: Dict[str, TokenBucket] = {}
        self._default_rpm = default_rpm
        self._overrides: Dict[str, int] = {}

    def set_limit(self, key: str, rpm: int) -> None:
        """Override the limit for one client; its bucket starts fresh."""
        self._overrides[key] = rpm
        self._buckets.pop(key, None)

    def _get_bucket(self, key: str) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            rpm = self._overrides.get(key, self._default_rpm)
            bucket = TokenBucket(capacity=float(rpm), refill_rate=rpm / 60.0)
            self._buckets[key] = bucket
        return bucket

    def try_acquire(self, key: str, now: Optional[float] = None) -> Tuple[bool, float]:
        """Returns ``(allowed, retry_after_seconds)``."""
        bucket = self._get_bucket(key)
        if bucket.try_consume(now):
            return True, 0.0
        return False, bucket.time_until_token()


def client_key(request: Request) -> str:
    """Rate limit key: first X-Forwarded-For hop, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None:
        return request.client.host
    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Throttle every ``/api/`` request per client address."""

    def __init__(self, app, rate_limiter: RateLimiter):
        super().__init__(app)
        self.rate_limiter = rate_limiter

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(RATE_LIMITED_PREFIX):
            return await call_next(request)

        key = client_key(request)
        allowed, retry_after = self.rate_limiter.try_acquire(key)
        if not allowed:
            logger.warning("Rate limited client %s (retry_after=%.1fs)", key, retry_after)
            return JSONResponse(
                status_code=429,
                content={"error": "rate_limited", "detail": "Too Many Requests"},
                headers={"Retry-After": str(int(retry_after) + 1)},
            )

        return await call_next(request)
