"""Tests for token bucket rate limiter."""

import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from qa_access.middleware.rate_limit import RateLimiter, RateLimitMiddleware, TokenBucket


class TestTokenBucket:
    """Test TokenBucket class."""

    def test_initial_capacity(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=1.0)
        assert bucket.tokens == 10.0

    def test_consume_all_tokens(self):
        bucket = TokenBucket(capacity=3.0, refill_rate=1.0)
        now = bucket.last_refill

        assert bucket.try_consume(now) is True
        assert bucket.try_consume(now) is True
        assert bucket.try_consume(now) is True
        assert bucket.try_consume(now) is False

    def test_refill_over_time(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)  # 10 tokens/sec
        now = bucket.last_refill
        for _ in range(10):
            bucket.try_consume(now)
        assert bucket.try_consume(now) is False

        # 0.5s later -> 5 tokens refilled
        assert bucket.try_consume(now + 0.5) is True

    def test_refill_does_not_exceed_capacity(self):
        bucket = TokenBucket(capacity=5.0, refill_rate=100.0)
        bucket.try_consume(time.monotonic() + 10)
        assert bucket.tokens <= 5.0

    def test_time_until_token(self):
        bucket = TokenBucket(capacity=1.0, refill_rate=1.0)
        assert bucket.time_until_token() == 0.0
        bucket.try_consume(bucket.last_refill)
        assert 0 < bucket.time_until_token() <= 1.0


class TestRateLimiter:
    """Test RateLimiter class."""

    def test_default_limit(self):
        limiter = RateLimiter(default_rpm=60)
        assert limiter.try_acquire("10.0.0.1") == (True, 0.0)

    def test_per_client_isolation(self):
        limiter = RateLimiter(default_rpm=1)
        assert limiter.try_acquire("10.0.0.1")[0] is True
        assert limiter.try_acquire("10.0.0.2")[0] is True
        assert limiter.try_acquire("10.0.0.1")[0] is False

    def test_burst_equals_rpm(self):
        limiter = RateLimiter(default_rpm=10)
        for i in range(10):
            allowed, _ = limiter.try_acquire("c")
            assert allowed is True, f"Request {i+1} should be allowed"
        allowed, retry_after = limiter.try_acquire("c")
        assert allowed is False
        assert retry_after > 0

    def test_override_resets_bucket(self):
        limiter = RateLimiter(default_rpm=1)
        limiter.try_acquire("c")
        assert limiter.try_acquire("c")[0] is False

        limiter.set_limit("c", 100)
        assert limiter.try_acquire("c")[0] is True

    def test_rejects_non_positive_rpm(self):
        with pytest.raises(ValueError):
            RateLimiter(default_rpm=0)


class TestRateLimitMiddleware:
    """Middleware runs before any route logic and only on /api/ paths."""

    def _client(self, rpm: int) -> TestClient:
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, rate_limiter=RateLimiter(default_rpm=rpm))

        @app.get("/api/v1/ping")
        async def ping():
            return {"ok": True}

        @app.get("/health")
        async def health():
            return {"ok": True}

        return TestClient(app)

    def test_returns_429_with_retry_after(self):
        client = self._client(rpm=2)
        assert client.get("/api/v1/ping").status_code == 200
        assert client.get("/api/v1/ping").status_code == 200

        response = client.get("/api/v1/ping")
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.json()["error"] == "rate_limited"

    def test_non_api_paths_not_limited(self):
        client = self._client(rpm=1)
        for _ in range(5):
            assert client.get("/health").status_code == 200

    def test_forwarded_for_keys_separately(self):
        client = self._client(rpm=1)
        assert client.get("/api/v1/ping", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 200
        assert client.get("/api/v1/ping", headers={"X-Forwarded-For": "2.2.2.2"}).status_code == 200
        assert client.get("/api/v1/ping", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 429
