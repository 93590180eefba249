"""Tests for the moving-window API rate limiter and its middleware."""

from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from limits.storage import MemoryStorage

from api.rate_limiter import APIRateLimiter, RateLimitMiddleware


@pytest.fixture
def clock():
    """Freeze the clock used by limits' in-memory storage."""
    with patch("limits.storage.memory.time") as mock_time:
        mock_time.time.return_value = 1_000_000.0
        yield mock_time.time


class TestAPIRateLimiter:
    """Tests for APIRateLimiter."""

    def test_allows_up_to_max_requests(self, clock):
        limiter = APIRateLimiter(max_requests=3, window_seconds=60)
        key = limiter.key_for("10.0.0.1")

        results = [limiter.check(key) for _ in range(3)]

        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]

    def test_rejects_over_limit(self, clock):
        limiter = APIRateLimiter(max_requests=2, window_seconds=60)
        key = limiter.key_for("10.0.0.1")
        limiter.check(key)
        limiter.check(key)

        result = limiter.check(key)

        assert result.allowed is False
        assert result.remaining == 0
        assert result.reset_at == 1_000_000.0 + 60

    def test_window_slides(self, clock):
        """Requests older than the window stop counting."""
        limiter = APIRateLimiter(max_requests=2, window_seconds=60)
        key = limiter.key_for("10.0.0.1")
        limiter.check(key)
        clock.return_value += 30
        limiter.check(key)
        assert limiter.check(key).allowed is False

        clock.return_value += 31
        result = limiter.check(key)

        assert result.allowed is True
        assert result.remaining == 0
        # The request at +30s is now the oldest in the window
        assert result.reset_at == 1_000_000.0 + 30 + 60

    def test_rejected_requests_are_not_counted(self, clock):
        limiter = APIRateLimiter(max_requests=1, window_seconds=10)
        key = limiter.key_for("10.0.0.1")
        limiter.check(key)
        for _ in range(5):
            limiter.check(key)

        clock.return_value += 11
        assert limiter.check(key).allowed is True

    def test_keys_are_independent(self, clock):
        limiter = APIRateLimiter(max_requests=1, window_seconds=60)

        assert limiter.check(limiter.key_for("10.0.0.1")).allowed is True
        assert limiter.check(limiter.key_for("10.0.0.2")).allowed is True
        assert limiter.check(limiter.key_for("10.0.0.1")).allowed is False

    def test_key_format(self):
        assert APIRateLimiter.key_for("1.2.3.4") == "rate_limit:1.2.3.4"
        assert APIRateLimiter.key_for("") == "rate_limit:unknown"

    def test_limit_configuration(self):
        limiter = APIRateLimiter(max_requests=100, window_seconds=900)

        assert limiter.max_requests == 100
        assert limiter.window_seconds == 900
        assert isinstance(limiter.storage, MemoryStorage)

    def test_reset_clears_counts(self, clock):
        limiter = APIRateLimiter(max_requests=1, window_seconds=60)
        key = limiter.key_for("10.0.0.1")
        limiter.check(key)

        limiter.reset()

        assert limiter.check(key).allowed is True


def _app_with_limiter(limiter: APIRateLimiter) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, limiter=limiter, enabled=True)

    @app.get("/api/ping")
    async def ping():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


class TestRateLimitMiddleware:
    """Tests for RateLimitMiddleware."""

    def test_headers_on_allowed_request(self):
        client = TestClient(_app_with_limiter(APIRateLimiter(max_requests=5, window_seconds=60)))

        response = client.get("/api/ping")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        # Reset is epoch milliseconds
        assert int(response.headers["X-RateLimit-Reset"]) > 10**12

    def test_429_with_retry_after(self):
        client = TestClient(_app_with_limiter(APIRateLimiter(max_requests=1, window_seconds=60)))
        client.get("/api/ping")

        response = client.get("/api/ping")

        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert "レート制限" in body["error"]
        assert 1 <= int(response.headers["Retry-After"]) <= 60
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_non_api_paths_are_not_limited(self):
        client = TestClient(_app_with_limiter(APIRateLimiter(max_requests=1, window_seconds=60)))

        for _ in range(3):
            response = client.get("/health")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_disabled_middleware_passes_through(self):
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, limiter=APIRateLimiter(max_requests=1, window_seconds=60), enabled=False)

        @app.get("/api/ping")
        async def ping():
            return {"ok": True}

        client = TestClient(app)
        assert client.get("/api/ping").status_code == 200
        assert client.get("/api/ping").status_code == 200
