"""Auth endpoint rate limits and the in-process token bucket."""

import pytest
from fastapi.testclient import TestClient

from taskhub import app as app_module
from taskhub.service.errors import RateLimitedError
from taskhub.service.runtime import check_rate_limit, get_runtime, reset_runtime_for_tests


@pytest.fixture
def limited_client(monkeypatch):
    monkeypatch.setenv("AUTH_RATE_LIMIT_MAX_REQUESTS", "2")
    monkeypatch.setenv("AUTH_RATE_LIMIT_WINDOW_SECONDS", "60")
    reset_runtime_for_tests()
    return TestClient(app_module.app)


class TestAuthRateLimits:
    def test_login_limited_per_email(self, limited_client):
        payload = {"email": "victim@example.com", "password": "Wr0ng!Password"}
        for _ in range(2):
            response = limited_client.post("/v1/auth/login", json=payload)
            assert response.status_code == 401
            assert "X-RateLimit-Remaining" in response.headers

        blocked = limited_client.post("/v1/auth/login", json=payload)
        assert blocked.status_code == 429
        body = blocked.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["details"]["retry_after"] >= 1
        assert int(blocked.headers["Retry-After"]) == body["error"]["details"]["retry_after"]

        # Email normalization shares the bucket
        shouted = {"email": " VICTIM@example.com ", "password": "Wr0ng!Password"}
        assert limited_client.post("/v1/auth/login", json=shouted).status_code == 429

        other = {"email": "someone@example.com", "password": "Wr0ng!Password"}
        assert limited_client.post("/v1/auth/login", json=other).status_code == 401

    def test_reset_request_limited(self, limited_client):
        for _ in range(2):
            assert limited_client.post(
                "/v1/auth/reset/request", json={"email": "a@example.com"}
            ).status_code == 200
        assert limited_client.post(
            "/v1/auth/reset/request", json={"email": "a@example.com"}
        ).status_code == 429


class TestLocalBucket:
    async def test_bucket_drains_and_reports(self):
        runtime = get_runtime()
        assert await check_rate_limit(runtime, "k", 2, 60) is True
        allowed, remaining, reset = await check_rate_limit(
            runtime, "k", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 0, 0)
        allowed, remaining, reset = await check_rate_limit(
            runtime, "k", 2, 60, return_remaining=True
        )
        assert allowed is False
        assert reset >= 1

    async def test_zero_limit_disables(self):
        assert await check_rate_limit(get_runtime(), "k", 0, 60) is True

    async def test_invalid_window_falls_back(self):
        assert await check_rate_limit(get_runtime(), "k", 1, 0) is True


class TestRateLimitedError:
    def test_carries_retry_after_in_detail(self):
        exc = RateLimitedError(retry_after=7, detail={"scope": "login"})
        assert exc.status_code == 429
        assert exc.error_code == "rate_limited"
        assert exc.detail == {"scope": "login", "retry_after": 7}
