"""Integration tests for the admission routes and the rate limit dependency."""

from __future__ import annotations

import asyncio
import time
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from admission_gate.adapters.rate_limit.base import RateLimitConfig
from admission_gate.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter
from admission_gate.adapters.rate_limit.redis_backend import RedisSlidingWindowRateLimiter
from admission_gate.core.app_factory import create_app
from admission_gate.core.config import RateLimitSettings, Settings

CLIENT_A = {"X-Forwarded-For": "203.0.113.1"}
CLIENT_B = {"X-Forwarded-For": "203.0.113.2"}


def _settings(**rate_limit) -> Settings:
    return Settings(rate_limit=RateLimitSettings(**{"max_requests": 3, "window_ms": 60_000, **rate_limit}))


@pytest.fixture
def limiter() -> InMemorySlidingWindowRateLimiter:
    return InMemorySlidingWindowRateLimiter(
        RateLimitConfig(max_requests=3, window_ms=60_000),
        start_cleanup=False,
    )


@pytest.fixture
def client(limiter) -> Iterator[TestClient]:
    app = create_app(_settings(), rate_limiter=limiter)
    with TestClient(app) as test_client:
        yield test_client


class TestAdmissionRoute:
    def test_admits_until_quota_is_spent(self, client: TestClient) -> None:
        bodies = [client.post("/v1/admission", headers=CLIENT_A).json() for _ in range(3)]

        assert [b["admitted"] for b in bodies] == [True, True, True]
        assert [b["remaining"] for b in bodies] == [2, 1, 0]

    def test_returns_429_with_headers_when_exhausted(self, client: TestClient) -> None:
        for _ in range(3):
            client.post("/v1/admission", headers=CLIENT_A)

        resp = client.post("/v1/admission", headers=CLIENT_A)

        assert resp.status_code == 429
        assert resp.json()["detail"] == "Rate limit exceeded. Try again later."
        assert resp.headers["X-RateLimit-Limit"] == "3"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert 0 < int(resp.headers["Retry-After"]) <= 60

    def test_clients_have_independent_quotas(self, client: TestClient) -> None:
        for _ in range(4):
            client.post("/v1/admission", headers=CLIENT_A)

        resp = client.post("/v1/admission", headers=CLIENT_B)

        assert resp.status_code == 200
        assert resp.json()["remaining"] == 2

    def test_first_forwarded_hop_identifies_client(self, client: TestClient) -> None:
        for proxy in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            client.post("/v1/admission", headers={"X-Forwarded-For": f"203.0.113.1, {proxy}"})

        resp = client.post("/v1/admission", headers=CLIENT_A)

        assert resp.status_code == 429

    def test_real_ip_header_used_without_forwarded_for(self, client: TestClient, limiter) -> None:
        client.post("/v1/admission", headers={"X-Real-IP": "198.51.100.5"})

        assert limiter.tracked_identifiers == 1
        quota = client.get("/v1/admission/quota", headers={"X-Real-IP": "198.51.100.5"}).json()
        assert quota["remaining"] == 2

    def test_socket_peer_used_without_proxy_headers(self, client: TestClient, limiter) -> None:
        client.post("/v1/admission")

        # TestClient connects as "testclient"
        quota = client.get("/v1/admission/quota").json()
        assert quota["remaining"] == 2

    def test_blocked_client_recovers_after_reset(self, client: TestClient, limiter) -> None:
        for _ in range(4):
            client.post("/v1/admission", headers=CLIENT_A)

        asyncio.run(limiter.reset("203.0.113.1"))

        assert client.post("/v1/admission", headers=CLIENT_A).status_code == 200


class TestQuotaRoute:
    def test_quota_does_not_consume(self, client: TestClient) -> None:
        for _ in range(5):
            body = client.get("/v1/admission/quota", headers=CLIENT_A).json()

        assert body == {
            "limit": 3,
            "window_ms": 60_000,
            "remaining": 3,
            "retry_after_seconds": 0,
            "backend": "memory",
        }

    def test_quota_reports_retry_after_when_blocked(self, client: TestClient) -> None:
        for _ in range(3):
            client.post("/v1/admission", headers=CLIENT_A)

        body = client.get("/v1/admission/quota", headers=CLIENT_A).json()

        assert body["remaining"] == 0
        assert 0 < body["retry_after_seconds"] <= 60


class TestSettingsToggles:
    def test_disabled_rate_limit_admits_everything(self, limiter) -> None:
        app = create_app(_settings(enabled=False), rate_limiter=limiter)

        with TestClient(app) as client:
            statuses = [client.post("/v1/admission", headers=CLIENT_A).status_code for _ in range(10)]

        assert statuses == [200] * 10
        assert limiter.tracked_identifiers == 0

    def test_headers_can_be_suppressed(self, limiter) -> None:
        app = create_app(_settings(include_headers=False), rate_limiter=limiter)

        with TestClient(app) as client:
            for _ in range(3):
                client.post("/v1/admission", headers=CLIENT_A)
            resp = client.post("/v1/admission", headers=CLIENT_A)

        assert resp.status_code == 429
        assert "Retry-After" not in resp.headers
        assert "X-RateLimit-Limit" not in resp.headers


class TestLifespan:
    def test_health_reports_selected_backend(self, client: TestClient) -> None:
        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "rate_limiter": "memory"}

    def test_settings_without_redis_start_in_memory(self) -> None:
        app = create_app(_settings())

        with TestClient(app) as client:
            assert client.get("/health").json()["rate_limiter"] == "memory"
            limiter = app.state.rate_limiter
            assert limiter.cleanup_running is True

        assert limiter.cleanup_running is False
        assert app.state.rate_limiter is None

    def test_redis_limiter_is_closed_on_shutdown(self, fake_redis) -> None:
        redis_limiter = RedisSlidingWindowRateLimiter(fake_redis, RateLimitConfig(max_requests=3))
        app = create_app(_settings(), rate_limiter=redis_limiter)

        with TestClient(app) as client:
            assert client.get("/health").json()["rate_limiter"] == "redis"
            assert client.post("/v1/admission", headers=CLIENT_A).status_code == 200

        assert fake_redis.closed is True

    def test_fail_closed_redis_outage_returns_429(self, fake_redis) -> None:
        redis_limiter = RedisSlidingWindowRateLimiter(fake_redis, RateLimitConfig(max_requests=3))
        app = create_app(_settings(), rate_limiter=redis_limiter)
        fake_redis.fail_with = RedisConnectionError("down")

        with TestClient(app) as client:
            resp = client.post("/v1/admission", headers=CLIENT_A)

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "0"

    def test_fail_open_redis_outage_admits(self, fake_redis) -> None:
        redis_limiter = RedisSlidingWindowRateLimiter(
            fake_redis, RateLimitConfig(max_requests=3, fail_open=True)
        )
        app = create_app(_settings(fail_open=True), rate_limiter=redis_limiter)
        fake_redis.fail_with = RedisConnectionError("down")

        with TestClient(app) as client:
            resp = client.post("/v1/admission", headers=CLIENT_A)

        assert resp.status_code == 200
        assert resp.json() == {"admitted": True, "remaining": 3}

    def test_slow_redis_outage_costs_one_operation_timeout(self, fake_redis) -> None:
        redis_limiter = RedisSlidingWindowRateLimiter(
            fake_redis,
            RateLimitConfig(max_requests=3),
            operation_timeout_ms=300,
        )
        app = create_app(_settings(), rate_limiter=redis_limiter)
        fake_redis.delay_s = 5

        with TestClient(app) as client:
            started = time.perf_counter()
            resp = client.post("/v1/admission", headers=CLIENT_A)
            elapsed = time.perf_counter() - started

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "0"
        assert fake_redis.round_trips == 1
        assert elapsed < 0.55

    def test_throttled_request_uses_one_round_trip(self, fake_redis) -> None:
        redis_limiter = RedisSlidingWindowRateLimiter(fake_redis, RateLimitConfig(max_requests=1, window_ms=60_000))
        app = create_app(_settings(max_requests=1), rate_limiter=redis_limiter)

        with TestClient(app) as client:
            assert client.post("/v1/admission", headers=CLIENT_A).json() == {"admitted": True, "remaining": 0}
            fake_redis.round_trips = 0
            resp = client.post("/v1/admission", headers=CLIENT_A)

        assert resp.status_code == 429
        assert 0 < int(resp.headers["Retry-After"]) <= 60
        assert fake_redis.round_trips == 1

    def test_route_without_lifespan_fails_loudly(self) -> None:
        app = create_app(_settings())
        client = TestClient(app, raise_server_exceptions=False)

        resp = client.get("/health")

        assert resp.status_code == 500
