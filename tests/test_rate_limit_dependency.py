"""HTTP-level tests for the admission dependencies."""

from __future__ import annotations

import jwt
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from gatekeeper.adapters.block_store.in_memory import InMemoryBlockStore
from gatekeeper.adapters.counter_store.in_memory import InMemoryCounterStore
from gatekeeper.core.app_factory import create_app
from gatekeeper.core.config import (
    AbuseSettings,
    AccessListSettings,
    AppSettings,
    AuthSettings,
    MongoSettings,
    RateLimitSettings,
    RedisSettings,
    Settings,
)
from gatekeeper.core.rate_limit import endpoint_rate_limit

SECRET = "http-test-secret-with-at-least-32-bytes"


def _settings(app: AppSettings | None = None) -> Settings:
    return Settings(
        app=app or AppSettings(),
        rate_limit=RateLimitSettings(per_ip_max=3, per_user_max=2, per_endpoint_max=2),
        abuse=AbuseSettings(sweep_interval_seconds=0),
        access_lists=AccessListSettings(
            whitelist_internal_ips=["10.0.0.0/8"],
            whitelist_admin_ips=[],
            blacklist_ips=["203.0.113.0/24"],
        ),
        redis=RedisSettings(enabled=False),
        mongo=MongoSettings(enabled=False),
        auth=AuthSettings(jwt_secret=SECRET),
    )


def _bearer(sub: str, **claims) -> dict[str, str]:
    token = jwt.encode({"sub": sub, **claims}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def _from(ip: str, **headers: str) -> dict[str, str]:
    return {"X-Forwarded-For": ip, **headers}


@pytest.fixture
def app(clock) -> FastAPI:
    application = create_app(
        _settings(),
        counter_store=InMemoryCounterStore(clock=clock),
        block_store=InMemoryBlockStore(),
        clock=clock,
    )

    @application.post("/v1/login", dependencies=[Depends(endpoint_rate_limit(1))])
    async def login() -> dict:
        return {"ok": True}

    return application


@pytest.fixture
def client(app: FastAPI):
    with TestClient(app) as test_client:
        yield test_client


class TestQuotaRoute:
    """Test the admission gate on a protected route."""

    def test_admitted_request_carries_rate_headers(self, client: TestClient) -> None:
        resp = client.get("/v1/quota", headers=_from("8.8.8.8"))

        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "3"
        assert resp.headers["X-RateLimit-Remaining"] == "2"
        body = resp.json()
        assert body["ip"] == "8.8.8.8"
        assert body["scope"] == "ip"
        assert body["access"] == "unlisted"

    def test_ip_limit_returns_429_with_retry_after(self, client: TestClient) -> None:
        for _ in range(3):
            assert client.get("/v1/quota", headers=_from("8.8.8.8")).status_code == 200

        resp = client.get("/v1/quota", headers=_from("8.8.8.8"))

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        body = resp.json()
        assert body["retryAfter"] == 60
        assert body["error"]["code"] == "ip_rate_limit_exceeded"
        assert "request_id" in body["error"]

    def test_blacklisted_ip_returns_403(self, client: TestClient) -> None:
        resp = client.get("/v1/quota", headers=_from("203.0.113.50"))

        assert resp.status_code == 403
        body = resp.json()
        assert body["error"]["code"] == "ip_blacklisted"
        assert "retryAfter" not in body

    def test_whitelisted_ip_has_no_rate_headers(self, client: TestClient) -> None:
        for _ in range(10):
            resp = client.get("/v1/quota", headers=_from("10.9.8.7"))
            assert resp.status_code == 200

        assert "X-RateLimit-Limit" not in resp.headers
        assert resp.json()["access"] == "allow_listed"

    def test_first_forwarded_entry_is_the_client(self, client: TestClient) -> None:
        resp = client.get("/v1/quota", headers=_from("8.8.4.4, 10.0.0.1"))

        assert resp.json()["ip"] == "8.8.4.4"

    def test_authenticated_caller_uses_user_limit(self, client: TestClient) -> None:
        headers = _from("8.8.8.8", **_bearer("user-1"))
        first = client.get("/v1/quota", headers=headers)

        assert first.status_code == 200
        assert first.json()["scope"] == "user"
        assert first.json()["user_hash"]
        assert first.headers["X-RateLimit-Limit"] == "2"

        client.get("/v1/quota", headers=headers)
        denied = client.get("/v1/quota", headers=headers)

        assert denied.status_code == 429
        assert denied.json()["error"]["code"] == "user_rate_limit_exceeded"

    def test_invalid_token_falls_back_to_ip(self, client: TestClient) -> None:
        resp = client.get(
            "/v1/quota", headers=_from("8.8.8.8", Authorization="Bearer not-a-jwt")
        )

        assert resp.status_code == 200
        assert resp.json()["scope"] == "ip"
        assert resp.json()["user_hash"] is None

    def test_admin_token_bypasses_limits(self, client: TestClient) -> None:
        headers = _from("8.8.8.8", **_bearer("root", role="admin"))
        for _ in range(5):
            resp = client.get("/v1/quota", headers=headers)
            assert resp.status_code == 200

        assert resp.json()["access"] == "allow_listed"

    def test_blocked_ip_returns_429(self, client: TestClient, app: FastAPI) -> None:
        client.portal.call(app.state.abuse.block, "8.8.8.8", "ip", "abuse", 2)

        resp = client.get("/v1/quota", headers=_from("8.8.8.8"))

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "entity_blocked"
        assert resp.json()["retryAfter"] == 120
        assert resp.headers["X-RateLimit-Limit"] == "0"


class TestEndpointLimit:
    """Test the per-route dependency factory."""

    def test_route_limit_applies_per_caller(self, client: TestClient) -> None:
        assert client.post("/v1/login", headers=_from("8.8.8.8")).status_code == 200

        denied = client.post("/v1/login", headers=_from("8.8.8.8"))

        assert denied.status_code == 429
        assert denied.json()["error"]["code"] == "endpoint_rate_limit_exceeded"
        assert client.post("/v1/login", headers=_from("9.9.9.9")).status_code == 200


def test_admission_disabled_admits_everything(clock) -> None:
    app = create_app(
        _settings(AppSettings(admission_enabled=False)),
        counter_store=InMemoryCounterStore(clock=clock),
        block_store=InMemoryBlockStore(),
        clock=clock,
    )
    with TestClient(app) as client:
        for _ in range(5):
            resp = client.get("/v1/quota", headers=_from("203.0.113.1"))
            assert resp.status_code == 200

    assert resp.json()["scope"] is None
