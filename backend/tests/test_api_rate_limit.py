"""
HTTP-level tests for rate limit adapters and monitoring endpoints.

**Feature: rate-limiting, Property 8: Anonymous Paste Burst**

Property: Over HTTP, the fourth anonymous paste in a minute is answered with
429, the RATE_LIMITED body and the quota headers.
"""

import httpx
import pytest
from fastapi import Depends, Request, Response
from fastapi.responses import PlainTextResponse

from pastebin.api.rate_limit import RateLimit, rate_limited, with_rate_limit
from pastebin.core.config import Settings
from pastebin.core.limits import AbuseType, RateLimitAction
from pastebin.core.security import create_access_token, decode_access_token
from pastebin.main import create_app


@pytest.fixture
def app(store, clock):
    settings = Settings(JWT_SECRET="test-secret", ENABLE_PROMETHEUS_METRICS=False)
    app = create_app(settings=settings, store_factory=lambda _: store, clock=clock)

    @app.post("/api/pastes", dependencies=[Depends(RateLimit(RateLimitAction.PASTE_CREATE))])
    async def create_paste():
        return {"id": "abc"}

    @app.get("/api/raw/{slug}")
    @rate_limited(RateLimitAction.RAW_ACCESS)
    async def raw_paste(slug: str, request: Request):
        return PlainTextResponse(f"raw {slug}")

    @app.get("/api/check-url")
    async def check_url(request: Request, response: Response):
        async def handler():
            return {"safe": True}

        async def on_limited(result):
            return PlainTextResponse("slow down", status_code=429)

        return await with_rate_limit(
            RateLimitAction.URL_CHECK,
            handler,
            request=request,
            response=response,
            on_rate_limited=on_limited,
        )

    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


def auth_headers(user_id: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


async def test_dependency_denies_fourth_anonymous_paste(client, clock):
    """
    **Feature: rate-limiting, Property 8: Anonymous Paste Burst**
    """
    for expected_remaining in ("2", "1", "0"):
        response = await client.post("/api/pastes")
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == expected_remaining

    response = await client.post("/api/pastes")

    assert response.status_code == 429
    assert response.json() == {
        "error": "Too many requests - please try again later",
        "code": "RATE_LIMITED",
        "retryAfter": 45,
    }
    assert response.headers["Retry-After"] == "45"
    assert response.headers["X-RateLimit-Remaining"] == "0"


async def test_authenticated_callers_get_the_larger_quota(client):
    response = await client.post("/api/pastes", headers=auth_headers())

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "15"


async def test_banned_caller_gets_abuse_body(app, client, clock):
    expiry = await app.state.rate_limit_gate.bans.impose_ban(
        "ip:127.0.0.1", AbuseType.EXCESSIVE_REQUESTS, 10 * 60 * 1000
    )

    response = await client.post("/api/pastes")

    assert response.status_code == 429
    body = response.json()
    assert body["code"] == "ABUSE_DETECTED"
    assert body["banExpiry"] == expiry
    assert body["retryAfter"] == 600


async def test_decorator_stamps_headers(client):
    response = await client.get("/api/raw/hello")

    assert response.status_code == 200
    assert response.text == "raw hello"
    assert response.headers["X-RateLimit-Limit"] == "20"
    assert response.headers["X-RateLimit-Remaining"] == "19"


async def test_with_rate_limit_uses_custom_denial(client):
    for _ in range(10):
        response = await client.get("/api/check-url")
        assert response.status_code == 200
        assert response.json() == {"safe": True}
        assert "X-RateLimit-Reset" in response.headers

    response = await client.get("/api/check-url")

    assert response.status_code == 429
    assert response.text == "slow down"


async def test_monitoring_endpoints_require_authentication(client):
    for method, path in (("GET", "/api/rate-limits/metrics"), ("GET", "/api/rate-limits/patterns"), ("POST", "/api/rate-limits/cleanup")):
        response = await client.request(method, path)
        assert response.status_code == 401

    response = await client.get("/api/rate-limits/metrics", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


async def test_tokens_are_checked_against_the_app_secret(client):
    foreign = Settings(JWT_SECRET="someone-elses-secret", ENABLE_PROMETHEUS_METRICS=False)
    forged = create_access_token("user-1", settings=foreign)

    response = await client.get("/api/rate-limits/metrics", headers={"Authorization": f"Bearer {forged}"})

    assert response.status_code == 401


def test_access_token_subject_and_expiry():
    settings = Settings(JWT_SECRET="test-secret", ENABLE_PROMETHEUS_METRICS=False)

    assert decode_access_token(create_access_token("user-1", settings=settings), settings=settings) == "user-1"
    assert decode_access_token(create_access_token("user-1", expires_minutes=-1, settings=settings), settings=settings) is None
    assert decode_access_token(create_access_token("", settings=settings), settings=settings) is None


def test_authenticated_ip_tracking_is_off_by_default():
    assert Settings(JWT_SECRET="test-secret").abuse_track_authenticated_ip is False


async def test_metrics_endpoint_reports_recorded_events(app, client):
    await client.post("/api/pastes")
    await app.state.rate_limit_events.drain()

    response = await client.get("/api/rate-limits/metrics?days=1", headers=auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["daily"]["2026-01-01"] == {"total": 1, "blocked": 0, "abuse": 0}
    assert body["byAction"]["PASTE_CREATE"] == {"requests": 1, "blocked": 0}
    assert body["topAbusers"] == []


async def test_patterns_and_cleanup_endpoints(client):
    patterns = await client.get("/api/rate-limits/patterns", headers=auth_headers())
    cleanup = await client.post("/api/rate-limits/cleanup", headers=auth_headers())

    assert patterns.json() == {"patterns": []}
    assert cleanup.json() == {"events": 0, "metrics": 0}


async def test_status_endpoint_does_not_consume(client):
    first = await client.get("/api/rate-limits/status/PASTE_CREATE")
    second = await client.get("/api/rate-limits/status/paste_create")

    assert first.json() == second.json()
    assert first.json()["remaining"] == 3
    assert first.json()["canMakeRequest"] is True


async def test_status_endpoint_rejects_unknown_action(client):
    response = await client.get("/api/rate-limits/status/NOPE")

    assert response.status_code == 404


async def test_healthz_reports_store(client):
    response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "service": "dup", "store": "up"}


async def test_app_without_store_fails_open(clock):
    settings = Settings(JWT_SECRET="test-secret", ENABLE_PROMETHEUS_METRICS=False)
    app = create_app(settings=settings, store_factory=lambda _: None, clock=clock)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        health = await client.get("/healthz")
        status = await client.get("/api/rate-limits/status/GENERAL_API")

    assert health.json()["store"] == "disabled"
    assert status.status_code == 200


async def test_prometheus_endpoint_exposes_decision_counter(store, clock):
    settings = Settings(JWT_SECRET="test-secret", PROMETHEUS_METRICS_PATH="/metrics/prometheus")
    app = create_app(settings=settings, store_factory=lambda _: store, clock=clock)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        await client.get("/api/rate-limits/status/GENERAL_API")
        response = await client.get("/metrics/prometheus")

    assert response.status_code == 200
    assert "pastebin_http_requests_total" in response.text
    assert "pastebin_rate_limit_decisions_total" in response.text
