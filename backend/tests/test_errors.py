"""Error envelope and environment-dependent detail for unexpected failures."""

import pytest
from fastapi import Request
from httpx import ASGITransport, AsyncClient

from authcore.core.errors import AuthError, ErrorKind, conflict, internal, too_many_requests, unauthorized
from authcore.core.rate_limit import MemoryCounterBackend
from authcore.main import create_app
from conftest import RecordingEmailService, make_settings


def _app_with_failing_routes(settings, session_maker):
    app = create_app(
        settings,
        session_maker=session_maker,
        counter_backend=MemoryCounterBackend(),
        email_service=RecordingEmailService(settings),
    )

    @app.get("/boom/internal")
    async def boom_internal(request: Request):
        raise internal("database credentials rejected")

    @app.get("/boom/unexpected")
    async def boom_unexpected(request: Request):
        raise KeyError("secret-config-key")

    return app


async def _get(app, path: str):
    async with AsyncClient(transport=ASGITransport(app=app, raise_app_exceptions=False), base_url="http://test") as c:
        return await c.get(path)


def test_kinds_map_to_status():
    assert unauthorized("x").status_code == 401
    assert conflict("x").status_code == 409
    assert conflict("x", status_code=400).status_code == 400
    assert internal("x").status_code == 500
    err = too_many_requests("slow down", retry_after=0)
    assert err.status_code == 429
    assert err.headers == {"Retry-After": "1"}


def test_failure_classification():
    assert unauthorized("x").counts_as_failure
    assert not too_many_requests("x").counts_as_failure
    assert not internal("x").counts_as_failure
    assert not internal("x").is_operational
    assert AuthError(ErrorKind.VALIDATION, "x").is_operational


@pytest.mark.asyncio
async def test_internal_error_detail_in_development(session_maker):
    app = _app_with_failing_routes(make_settings(), session_maker)
    resp = await _get(app, "/boom/internal")
    assert resp.status_code == 500
    assert resp.json() == {"error": True, "code": 500, "message": "database credentials rejected"}


@pytest.mark.asyncio
async def test_internal_error_hidden_in_production(session_maker):
    app = _app_with_failing_routes(make_settings(app_env="production"), session_maker)
    resp = await _get(app, "/boom/internal")
    assert resp.status_code == 500
    assert resp.json() == {"error": True, "code": 500, "message": "Internal Server Error"}


@pytest.mark.asyncio
async def test_unexpected_exception_in_development(session_maker):
    app = _app_with_failing_routes(make_settings(), session_maker)
    resp = await _get(app, "/boom/unexpected")
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] is True
    assert "KeyError" in body["message"]
    assert "stack" in body


@pytest.mark.asyncio
async def test_unexpected_exception_in_production(session_maker):
    app = _app_with_failing_routes(make_settings(app_env="production"), session_maker)
    resp = await _get(app, "/boom/unexpected")
    assert resp.status_code == 500
    assert resp.json() == {"error": True, "code": 500, "message": "Internal Server Error"}


@pytest.mark.asyncio
async def test_validation_error_envelope(client):
    resp = await client.post("/api/v1/auth/login", json={"email": "a@test.com"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] is True
    assert body["code"] == 422
    assert body["message"].startswith("password:")
