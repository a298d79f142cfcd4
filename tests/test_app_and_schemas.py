import asyncio
import importlib

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from peaceverse import app as app_module
from peaceverse.api import schemas
from peaceverse.api.error_handling import register_exception_handlers
from peaceverse.service.errors import InvalidOrExpiredOtp
from peaceverse.service.runtime import get_runtime
from peaceverse.storage.errors import ConstraintViolation, StorageUnavailable
from peaceverse.storage.models import Role


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS tests."""

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        importlib.reload(app_module)


@pytest.fixture
def failing_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/otp")
    async def otp():
        raise InvalidOrExpiredOtp()

    @app.get("/store")
    async def store():
        raise StorageUnavailable("connection refused", backend="postgres")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


def test_security_headers_and_health(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["status"] == "healthy"
    assert body["checks"]["revocation"]["type"] == "MemoryRevocationStore"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"].startswith("no-store")
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_request_id_is_echoed(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["request_id"] == "req-123"


def test_success_envelope_uses_request_id(fresh_app):
    get_runtime().auth.provision_account("a@x.com", "+15550001111", "pw123456", Role.USER)
    response = TestClient(fresh_app).post(
        "/v1/auth/login",
        json={"email": "a@x.com", "password": "pw123456"},
        headers={"X-Request-ID": "req-456"},
    )
    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-456"
    assert response.json()["request_id"] == "req-456"


def test_health_reports_store_outage(monkeypatch):
    def _down():
        raise StorageUnavailable("connection refused", backend="postgres")

    monkeypatch.setattr(get_runtime().store, "ping", _down)
    response = TestClient(app_module.app).get("/healthz")
    assert response.status_code == 503
    assert response.json()["checks"]["store"]["status"] == "unhealthy"


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    reloaded = importlib.reload(app_module)
    try:
        assert reloaded._allowed_origins() == ["https://example.com", "https://demo.local"]
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS")
        importlib.reload(app_module)


class TestErrorEnvelope:
    """Errors reach the client as envelopes with stable codes."""

    def test_domain_error(self, failing_app):
        response = failing_app.get("/otp")
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"] == {"kind": "invalid_or_expired_otp"}

    def test_store_outage_is_retryable(self, failing_app):
        response = failing_app.get("/store")
        assert response.status_code == 503
        assert response.headers["Retry-After"]
        error = response.json()["error"]
        assert error["code"] == "service_unavailable"
        assert error["details"]["retryable"] is True

    def test_constraint_violation(self, failing_app):
        response = failing_app.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_uncaught_error_hides_internals(self, failing_app):
        response = failing_app.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
        assert "secret internals" not in response.text

    def test_refresh_during_store_outage(self, monkeypatch):
        runtime = get_runtime()
        runtime.auth.provision_account("a@x.com", "+15550001111", "pw123456", Role.USER)
        client = TestClient(app_module.app)
        assert (
            client.post(
                "/v1/auth/login", json={"email": "a@x.com", "password": "pw123456"}
            ).status_code
            == 200
        )

        async def _down(jti):
            raise StorageUnavailable("connection refused", backend="redis")

        monkeypatch.setattr(runtime.revocation, "pop_refresh_session", _down)
        response = client.post("/v1/auth/refresh")
        assert response.status_code == 503
        assert response.json()["error"]["details"]["retryable"] is True
        assert client.cookies.get("refreshToken") is not None


def test_envelope_status_validation():
    with pytest.raises(ValidationError):
        schemas.Envelope(status="pending")


def test_error_body_rejects_unknown_code():
    with pytest.raises(ValidationError):
        schemas.ErrorBody(code="teapot", message="no")


def test_signup_request_normalizes_fields():
    req = schemas.SignupRequest(
        email=" User@Example.com ", phone_number="+1 (555) 000-1111", password="pw123456"
    )
    assert req.email == "user@example.com"
    assert req.phone_number == "+15550001111"


@pytest.mark.parametrize(
    "field,value",
    [
        ("email", "invalid"),
        ("email", "a@b"),
        ("phone_number", "123"),
        ("phone_number", "+1555abc1111"),
        ("password", "short"),
        ("password", "x" * 129),
    ],
)
def test_signup_request_rejects(field, value):
    payload = {"email": "a@x.com", "phone_number": "+15550001111", "password": "pw123456"}
    payload[field] = value
    with pytest.raises(ValidationError):
        schemas.SignupRequest(**payload)


@pytest.mark.parametrize("otp", ["12345", "1234567", "12a456", ""])
def test_otp_must_be_six_digits(otp):
    with pytest.raises(ValidationError):
        schemas.VerifyOtpRequest(email="a@x.com", otp=otp)


def test_zero_width_characters_stripped_from_email():
    req = schemas.LoginRequest(email="a\u200b@x.com", password="pw")
    assert req.email == "a@x.com"


async def test_unverified_sweep_survives_failed_pass(monkeypatch):
    purges = []
    sleeps = []

    class FlakyAuth:
        def purge_unverified_accounts(self):
            purges.append(len(purges))
            if len(purges) == 1:
                raise RuntimeError("failed to persist in-memory state")
            return 0

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise asyncio.CancelledError()

    monkeypatch.setattr(app_module.asyncio, "sleep", fake_sleep)
    await app_module._run_unverified_cleanup(FlakyAuth(), 1)

    assert purges == [0, 1]
    assert sleeps == [1, 1]
