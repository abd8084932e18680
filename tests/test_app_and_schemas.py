import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from staykey import app as app_module
from staykey.api import schemas


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS tests."""

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        importlib.reload(app_module)


def test_security_headers_and_health(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["checks"]["filesystem"]["status"] == "healthy"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"].startswith("no-store")
    assert response.headers["API-Version"] == app_module.__version__
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_correlation_id_is_echoed():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"X-Request-ID": "req-abc-123"})
    assert response.headers["X-Request-ID"] == "req-abc-123"


def test_correlation_id_generated_when_missing():
    client = TestClient(app_module.app)
    response = client.get("/healthz")
    assert response.headers["X-Request-ID"]


def test_cors_origins_from_env(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://book.example.com, https://admin.example.com")
    reloaded = importlib.reload(app_module)
    try:
        client = TestClient(reloaded.app)
        response = client.get("/healthz", headers={"Origin": "https://admin.example.com"})
        assert response.headers["access-control-allow-origin"] == "https://admin.example.com"
        response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})
        assert "access-control-allow-origin" not in response.headers
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
        importlib.reload(app_module)


def test_login_request_normalizes_email():
    request = schemas.LoginRequest(email="  Guest@Example.COM ", password="pw")
    assert request.email == "guest@example.com"


@pytest.mark.parametrize(
    "email", ["plainaddress", "a@b", "user@-bad-.com", "x" * 65 + "@example.com"]
)
def test_login_request_rejects_bad_email(email):
    with pytest.raises(ValidationError):
        schemas.LoginRequest(email=email, password="pw")


def test_login_request_strips_zero_width_characters():
    request = schemas.LoginRequest(email="gu\u200best@example.com", password="pw")
    assert request.email == "guest@example.com"


def test_token_fields_are_length_bounded():
    with pytest.raises(ValidationError):
        schemas.TokenRefreshRequest(
            refresh_token="a" * (schemas.MAX_TOKEN_LENGTH + 1), access_token="b"
        )
    with pytest.raises(ValidationError):
        schemas.TokenRevokeRequest(refresh_token="a" * (schemas.MAX_TOKEN_LENGTH + 1))


def test_active_token_response_has_no_secret_fields():
    fields = set(schemas.ActiveTokenResponse.model_fields)
    assert "token_hash" not in fields
    assert "refresh_token" not in fields
