"""Tests for the error envelope format and exception handlers.

Error responses share one envelope:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from staykey.api.error_handling import (
    CREDENTIAL_ERROR_MESSAGE,
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from staykey.api.routes import _http_error
from staykey.api.schemas import Envelope, ErrorBody
from staykey.service.errors import (
    AlgorithmMismatchError,
    ConcurrencyConflictError,
    ExpiredCredentialError,
    ExpiredTokenError,
    InvalidSignatureError,
    NotFoundError,
    RevokedTokenError,
    UnknownTokenError,
)
from staykey.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="token_revoked", message="nope")


class TestEnvelope:
    def test_envelope_error_status(self):
        envelope = Envelope(
            status="error", error=ErrorBody(code="unauthorized", message="Invalid token")
        )
        assert envelope.status == "error"
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_codes_are_valid_error_bodies(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["request_id"]

    def test_error_response_headers(self):
        response = _error_response(401, "x", headers={"WWW-Authenticate": "Bearer"})
        assert response.headers["WWW-Authenticate"] == "Bearer"


class Payload(BaseModel):
    name: str


@pytest.fixture
def handler_client():
    app = FastAPI()
    register_exception_handlers(app)
    errors = {
        "signature": InvalidSignatureError("signature mismatch"),
        "algorithm": AlgorithmMismatchError("unexpected signing algorithm"),
        "expired_access": ExpiredCredentialError("token expired"),
        "unknown": UnknownTokenError("refresh token not recognised"),
        "revoked": RevokedTokenError("refresh token revoked"),
        "expired_refresh": ExpiredTokenError("refresh token expired"),
        "conflict": ConcurrencyConflictError("refresh token already used"),
    }

    @app.get("/credential/{name}")
    async def credential(name: str):
        raise errors[name]

    @app.get("/missing")
    async def missing():
        raise NotFoundError("booking not found")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/forbidden")
    async def forbidden():
        raise _http_error("forbidden", "admin access required", status_code=403)

    @app.post("/payload")
    async def payload(body: Payload):
        return {"ok": True}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "name",
        ["signature", "algorithm", "expired_access", "unknown", "revoked", "expired_refresh", "conflict"],
    )
    def test_every_credential_failure_looks_the_same(self, handler_client, name):
        response = handler_client.get(f"/credential/{name}")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        body = response.json()
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == CREDENTIAL_ERROR_MESSAGE
        assert body["error"]["details"] is None

    def test_service_error(self, handler_client):
        response = handler_client.get("/missing")
        assert response.status_code == 404
        assert response.json()["error"] == {
            "code": "not_found",
            "message": "booking not found",
            "details": {},
        }

    def test_constraint_violation(self, handler_client):
        response = handler_client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_http_error_envelope(self, handler_client):
        response = handler_client.get("/forbidden")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_request_validation(self, handler_client):
        response = handler_client.post("/payload", json={})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "name"]

    def test_uncaught_exception(self, handler_client):
        response = handler_client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
