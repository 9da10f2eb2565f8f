"""Tests for the error envelope format and error handling.

Error responses conform to the stable API envelope:
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
from pydantic import ValidationError

from portalauth.api.error_handling import (
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from portalauth.api.schemas import Envelope, ErrorBody
from portalauth.service.errors import (
    AuthzError,
    ProviderRejectedError,
    ProviderUnavailableError,
    ReuseDetectedError,
    StateError,
    TokenExpiredError,
)
from portalauth.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_with_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Invalid input",
            details={"field": "role"},
        )
        assert error.details == {"field": "role"}

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_rejected(self):
        """Codes outside the stable set cannot leak into responses."""
        with pytest.raises(ValidationError):
            ErrorBody(code="token_gone", message="nope")

    def test_every_domain_error_code_is_stable(self):
        for exc_type in (
            StateError,
            ProviderRejectedError,
            ProviderUnavailableError,
            AuthzError,
            TokenExpiredError,
            ReuseDetectedError,
        ):
            ErrorBody(code=exc_type.error_code, message="x")


class TestEnvelope:
    def test_status_must_be_ok_or_error(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id


class TestStatusMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(502) == "provider_unavailable"

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(403, "denied", {"portal": "admin"}, code="forbidden")
        body = json.loads(response.body)

        assert response.status_code == 403
        assert body["status"] == "error"
        assert body["error"] == {"code": "forbidden", "message": "denied", "details": {"portal": "admin"}}


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/reuse")
    async def reuse():
        raise ReuseDetectedError("refresh token reuse detected")

    @app.get("/denied")
    async def denied():
        raise AuthzError(
            "Admin access required",
            detail={"portal": "admin", "redirect_url": "http://localhost:3003/auth-error"},
        )

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password=hunter2 leaked")

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error_rendered_with_its_code(self, error_client):
        response = error_client.get("/reuse")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "token_reuse_detected"

    def test_redirect_hint_is_not_exposed(self, error_client):
        response = error_client.get("/denied")

        assert response.json()["error"]["details"] == {"portal": "admin"}

    def test_constraint_violation_is_conflict(self, error_client):
        response = error_client.get("/conflict")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_unhandled_exception_is_opaque(self, error_client):
        response = error_client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
        assert "hunter2" not in response.text
