"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
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

from klearkarma.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from klearkarma.api.schemas import Envelope, ErrorBody
from klearkarma.service.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitedError,
    ServerError,
)
from klearkarma.service.tokens import TokenExpiredError
from klearkarma.storage.errors import (
    ConstraintViolation,
    FanOutError,
    InvalidKeyError,
    StoreTimeoutError,
)


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """HTTP status to stable error code."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_codes_covered(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())

        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(400, "Custom error", code="conflict")
        assert json.loads(response.body.decode())["error"]["code"] == "conflict"


@pytest.fixture
def failing_client():
    """A bare app whose routes raise each mapped exception type."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/not-found")
    async def not_found():
        raise NotFoundError("user not found", detail={"user_id": "u1"})

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("appointment already confirmed")

    @app.get("/throttled")
    async def throttled():
        raise RateLimitedError("too many requests", detail={"retry_after": 30})

    @app.get("/server")
    async def server():
        raise ServerError("signing key unavailable")

    @app.get("/transition")
    async def transition():
        raise InvalidTransitionError("completed", "cancelled")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("key already claimed", {"key": "email:a@x.com"})

    @app.get("/token")
    async def token():
        raise TokenExpiredError("token expired")

    @app.get("/timeout")
    async def timeout():
        raise StoreTimeoutError("store get timed out", detail={"key": "user:1"})

    @app.get("/fan-out")
    async def fan_out():
        raise FanOutError("service", ["category_services:x:1"], [ConnectionError("down")])

    @app.get("/bad-key")
    async def bad_key():
        raise InvalidKeyError("a:b")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    """Domain, token and storage errors render the envelope."""

    def test_service_error(self, failing_client):
        response = failing_client.get("/not-found")
        assert response.status_code == 404
        body = response.json()
        assert body["error"] == {
            "code": "not_found",
            "message": "user not found",
            "details": {"user_id": "u1"},
        }

    def test_conflict(self, failing_client):
        response = failing_client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_rate_limited_is_distinct(self, failing_client):
        response = failing_client.get("/throttled")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.json()["error"]["details"] == {"retry_after": 30}

    def test_server_error(self, failing_client):
        response = failing_client.get("/server")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"

    def test_invalid_transition_details(self, failing_client):
        response = failing_client.get("/transition")
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["message"] == "cannot move appointment from completed to cancelled"
        assert error["details"] == {"from": "completed", "to": "cancelled"}

    def test_constraint_violation_is_conflict(self, failing_client):
        response = failing_client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_stray_token_error_is_generic_401(self, failing_client):
        response = failing_client.get("/token")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid or expired token"

    @pytest.mark.parametrize("path", ["/timeout", "/fan-out"])
    def test_store_errors_are_500(self, failing_client, path):
        response = failing_client.get(path)
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "user:1" not in json.dumps(body)

    def test_invalid_key_is_400(self, failing_client):
        response = failing_client.get("/bad-key")
        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": "validation_error",
            "message": "invalid identifier",
            "details": None,
        }

    def test_unhandled_exception_hides_details(self, failing_client):
        response = failing_client.get("/boom")
        assert response.status_code == 500
        assert "secret internals" not in response.text
        assert response.json()["error"]["code"] == "server_error"

    def test_unknown_route_uses_envelope(self, failing_client):
        response = failing_client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
