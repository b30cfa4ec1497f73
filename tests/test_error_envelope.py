"""Tests for the error envelope format and exception handlers.

Every failure renders as:
{
    "status": "fail" | "error",
    "code": "<stable_code>",
    "message": "<human_readable>"
}
with "error" reserved for 5xx responses.
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from everest import app as app_module
from everest.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from everest.api.schemas import Envelope, ErrorBody
from everest.service.errors import (
    ConfigurationError,
    DeviceBlockedError,
    MalformedTokenError,
    NotFoundError,
    ServerError,
    TokenExpiredError,
)
from everest.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody and Envelope models."""

    def test_error_body_requires_code_and_message(self):
        with pytest.raises(ValidationError):
            ErrorBody(status="fail", message="missing code")
        with pytest.raises(ValidationError):
            ErrorBody(status="fail", code="NOT_FOUND")

    def test_error_body_status_restricted(self):
        with pytest.raises(ValidationError):
            ErrorBody(status="success", code="NOT_FOUND", message="nope")

    def test_envelope_defaults_to_success(self):
        envelope = Envelope(data={"ok": True})

        assert envelope.model_dump() == {"status": "success", "data": {"ok": True}}


class TestErrorCodeMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(400) == "VALIDATION_ERROR"
        assert _error_code_for_status(401) == "UNAUTHORIZED"
        assert _error_code_for_status(403) == "FORBIDDEN"
        assert _error_code_for_status(404) == "NOT_FOUND"
        assert _error_code_for_status(409) == "CONFLICT"

    def test_unknown_statuses(self):
        assert _error_code_for_status(418) == "VALIDATION_ERROR"
        assert _error_code_for_status(503) == "SERVER_ERROR"

    def test_mapping_values_are_upper_snake_case(self):
        for code in _STATUS_TO_CODE.values():
            assert code == code.upper()


class TestErrorResponseFactory:
    def test_client_error_is_fail(self):
        response = error_response(401, "Invalid credentials", code="INVALID_CREDENTIALS")

        assert response.status_code == 401
        assert json.loads(response.body) == {
            "status": "fail",
            "code": "INVALID_CREDENTIALS",
            "message": "Invalid credentials",
        }

    def test_server_error_is_error(self):
        body = json.loads(error_response(500, "boom").body)

        assert body["status"] == "error"
        assert body["code"] == "SERVER_ERROR"


@pytest.fixture
def error_client():
    """A minimal app with the production handlers and routes that fail on demand."""
    app = FastAPI()
    register_exception_handlers(app)

    failures = {
        "expired": TokenExpiredError(),
        "malformed": MalformedTokenError(),
        "blocked": DeviceBlockedError(),
        "missing": NotFoundError("Device not found"),
        "config": ConfigurationError("JWT_SECRET is not set"),
        "server": ServerError("There was an error sending the email. Try again later!"),
        "constraint": ConstraintViolation("email already exists", {"field": "email"}),
        "crash": RuntimeError("database error at /var/lib/postgres"),
    }

    @app.get("/fail/{kind}")
    async def fail(kind: str):
        raise failures[kind]

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        "kind,status,code",
        [
            ("expired", 401, "TOKEN_EXPIRED"),
            ("malformed", 400, "INVALID_TOKEN"),
            ("blocked", 403, "DEVICE_BLOCKED"),
            ("missing", 404, "NOT_FOUND"),
            ("constraint", 409, "CONFLICT"),
        ],
    )
    def test_service_errors_map_to_status_and_code(self, error_client, kind, status, code):
        response = error_client.get(f"/fail/{kind}")

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "fail"
        assert body["code"] == code

    def test_service_message_passed_through(self, error_client):
        assert error_client.get("/fail/missing").json()["message"] == "Device not found"

    def test_server_error_details_hidden_outside_development(self, error_client):
        body = error_client.get("/fail/config").json()

        assert body == {
            "status": "error",
            "code": "AUTH_ERROR",
            "message": "Authentication system error",
        }

    def test_uncaught_exception_is_generic(self, error_client):
        response = error_client.get("/fail/crash")

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "SERVER_ERROR"
        assert "/var/lib" not in body["message"]


class TestApplicationErrors:
    """Error rendering through the real application."""

    def test_unknown_route(self):
        client = TestClient(app_module.app)
        response = client.get("/api/nowhere")

        assert response.status_code == 404
        assert response.json() == {
            "status": "fail",
            "code": "NOT_FOUND",
            "message": "Can't find /api/nowhere on this server!",
        }

    def test_request_validation_is_400(self):
        client = TestClient(app_module.app)
        response = client.post(
            "/api/users/register",
            json={
                "username": "valid_name",
                "email": "valid@example.com",
                "password": "weakpass",
                "confirm_password": "weakpass",
            },
        )

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["message"].startswith("Password must contain")

    def test_password_confirmation_mismatch(self):
        client = TestClient(app_module.app)
        response = client.post(
            "/api/users/register",
            json={
                "username": "valid_name",
                "email": "valid@example.com",
                "password": "StrongPass123",
                "confirm_password": "StrongPass124",
            },
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Passwords do not match"
