"""Tests for the response envelope and error handling.

Every response, success or failure, has the shape:
{
    "success": <bool>,
    "message": "<human_readable>",
    "data": <object>,      # optional
    "errors": [<string>]   # optional
}
"""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authcore import app as app_module
from authcore.api.error_handling import _error_response
from authcore.api.schemas import Envelope, LoginRequest, SignupRequest
from authcore.service.errors import (
    AccountLockedError,
    BackendUnavailableError,
    PasswordPolicyViolationError,
    ServiceError,
    TokenInvalidError,
)


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_minimal_envelope_drops_empty_fields(self):
        envelope = Envelope(success=True, message="ok")
        assert envelope.model_dump(exclude_none=True) == {"success": True, "message": "ok"}

    def test_error_response_shape(self):
        response = _error_response(401, "Invalid token", data={"code": "token_invalid"})
        assert response.status_code == 401
        assert response.body == (
            b'{"success":false,"message":"Invalid token","data":{"code":"token_invalid"}}'
        )

    def test_error_response_with_errors_list(self):
        response = _error_response(400, "Validation failed", ["email: required"])
        assert b'"errors":["email: required"]' in response.body


class TestServiceErrors:
    """Tests for ServiceError status codes and payloads."""

    def test_defaults(self):
        exc = ServiceError("boom")
        assert exc.status_code == 400
        assert exc.error_code == "validation_error"
        assert exc.detail == {}
        assert exc.errors == []

    def test_overrides(self):
        exc = ServiceError("gone", status_code=404, error_code="not_found")
        assert exc.status_code == 404
        assert exc.error_code == "not_found"

    def test_locked_error_carries_remaining_minutes(self):
        exc = AccountLockedError(7)
        assert exc.status_code == 423
        assert exc.detail == {"remaining_minutes": 7}
        assert "7 minutes" in exc.message

    def test_policy_error_keeps_every_violation(self):
        exc = PasswordPolicyViolationError(["a", "b"])
        assert exc.status_code == 400
        assert exc.errors == ["a", "b"]

    def test_token_errors_are_401(self):
        assert TokenInvalidError().status_code == 401

    def test_backend_error_is_500(self):
        assert BackendUnavailableError().status_code == 500


class TestRequestSchemas:
    """Tests for request model validation."""

    def test_signup_normalizes_email(self):
        body = SignupRequest(email="  Ada@Example.COM", password="x")
        assert body.email == "ada@example.com"

    @pytest.mark.parametrize(
        "email", ["invalid", "@example.com", "ada@", "ada@localhost", "a b@example.com"]
    )
    def test_signup_rejects_malformed_email(self, email):
        with pytest.raises(ValidationError):
            SignupRequest(email=email, password="x")

    def test_camel_case_aliases(self):
        body = SignupRequest.model_validate(
            {"email": "a@example.com", "password": "x", "firstName": "Ada", "lastName": "  "}
        )
        assert body.first_name == "Ada"
        assert body.last_name is None

    def test_login_does_not_validate_format(self):
        assert LoginRequest(email="Not-An-Email", password="x").email == "not-an-email"


class TestHttpErrors:
    """Tests for errors rendered by the app."""

    def test_request_validation_is_400_envelope(self, client):
        response = client.post("/v1/auth/login", json={"email": "a@example.com"})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Validation failed"
        assert any(e.startswith("password:") for e in body["errors"])

    def test_unknown_route_is_404_envelope(self, client):
        response = client.get("/v1/nope")

        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Not Found"}

    def test_service_error_includes_code(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer garbage"})

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["data"]["code"] == "token_invalid"

    def test_missing_bearer_is_401(self, client):
        response = client.get("/v1/auth/sessions")
        assert response.status_code == 401
        assert response.json()["data"]["code"] == "unauthenticated"

    def test_responses_carry_request_id(self, client):
        response = client.get("/v1/nope", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["Cache-Control"].startswith("no-store")
