"""Tests for the error envelope format and service error mapping.

Error responses conform to:
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
from pydantic import ValidationError

from shopauth.api.error_handling import _error_code_for_status, _error_response
from shopauth.api.schemas import _VALID_ERROR_CODES, Envelope, ErrorBody
from shopauth.service import errors


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="invalid credentials")
        assert error.code == "invalid_credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        """ErrorBody accepts list details."""
        error = ErrorBody(
            code="validation_error",
            message="password does not meet requirements",
            details=[{"code": "too_short"}, {"code": "missing_digit"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        """Envelope auto-generates request_id if not provided."""
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (503, "service_unavailable"),
            (418, "server_error"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_every_service_error_code_is_valid(self):
        """Every code a ServiceError can carry is accepted by ErrorBody."""
        for name in errors.__all__:
            assert getattr(errors, name).error_code in _VALID_ERROR_CODES, name


class TestServiceErrors:
    def test_retry_after_is_positive_and_in_details(self):
        exc = errors.RateLimitError(retry_after=0)
        assert exc.retry_after == 1
        assert exc.detail["retry_after"] == 1
        assert exc.status_code == 429

    def test_account_locked_is_forbidden(self):
        exc = errors.AccountLockedError(retry_after=3600)
        assert exc.status_code == 403
        assert exc.error_code == "account_locked"

    def test_token_errors_are_authentication_errors(self):
        for cls in (
            errors.InvalidCredentials,
            errors.TokenExpired,
            errors.TokenInvalidSignature,
            errors.TokenReuseDetected,
            errors.SessionRevoked,
        ):
            exc = cls()
            assert isinstance(exc, errors.AuthenticationError)
            assert exc.status_code == 401


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "invalid credentials", code="invalid_credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "invalid_credentials"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_error_response_headers(self):
        response = _error_response(429, "slow down", headers={"Retry-After": "30"})

        assert response.headers["Retry-After"] == "30"
        assert json.loads(response.body.decode())["error"]["code"] == "rate_limited"
