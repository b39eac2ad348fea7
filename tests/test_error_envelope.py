"""Tests for the error envelope format and the service error taxonomy.

Error responses always look like:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from rimadmin.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from rimadmin.api.schemas import Envelope, ErrorBody
from rimadmin.service import errors as service_errors


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


class TestStatusMapping:
    """HTTP status to stable code."""

    def test_known_statuses(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _error_code_for_status(429) == "rate_limited"
        assert _error_code_for_status(422) == "validation_error"

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(404, "User not found", {"reason": "missing"})

        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "User not found", "details": {"reason": "missing"}}
        assert body["request_id"]


@pytest.mark.parametrize(
    "exc_cls, status, code, message, reason",
    [
        (service_errors.InvalidCredentials, 401, "unauthorized", "Invalid credentials", "invalid_credentials"),
        (service_errors.AccountInactive, 401, "unauthorized", "Account is not active", "account_inactive"),
        (service_errors.SessionNotFound, 401, "unauthorized", "Session not found", "session_not_found"),
        (service_errors.SessionAlreadyUsed, 401, "unauthorized", "Session already used", "session_already_used"),
        (service_errors.SessionExpired, 401, "unauthorized", "Session expired", "session_expired"),
        (service_errors.InvalidSession, 400, "validation_error", "Invalid session", "invalid_session"),
        (service_errors.InvalidAccountState, 401, "unauthorized", "Invalid account state", "invalid_account_state"),
        (service_errors.InvalidCode, 401, "unauthorized", "Invalid code", "invalid_code"),
        (service_errors.InvalidBackupCode, 401, "unauthorized", "Invalid backup code", "invalid_backup_code"),
        (service_errors.InvalidRefreshToken, 401, "unauthorized", "Invalid refresh token", "invalid_refresh_token"),
        (service_errors.InvalidResetToken, 400, "validation_error", "Invalid reset token", "invalid_reset_token"),
        (service_errors.ExpiredResetToken, 400, "validation_error", "Reset token expired", "expired_reset_token"),
        (service_errors.ResetTokenAlreadyUsed, 400, "validation_error", "Reset token already used", "reset_token_already_used"),
        (service_errors.TwoFactorRequired, 403, "forbidden", "Two-factor authentication required", "two_factor_required"),
    ],
)
def test_auth_error_taxonomy(exc_cls, status, code, message, reason):
    exc = exc_cls()

    assert isinstance(exc, service_errors.ServiceError)
    assert exc.status_code == status
    assert exc.error_code == code
    assert exc.message == message
    assert exc.detail == {"reason": reason}


def test_explicit_detail_keeps_reason():
    exc = service_errors.InvalidCode(detail={"hint": "x"})

    assert exc.detail == {"hint": "x", "reason": "invalid_code"}
