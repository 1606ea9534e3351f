"""Tests for the error taxonomy and credential-safe error payloads."""

from __future__ import annotations

import pytest

from calsync.errors import (
    AuthenticationError,
    AuthExchangeError,
    CalendarSyncError,
    ConfigurationError,
    EventValidationError,
    NoRefreshTokenError,
    ProviderRequestError,
    RefreshRejectedError,
    TransportError,
    build_error_payload,
    redact_credential_values,
    sanitize_message,
)

pytestmark = pytest.mark.unit


class TestErrorHierarchy:
    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (ConfigurationError("x"), "configuration"),
            (AuthExchangeError("x"), "auth_exchange"),
            (NoRefreshTokenError("x"), "no_refresh_token"),
            (RefreshRejectedError("x"), "refresh_rejected"),
            (AuthenticationError("x"), "authentication"),
            (ProviderRequestError(status_code=500, message="x"), "provider_request"),
            (TransportError("x"), "transport"),
            (EventValidationError(["x"]), "validation"),
        ],
    )
    def test_every_error_carries_a_distinct_kind(self, error, kind):
        assert isinstance(error, CalendarSyncError)
        assert isinstance(error, RuntimeError)
        assert error.kind == kind

    def test_provider_request_error_carries_status_and_message(self):
        err = ProviderRequestError(status_code=404, message="Not Found")
        assert err.status_code == 404
        assert err.message == "Not Found"
        assert str(err) == "Provider request failed (404): Not Found"

    def test_validation_error_lists_every_violation(self):
        err = EventValidationError(["Title is required", "Start date is required"])
        assert err.errors == ["Title is required", "Start date is required"]
        assert "Title is required; Start date is required" in str(err)


class TestSanitizeAndRedact:
    def test_whitespace_is_collapsed_and_length_capped(self):
        message = sanitize_message("Multiple   spaces\nand\nnewlines" + " x" * 300)
        assert message.startswith("Multiple spaces and newlines")
        assert len(message) == 200

    def test_key_value_pairs_are_redacted(self):
        message = redact_credential_values("refresh_token=abc123&client_secret=s3cret")
        assert "abc123" not in message
        assert "s3cret" not in message
        assert "refresh_token=[REDACTED]" in message

    def test_json_values_are_redacted(self):
        message = redact_credential_values('{"access_token": "ya29.secret", "scope": "x"}')
        assert "ya29.secret" not in message
        assert '"scope": "x"' in message

    def test_bearer_tokens_are_redacted(self):
        message = redact_credential_values("Authorization: Bearer ya29.secret rejected")
        assert message == "Authorization: Bearer [REDACTED] rejected"


class TestBuildErrorPayload:
    def test_provider_request_payload(self):
        exc = ProviderRequestError(status_code=403, message="Forbidden")
        payload = build_error_payload(exc, provider="google", calendar_id="primary")
        assert payload == {
            "status": "error",
            "kind": "provider_request",
            "error_type": "ProviderRequestError",
            "error": "Provider request failed (403): Forbidden",
            "provider": "google",
            "calendar_id": "primary",
            "status_code": 403,
        }

    def test_validation_payload_lists_errors(self):
        payload = build_error_payload(EventValidationError(["Title is required"]), provider="google")
        assert payload["kind"] == "validation"
        assert payload["errors"] == ["Title is required"]
        assert "calendar_id" not in payload

    def test_credentials_never_reach_the_payload(self):
        exc = TransportError("POST failed with refresh_token=abc123")
        payload = build_error_payload(exc, provider="google")
        assert "abc123" not in payload["error"]

    def test_foreign_exceptions_get_generic_kind(self):
        payload = build_error_payload(ValueError("boom"), provider="google")
        assert payload["kind"] == "error"
        assert payload["error_type"] == "ValueError"
