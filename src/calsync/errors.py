"""Error taxonomy for the calendar sync engine.

Every failure raised by this package derives from :class:`CalendarSyncError`
and carries a machine-readable ``kind`` so callers can decide between retry,
abort and re-authorization without string matching.

| Kind | Class | Remedy |
|------|-------|--------|
| ``configuration`` | ConfigurationError | operator must supply credentials |
| ``auth_exchange`` | AuthExchangeError | restart the OAuth flow |
| ``no_refresh_token`` | NoRefreshTokenError | re-authorize |
| ``refresh_rejected`` | RefreshRejectedError | re-authorize |
| ``authentication`` | AuthenticationError | re-authorize |
| ``provider_request`` | ProviderRequestError | surfaced verbatim, not retried |
| ``transport`` | TransportError | caller may retry with backoff |
| ``validation`` | EventValidationError | fix the event locally |
"""

from __future__ import annotations

import re
from typing import Any, ClassVar

_MAX_MESSAGE_LENGTH = 200


class CalendarSyncError(RuntimeError):
    """Base error for everything raised by calsync."""

    kind: ClassVar[str] = "error"


class ConfigurationError(CalendarSyncError):
    """Raised when client credentials or settings are missing or invalid."""

    kind = "configuration"


class AuthExchangeError(CalendarSyncError):
    """Raised when the provider rejects an authorization-code exchange."""

    kind = "auth_exchange"

    def __init__(self, description: str) -> None:
        self.description = description
        super().__init__(f"Authorization code exchange failed: {description}")


class NoRefreshTokenError(CalendarSyncError):
    """Raised when a refresh is needed but no refresh token is held."""

    kind = "no_refresh_token"


class RefreshRejectedError(CalendarSyncError):
    """Raised when the token endpoint rejects the stored refresh token.

    This is terminal for the connection: it is never retried and the caller
    must prompt the user to re-authorize.
    """

    kind = "refresh_rejected"


class AuthenticationError(CalendarSyncError):
    """Raised when a request is still unauthorized after one refresh."""

    kind = "authentication"


class ProviderRequestError(CalendarSyncError):
    """Raised when the provider rejects a well-formed request."""

    kind = "provider_request"

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Provider request failed ({status_code}): {message}")


class TransportError(CalendarSyncError):
    """Raised on network-layer failures (timeout, DNS, connection reset)."""

    kind = "transport"


class EventValidationError(CalendarSyncError):
    """Raised when an event fails local validation before any network call."""

    kind = "validation"

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Event failed validation: " + "; ".join(self.errors))


def sanitize_message(message: str) -> str:
    """Collapse whitespace and cap the length of a provider-supplied message."""
    return " ".join(message.split())[:_MAX_MESSAGE_LENGTH]


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message.

    Credentials arrive from the connection-storage layer, so redaction is
    pattern-based rather than sourced from known values.
    """
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # Authorization headers
    redacted = re.sub(r"(?i)\bBearer\s+[^\s,;]+", "Bearer [REDACTED]", redacted)
    return redacted


def build_error_payload(
    exc: Exception,
    *,
    provider: str,
    calendar_id: str | None = None,
) -> dict[str, Any]:
    """Build a structured, credential-safe error dict for callers and logs."""
    payload: dict[str, Any] = {
        "status": "error",
        "kind": getattr(exc, "kind", "error"),
        "error_type": type(exc).__name__,
        "error": sanitize_message(redact_credential_values(str(exc))),
        "provider": provider,
    }
    if calendar_id is not None:
        payload["calendar_id"] = calendar_id
    if isinstance(exc, ProviderRequestError):
        payload["status_code"] = exc.status_code
    if isinstance(exc, EventValidationError):
        payload["errors"] = exc.errors
    return payload
