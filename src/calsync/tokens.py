"""OAuth2 token lifecycle for one provider connection.

State machine::

    unconfigured --(client credentials)--> unauthenticated
    unauthenticated --(exchange_code)--> authenticated
    authenticated --(refresh)--> authenticating --> authenticated
                                              \\--> unauthenticated (no usable refresh token)
    any --(revoke)--> revoked (terminal)

The state is derived from the connection data and the in-flight refresh, so
it can never disagree with the tokens actually held.

Refreshes are single-flight: every caller that needs a new token while a
refresh is running awaits the same ``asyncio.Task``. The task is shielded, so
a caller that abandons its await cannot cancel the refresh for the others.
Tokens are swapped only after the token endpoint's response has been fully
parsed; a failed or abandoned refresh never leaves half-updated state.

A ``TokenManager`` exclusively owns its ``ProviderConnection``; two managers
must never share one connection, or they would race each other's refreshes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from urllib.parse import quote, urlencode

from pydantic import BaseModel, ConfigDict

from calsync.config import ConnectionConfig, ProviderSettings
from calsync.errors import (
    AuthenticationError,
    AuthExchangeError,
    ConfigurationError,
    NoRefreshTokenError,
    ProviderRequestError,
    RefreshRejectedError,
    TransportError,
    sanitize_message,
)
from calsync.transport import HttpTransport, TransportResponse, provider_error_message

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600
# Token-endpoint statuses that mean "try later", not "this grant is dead".
_RETRIABLE_CLIENT_STATUSES = {408, 429}


class ConnectionState(StrEnum):
    unconfigured = "unconfigured"
    unauthenticated = "unauthenticated"
    authenticated = "authenticated"
    authenticating = "authenticating"
    revoked = "revoked"


class ProviderConnection(BaseModel):
    """Credentials and tokens for one provider connection."""

    model_config = ConfigDict(extra="forbid")

    provider: str = "google"
    client_id: str | None = None
    client_secret: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            "ProviderConnection("
            f"provider={self.provider!r}, "
            f"client_id={self.client_id!r}, "
            f"client_secret={'<REDACTED>' if self.client_secret else None}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r})"
        )

    __str__ = __repr__


class ConnectStatus(StrEnum):
    connected = "connected"
    requires_auth = "requires_auth"
    requires_setup = "requires_setup"


class ConnectResult(BaseModel):
    """Outcome of :meth:`TokenManager.connect`.

    ``requires_auth`` carries the authorization URL the user must visit;
    ``requires_setup`` means client credentials must be configured first.
    ``reachable`` is only set when the connection was verified.
    """

    model_config = ConfigDict(extra="forbid")

    status: ConnectStatus
    authorization_url: str | None = None
    reachable: bool | None = None
    message: str | None = None

    @property
    def requires_auth(self) -> bool:
        return self.status is ConnectStatus.requires_auth

    @property
    def requires_setup(self) -> bool:
        return self.status is ConnectStatus.requires_setup


class TokenManager:
    """Holds, refreshes and revokes the tokens of one provider connection."""

    def __init__(
        self,
        transport: HttpTransport,
        *,
        settings: ProviderSettings | None = None,
        connection: ProviderConnection | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings or ProviderSettings()
        self._connection = connection or ProviderConnection(provider=self._settings.provider)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._revoked = False
        self._refresh_task: asyncio.Task[str] | None = None

    @property
    def settings(self) -> ProviderSettings:
        return self._settings

    @property
    def provider(self) -> str:
        return self._connection.provider

    @property
    def state(self) -> ConnectionState:
        if self._revoked:
            return ConnectionState.revoked
        if self._refresh_in_flight():
            return ConnectionState.authenticating
        if not self._is_configured():
            return ConnectionState.unconfigured
        if self._connection.access_token is None:
            return ConnectionState.unauthenticated
        return ConnectionState.authenticated

    def snapshot(self) -> ProviderConnection:
        """Copy of the connection for the storage layer to persist."""
        return self._connection.model_copy()

    # ------------------------------------------------------------------
    # Connection setup
    # ------------------------------------------------------------------

    async def connect(
        self,
        config: ConnectionConfig | Mapping[str, Any] | None = None,
        *,
        verify: bool = True,
        redirect_uri: str | None = None,
        state: str | None = None,
    ) -> ConnectResult:
        """Load credentials and report what the caller must do next.

        Client credentials omitted from ``config`` fall back to those the
        manager already holds. Without tokens the result is ``requires_auth``
        with an authorization URL for the out-of-band OAuth exchange.

        Raises
        ------
        ConfigurationError
            If tokens were supplied without client credentials: such a
            connection can neither refresh nor re-authorize.
        """
        if self._revoked:
            raise ConfigurationError("Connection was revoked; create a new connection to reconnect")

        cfg = (
            config
            if isinstance(config, ConnectionConfig)
            else ConnectionConfig.model_validate(dict(config or {}))
        )
        client_id = cfg.client_id or self._connection.client_id
        client_secret = cfg.client_secret or self._connection.client_secret

        if client_id is None or client_secret is None:
            if cfg.access_token is not None or cfg.refresh_token is not None:
                raise ConfigurationError(
                    f"{self.provider} client ID and secret are required to use stored tokens"
                )
            logger.info("Connection for provider=%s requires client credentials", self.provider)
            return ConnectResult(
                status=ConnectStatus.requires_setup,
                message=(
                    f"{self.provider} client ID and secret are required. "
                    "Configure them before connecting."
                ),
            )

        self._connection = ProviderConnection(
            provider=self.provider,
            client_id=client_id,
            client_secret=client_secret,
            access_token=cfg.access_token,
            refresh_token=cfg.refresh_token,
            expires_at=cfg.expires_at,
        )

        if cfg.access_token is None and cfg.refresh_token is None:
            return self._requires_auth(redirect_uri=redirect_uri, state=state)

        if not verify:
            return ConnectResult(status=ConnectStatus.connected)

        try:
            if self._connection.access_token is None:
                await self.refresh()
        except (NoRefreshTokenError, RefreshRejectedError):
            return self._requires_auth(redirect_uri=redirect_uri, state=state)
        except (TransportError, ProviderRequestError) as exc:
            logger.warning(
                "Could not verify connection for provider=%s: %s", self.provider, exc.kind
            )
            return ConnectResult(status=ConnectStatus.connected, reachable=False)

        reachable = await self.test_connection()
        return ConnectResult(status=ConnectStatus.connected, reachable=reachable)

    def authorization_url(self, *, redirect_uri: str | None = None, state: str | None = None) -> str:
        """Build the provider's consent URL for the authorization-code flow."""
        if self._connection.client_id is None:
            raise ConfigurationError(f"{self.provider} client ID is required to build an auth URL")
        params = {
            "client_id": self._connection.client_id,
            "redirect_uri": redirect_uri or self._settings.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._settings.scopes),
            "access_type": "offline",
            "prompt": "consent",  # Force a refresh token to be returned
        }
        if state is not None:
            params["state"] = state
        return f"{self._settings.authorization_url}?{urlencode(params)}"

    def _requires_auth(self, *, redirect_uri: str | None, state: str | None) -> ConnectResult:
        return ConnectResult(
            status=ConnectStatus.requires_auth,
            authorization_url=self.authorization_url(redirect_uri=redirect_uri, state=state),
            message="Authorization required",
        )

    # ------------------------------------------------------------------
    # Token acquisition
    # ------------------------------------------------------------------

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> ProviderConnection:
        """Exchange a one-shot authorization code for access and refresh tokens."""
        self._require_configured()
        normalized_code = code.strip()
        if not normalized_code:
            raise ValueError("code must be a non-empty string")

        response = await self._transport.request(
            "POST",
            self._settings.token_url,
            headers={"Accept": "application/json"},
            form={
                "client_id": self._connection.client_id or "",
                "client_secret": self._connection.client_secret or "",
                "code": normalized_code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri or self._settings.redirect_uri,
            },
        )

        payload = response.json if isinstance(response.json, dict) else {}
        if not response.ok or payload.get("error"):
            description = payload.get("error_description") or payload.get("error")
            if not isinstance(description, str) or not description.strip():
                description = provider_error_message(response)
            logger.warning(
                "Authorization code exchange rejected by provider=%s (status=%d)",
                self.provider,
                response.status,
            )
            raise AuthExchangeError(sanitize_message(description))

        access_token = _non_empty_string(payload.get("access_token"))
        if access_token is None:
            raise AuthExchangeError("token response is missing a non-empty access_token")

        refresh_token = _non_empty_string(payload.get("refresh_token"))
        self._connection = self._connection.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": refresh_token or self._connection.refresh_token,
                "expires_at": self._expiry_from(payload),
            }
        )
        logger.info(
            "Authorization code exchanged for provider=%s (refresh_token=%s)",
            self.provider,
            "received" if refresh_token else "absent",
        )
        return self.snapshot()

    async def access_token(self) -> str:
        """Return a usable access token, waiting for or starting a refresh.

        Raises
        ------
        AuthenticationError
            If neither an access token nor a refresh token is held.
        """
        self._require_configured()
        if self._refresh_task is not None and not self._refresh_task.done():
            return await asyncio.shield(self._refresh_task)
        if self._connection.access_token is not None:
            return self._connection.access_token
        if self._connection.refresh_token is not None:
            return await self.refresh()
        raise AuthenticationError(
            f"{self.provider} connection is not authenticated; complete the authorization flow"
        )

    async def refresh(self, *, stale_token: str | None = None) -> str:
        """Obtain a new access token from the refresh token.

        ``stale_token`` is the token a caller just saw rejected. If another
        caller has already replaced it, the current token is returned without
        contacting the provider.

        Raises
        ------
        NoRefreshTokenError
            If no refresh token is held.
        RefreshRejectedError
            If the provider rejects the refresh token. Not retried.
        """
        self._require_configured()
        if not self._refresh_in_flight():
            current = self._connection.access_token
            if stale_token is not None and current is not None and current != stale_token:
                return current
            self._refresh_task = asyncio.create_task(self._refresh_access_token())
            self._refresh_task.add_done_callback(self._on_refresh_done)
        assert self._refresh_task is not None
        return await asyncio.shield(self._refresh_task)

    def _on_refresh_done(self, task: asyncio.Task[str]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved; awaiting callers re-raise it themselves.
            task.exception()

    async def _refresh_access_token(self) -> str:
        refresh_token = self._connection.refresh_token
        if refresh_token is None:
            self._connection = self._connection.model_copy(
                update={"access_token": None, "expires_at": None}
            )
            raise NoRefreshTokenError(
                f"No refresh token available for {self.provider}; re-authorization required"
            )

        logger.info("Refreshing access token for provider=%s", self.provider)
        response = await self._transport.request(
            "POST",
            self._settings.token_url,
            headers={"Accept": "application/json"},
            form={
                "client_id": self._connection.client_id or "",
                "client_secret": self._connection.client_secret or "",
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )

        if self._revoked:
            raise ConfigurationError("Connection was revoked while a refresh was in flight")

        if 400 <= response.status < 500 and response.status not in _RETRIABLE_CLIENT_STATUSES:
            self._connection = self._connection.model_copy(
                update={"access_token": None, "refresh_token": None, "expires_at": None}
            )
            logger.warning(
                "Refresh token rejected by provider=%s (status=%d)",
                self.provider,
                response.status,
            )
            raise RefreshRejectedError(
                f"{self.provider} rejected the refresh token ({response.status}): "
                f"{provider_error_message(response)}"
            )

        if not response.ok:
            raise ProviderRequestError(
                status_code=response.status,
                message=provider_error_message(response),
            )

        payload = response.json if isinstance(response.json, dict) else {}
        access_token = _non_empty_string(payload.get("access_token"))
        if access_token is None:
            raise ProviderRequestError(
                status_code=response.status,
                message="token response is missing a non-empty access_token",
            )
        rotated_refresh_token = _non_empty_string(payload.get("refresh_token"))

        self._connection = self._connection.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": rotated_refresh_token or refresh_token,
                "expires_at": self._expiry_from(payload),
            }
        )
        logger.info("Access token refreshed for provider=%s", self.provider)
        return access_token

    # ------------------------------------------------------------------
    # Disconnect and probing
    # ------------------------------------------------------------------

    async def revoke(self) -> None:
        """Notify the provider (best effort) and always clear local tokens."""
        token = self._connection.access_token or self._connection.refresh_token
        if token is not None and not self._revoked:
            try:
                response = await self._transport.request(
                    "POST",
                    self._settings.revocation_url,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    form={"token": token},
                )
            except TransportError as exc:
                logger.warning("Token revocation for provider=%s failed: %s", self.provider, exc)
            else:
                if not response.ok:
                    logger.warning(
                        "Token revocation for provider=%s returned status=%d",
                        self.provider,
                        response.status,
                    )

        self._connection = self._connection.model_copy(
            update={"access_token": None, "refresh_token": None, "expires_at": None}
        )
        self._revoked = True
        logger.info("Connection for provider=%s revoked", self.provider)

    async def test_connection(self) -> bool:
        """Probe the provider with the current token. Never refreshes."""
        token = self._connection.access_token
        if token is None or self._revoked:
            return False
        calendar_id = quote(self._settings.calendar_id, safe="")
        try:
            response: TransportResponse = await self._transport.request(
                "GET",
                f"{self._settings.api_base_url}/calendars/{calendar_id}",
                headers={"Authorization": f"Bearer {token}"},
            )
        except TransportError as exc:
            logger.info("Connection probe for provider=%s failed: %s", self.provider, exc)
            return False
        return response.ok

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_configured(self) -> bool:
        return self._connection.client_id is not None and self._connection.client_secret is not None

    def _refresh_in_flight(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def _require_configured(self) -> None:
        if self._revoked:
            raise ConfigurationError(f"{self.provider} connection was revoked")
        if not self._is_configured():
            raise ConfigurationError(f"{self.provider} client ID and secret are not configured")

    def _expiry_from(self, payload: dict[str, Any]) -> datetime:
        return self._clock() + _token_lifetime(payload.get("expires_in"))


def _non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _token_lifetime(value: Any) -> timedelta:
    """Lifetime announced by ``expires_in``; the provider default when unusable."""
    if isinstance(value, str):
        value = int(value.strip()) if value.strip().isdigit() else None
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return timedelta(seconds=DEFAULT_EXPIRES_IN_SECONDS)
    return timedelta(seconds=int(value))
