"""Shared fixtures for the calsync test suite."""

from __future__ import annotations

import inspect
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pytest

from calsync.adapter import ProviderSyncAdapter
from calsync.config import GOOGLE_CALENDAR_API_BASE_URL, GOOGLE_OAUTH_TOKEN_URL, ProviderSettings
from calsync.tokens import ProviderConnection, TokenManager
from calsync.transport import TransportResponse

TOKEN_URL = GOOGLE_OAUTH_TOKEN_URL
EVENTS_URL = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"
FIXED_NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] | None = None
    json_body: dict[str, Any] | None = None
    form: dict[str, str] | None = None

    @property
    def bearer(self) -> str | None:
        value = self.headers.get("Authorization", "")
        return value.removeprefix("Bearer ") if value.startswith("Bearer ") else None


Reply = TransportResponse | BaseException | Callable[[RecordedRequest], Any]


class ScriptedTransport:
    """``HttpTransport`` fake that replays queued replies per (method, url).

    A reply is a ``TransportResponse``, an exception to raise, or a (sync or
    async) callable receiving the ``RecordedRequest``. Unscripted requests
    fail the test loudly.
    """

    def __init__(self) -> None:
        self.requests: list[RecordedRequest] = []
        self._replies: dict[tuple[str, str], deque[Reply]] = {}

    def add(self, method: str, url: str, *replies: Reply) -> ScriptedTransport:
        self._replies.setdefault((method.upper(), url), deque()).extend(replies)
        return self

    def calls(self, method: str, url: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.method == method.upper() and r.url == url]

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        form: dict[str, str] | None = None,
    ) -> TransportResponse:
        recorded = RecordedRequest(
            method=method.upper(),
            url=url,
            headers=dict(headers or {}),
            params=dict(params) if params is not None else None,
            json_body=json_body,
            form=dict(form) if form is not None else None,
        )
        self.requests.append(recorded)

        queue = self._replies.get((recorded.method, url))
        if not queue:
            raise AssertionError(f"unexpected request: {recorded.method} {url}")
        reply = queue.popleft()

        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            result = reply(recorded)
            if inspect.isawaitable(result):
                result = await result
            return result
        return reply

    async def __aenter__(self) -> ScriptedTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None


def token_response(access_token: str, **extra: Any) -> TransportResponse:
    return TransportResponse(
        status=200,
        json={"access_token": access_token, "expires_in": 3600, **extra},
    )


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def settings() -> ProviderSettings:
    return ProviderSettings()


@pytest.fixture
def connection() -> ProviderConnection:
    return ProviderConnection(
        client_id="client-id",
        client_secret="client-secret",
        access_token="access-1",
        refresh_token="refresh-1",
    )


@pytest.fixture
def token_manager(
    transport: ScriptedTransport,
    settings: ProviderSettings,
    connection: ProviderConnection,
) -> TokenManager:
    return TokenManager(
        transport,
        settings=settings,
        connection=connection,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def adapter(token_manager: TokenManager, transport: ScriptedTransport) -> ProviderSyncAdapter:
    return ProviderSyncAdapter(token_manager, transport)
