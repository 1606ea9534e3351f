"""HTTP transport capability used by the token manager and sync adapter.

The sync engine needs nothing more than ``request(...) -> (status, json)``.
TLS, connection pooling and transport-level retries belong to the
implementation; :class:`HttpxTransport` delegates all of them to
``httpx.AsyncClient``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from calsync.errors import TransportError, sanitize_message

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class TransportResponse:
    """Status code plus decoded JSON body (``None`` when the body is not JSON)."""

    status: int
    json: Any = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HttpTransport(Protocol):
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
        """Send one request; raise ``TransportError`` on network failures."""
        ...


class HttpxTransport:
    """``HttpTransport`` backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

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
        try:
            response = await self._http_client.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
                data=form,
            )
        except httpx.TransportError as exc:
            logger.warning("%s %s failed at the network layer: %s", method, url, type(exc).__name__)
            raise TransportError(f"{method} {url} failed: {exc}") from exc

        return TransportResponse(
            status=response.status_code,
            json=_decode_json(response),
            text=response.text,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _decode_json(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def provider_error_message(response: TransportResponse) -> str:
    """Pick the most specific error text a failed response offers.

    Preference: the Calendar API's ``error.message``, then OAuth's
    ``error_description`` and ``error`` code, then the raw body.
    """
    payload = response.json if isinstance(response.json, dict) else {}
    error = payload.get("error")
    candidates = (
        error.get("message") if isinstance(error, dict) else None,
        payload.get("error_description"),
        error if isinstance(error, str) else None,
        response.text,
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return sanitize_message(candidate)
    return "Request failed without an error payload"
