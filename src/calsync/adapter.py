"""Authenticated calendar operations against one provider connection.

Every request goes through :meth:`ProviderSyncAdapter._authorized_request`:
a 401 triggers exactly one token refresh and one retry, and a second 401
fails with ``AuthenticationError``. Any other non-2xx status surfaces as
``ProviderRequestError`` immediately. Nothing is retried beyond that single
auth retry; whether a failed mutation may be resubmitted is the caller's call.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field

from calsync.config import ProviderSettings
from calsync.errors import (
    AuthenticationError,
    EventValidationError,
    ProviderRequestError,
    sanitize_message,
)
from calsync.events import Event
from calsync.tokens import TokenManager
from calsync.transport import HttpTransport, TransportResponse, provider_error_message
from calsync.translator import format_rfc3339, to_external, to_internal

logger = logging.getLogger(__name__)


class SyncPullResult(BaseModel):
    """Events observed by a pull plus the known ids the provider no longer reports.

    ``missing_external_ids`` is always empty when ``truncated`` is set: a
    listing cut short by the limit cannot prove that an event is gone.
    """

    model_config = ConfigDict(extra="forbid")

    events: list[Event] = Field(default_factory=list)
    missing_external_ids: list[str] = Field(default_factory=list)
    truncated: bool = False


class ProviderSyncAdapter:
    """List, create, update and delete provider events for one connection."""

    def __init__(
        self,
        tokens: TokenManager,
        transport: HttpTransport,
        *,
        settings: ProviderSettings | None = None,
    ) -> None:
        self._tokens = tokens
        self._transport = transport
        self._settings = settings or tokens.settings

    @property
    def provider(self) -> str:
        return self._tokens.provider

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_events(
        self,
        calendar_id: str | None = None,
        window_start: datetime | None = None,
        limit: int = 250,
    ) -> list[Event]:
        """Return up to ``limit`` events starting at or after ``window_start``.

        Recurring series are expanded into single instances by the provider
        and the result is ordered by start time.
        """
        events, _ = await self._collect_events(calendar_id, window_start, limit)
        return events

    async def get_event(self, external_id: str, calendar_id: str | None = None) -> Event | None:
        """Fetch a single event; ``None`` when the provider reports 404."""
        response = await self._authorized_request(
            "GET", self._event_url(calendar_id, _require_external_id(external_id))
        )
        if response.status == 404:
            return None
        return self._translate(response, self._json_object(response))

    async def pull(
        self,
        calendar_id: str | None = None,
        window_start: datetime | None = None,
        known_external_ids: Iterable[str] = (),
        limit: int = 250,
    ) -> SyncPullResult:
        """List events and report which ``known_external_ids`` were not seen.

        The adapter never deletes anything itself; reconciling missing ids
        against local records is left to the caller.
        """
        events, truncated = await self._collect_events(calendar_id, window_start, limit)
        if truncated:
            missing: list[str] = []
        else:
            seen = {event.external_id for event in events}
            missing = sorted({external_id for external_id in known_external_ids} - seen)
        logger.info(
            "Pulled %d event(s) from provider=%s (missing=%d, truncated=%s)",
            len(events),
            self.provider,
            len(missing),
            truncated,
        )
        return SyncPullResult(events=events, missing_external_ids=missing, truncated=truncated)

    async def _collect_events(
        self,
        calendar_id: str | None,
        window_start: datetime | None,
        limit: int,
    ) -> tuple[list[Event], bool]:
        if limit < 1:
            raise ValueError("limit must be at least 1")

        base_params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
        }
        if window_start is not None:
            base_params["timeMin"] = format_rfc3339(window_start)

        events: list[Event] = []
        page_token: str | None = None
        while True:
            params = dict(base_params)
            params["maxResults"] = min(limit - len(events), self._settings.page_size)
            if page_token is not None:
                params["pageToken"] = page_token

            response = await self._authorized_request(
                "GET", f"{self._calendar_url(calendar_id)}/events", params=params
            )
            payload = self._json_object(response)
            items = payload.get("items")
            if not isinstance(items, list):
                raise ProviderRequestError(
                    status_code=response.status,
                    message="list response is missing the items array",
                )

            for item in items:
                if isinstance(item, dict):
                    events.append(self._translate(response, item))

            next_token = payload.get("nextPageToken")
            page_token = next_token if isinstance(next_token, str) and next_token else None
            if len(events) >= limit:
                return events[:limit], page_token is not None or len(events) > limit
            if page_token is None:
                return events, False

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_event(self, event: Event, calendar_id: str | None = None) -> Event:
        """Create ``event`` on the provider and return its mirror.

        The returned event keeps ``event.id`` and gains the provider's id.
        """
        _ensure_valid(event)
        response = await self._authorized_request(
            "POST",
            f"{self._calendar_url(calendar_id)}/events",
            json_body=to_external(event),
        )
        created = self._mirror(response, event)
        logger.info(
            "Created event %s on provider=%s as %s", event.id, self.provider, created.external_id
        )
        return created

    async def update_event(
        self,
        external_id: str,
        event: Event,
        calendar_id: str | None = None,
    ) -> Event:
        """Replace the provider record ``external_id`` with ``event``."""
        _ensure_valid(event)
        response = await self._authorized_request(
            "PUT",
            self._event_url(calendar_id, _require_external_id(external_id)),
            json_body=to_external(event),
        )
        updated = self._mirror(response, event)
        logger.info("Updated event %s on provider=%s", updated.external_id, self.provider)
        return updated

    async def delete_event(self, external_id: str, calendar_id: str | None = None) -> None:
        """Delete the provider record. A 404 is reported, not ignored."""
        response = await self._authorized_request(
            "DELETE", self._event_url(calendar_id, _require_external_id(external_id))
        )
        if not response.ok:
            raise ProviderRequestError(
                status_code=response.status,
                message=provider_error_message(response),
            )
        logger.info("Deleted event %s on provider=%s", external_id, self.provider)

    def _mirror(self, response: TransportResponse, event: Event) -> Event:
        return self._translate(
            response,
            self._json_object(response),
            local_id=event.id,
            default_timezone=event.timezone,
        )

    def _translate(
        self,
        response: TransportResponse,
        record: dict[str, Any],
        *,
        local_id: str | None = None,
        default_timezone: str | None = None,
    ) -> Event:
        """Convert one provider record, reporting unreadable records as provider failures.

        A malformed record fails the whole call instead of being skipped, so a
        pull never reports an event as missing just because it could not be read.
        """
        try:
            return to_internal(
                record,
                local_id=local_id,
                default_timezone=default_timezone or self._settings.timezone,
            )
        except ValueError as exc:
            # pydantic.ValidationError is a ValueError subclass.
            logger.warning(
                "Unreadable event %s from provider=%s", record.get("id"), self.provider
            )
            raise ProviderRequestError(
                status_code=response.status,
                message=sanitize_message(f"unreadable event record: {exc}"),
            ) from exc

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _authorized_request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> TransportResponse:
        access_token = await self._tokens.access_token()
        response = await self._send(method, url, access_token, params=params, json_body=json_body)
        if response.status != 401:
            return response

        logger.info(
            "%s %s returned 401 for provider=%s; refreshing access token once",
            method,
            url,
            self.provider,
        )
        access_token = await self._tokens.refresh(stale_token=access_token)
        response = await self._send(method, url, access_token, params=params, json_body=json_body)
        if response.status == 401:
            raise AuthenticationError(
                f"{self.provider} rejected the request after refreshing the access token"
            )
        return response

    async def _send(
        self,
        method: str,
        url: str,
        access_token: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> TransportResponse:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        return await self._transport.request(
            method,
            url,
            headers=headers,
            params=params,
            json_body=json_body,
        )

    @staticmethod
    def _json_object(response: TransportResponse) -> dict[str, Any]:
        if not response.ok:
            raise ProviderRequestError(
                status_code=response.status,
                message=provider_error_message(response),
            )
        if response.status == 204 or response.json is None:
            return {}
        if not isinstance(response.json, dict):
            raise ProviderRequestError(
                status_code=response.status,
                message="provider returned an unexpected JSON payload shape",
            )
        return response.json

    def _calendar_url(self, calendar_id: str | None) -> str:
        normalized = (calendar_id or self._settings.calendar_id).strip()
        if not normalized:
            raise ValueError("calendar_id must be a non-empty string")
        return f"{self._settings.api_base_url}/calendars/{quote(normalized, safe='')}"

    def _event_url(self, calendar_id: str | None, external_id: str) -> str:
        return f"{self._calendar_url(calendar_id)}/events/{quote(external_id, safe='')}"


def _ensure_valid(event: Event) -> None:
    errors = event.validate()
    if errors:
        raise EventValidationError(errors)


def _require_external_id(external_id: str) -> str:
    normalized = external_id.strip()
    if not normalized:
        raise ValueError("external_id must be a non-empty string")
    return normalized
