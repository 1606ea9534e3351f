"""Reconcile pulled provider events into a local event store.

Conflict policy is "last write observed": a pulled record overwrites the
mirrored fields of its local counterpart, keeping the local ``id`` and
``created_at``. Local mirrors whose ids the provider no longer reports are
deleted, unless the pull was truncated.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from calsync.adapter import ProviderSyncAdapter
from calsync.events import Event

logger = logging.getLogger(__name__)

# Fields owned by the provider record and overwritten on every observed change.
MIRRORED_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "location",
    "start_date",
    "end_date",
    "timezone",
    "is_all_day",
    "recurrence",
    "status",
    "visibility",
    "color",
    "reminders",
    "attendees",
)


class EventStore(Protocol):
    async def get_by_external_id(self, provider: str, external_id: str) -> Event | None: ...

    async def upsert(self, event: Event) -> None: ...

    async def delete(self, event_id: str) -> bool: ...

    async def list_by_provider(self, provider: str) -> list[Event]: ...


class InMemoryEventStore:
    """``EventStore`` kept in a dict; stores and returns copies."""

    def __init__(self, events: list[Event] | None = None) -> None:
        self._events: dict[str, Event] = {}
        for event in events or []:
            self._events[event.id] = event.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._events)

    async def get(self, event_id: str) -> Event | None:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event is not None else None

    async def get_by_external_id(self, provider: str, external_id: str) -> Event | None:
        for event in self._events.values():
            if event.provider == provider and event.external_id == external_id:
                return event.model_copy(deep=True)
        return None

    async def upsert(self, event: Event) -> None:
        self._events[event.id] = event.model_copy(deep=True)

    async def delete(self, event_id: str) -> bool:
        return self._events.pop(event_id, None) is not None

    async def list_by_provider(self, provider: str) -> list[Event]:
        return [
            event.model_copy(deep=True)
            for event in self._events.values()
            if event.provider == provider
        ]


class ReconcileResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    truncated: bool = False


def has_event_changes(existing: Event, pulled: Event) -> bool:
    """True when any mirrored field differs between the two events."""
    return any(getattr(existing, name) != getattr(pulled, name) for name in MIRRORED_FIELDS)


async def reconcile_pull(
    adapter: ProviderSyncAdapter,
    store: EventStore,
    *,
    calendar_id: str | None = None,
    window_start: datetime | None = None,
    limit: int = 250,
    now: datetime | None = None,
) -> ReconcileResult:
    """Pull one calendar window and apply the result to ``store``."""
    provider = adapter.provider
    mirrors = {
        event.external_id: event
        for event in await store.list_by_provider(provider)
        if event.external_id is not None
    }
    known = [
        external_id
        for external_id, event in mirrors.items()
        if _within_window(event, window_start)
    ]

    pulled = await adapter.pull(
        calendar_id=calendar_id,
        window_start=window_start,
        known_external_ids=known,
        limit=limit,
    )

    result = ReconcileResult(truncated=pulled.truncated)
    for incoming in pulled.events:
        existing = mirrors.get(incoming.external_id) if incoming.external_id else None
        if existing is None:
            await store.upsert(incoming)
            result.created += 1
            continue
        if not has_event_changes(existing, incoming):
            result.unchanged += 1
            continue
        merged = existing.model_copy(
            update={name: getattr(incoming, name) for name in MIRRORED_FIELDS}
        )
        merged.touch(now)
        await store.upsert(merged)
        result.updated += 1

    for external_id in pulled.missing_external_ids:
        if await store.delete(mirrors[external_id].id):
            result.deleted += 1

    logger.info(
        "Reconciled provider=%s: created=%d updated=%d unchanged=%d deleted=%d truncated=%s",
        provider,
        result.created,
        result.updated,
        result.unchanged,
        result.deleted,
        result.truncated,
    )
    return result


def _within_window(event: Event, window_start: datetime | None) -> bool:
    # The provider lists events that end after the window start.
    if window_start is None or event.end_date is None:
        return True
    if window_start.tzinfo is None:
        window_start = window_start.replace(tzinfo=UTC)
    return event.end_date > window_start
