"""Canonical, provider-agnostic calendar event.

``Event`` is the record every provider translator maps to and from. Time
boundaries are always timezone-aware; naive values are localized into the
event's IANA ``timezone``. All-day events ignore the time of day: the start is
floored to local midnight and the end is ceiled to the next local midnight, so
an all-day event covers ``[start, end)`` in whole days.

Conflict detection compares only the base occurrence. Recurrence rules are
not expanded, so two recurring series whose later instances overlap are not
reported as conflicting.
"""

from __future__ import annotations

import math
import uuid
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from enum import StrEnum
from typing import Annotated, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_TIMEZONE = "UTC"


class EventStatus(StrEnum):
    """Scheduling state of an event."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class EventVisibility(StrEnum):
    """Who may see the event details."""

    private = "private"
    public = "public"


class AttendeeResponseStatus(StrEnum):
    """RSVP state of an attendee."""

    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


class Frequency(StrEnum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class Weekday(StrEnum):
    """Weekday codes, using the two-letter iCalendar abbreviations."""

    monday = "MO"
    tuesday = "TU"
    wednesday = "WE"
    thursday = "TH"
    friday = "FR"
    saturday = "SA"
    sunday = "SU"


WEEKDAY_ORDER: tuple[Weekday, ...] = tuple(Weekday)


class RecurrenceEndOn(BaseModel):
    """Series ends on (and includes) a calendar date."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["on"] = "on"
    until: date


class RecurrenceEndAfter(BaseModel):
    """Series ends after a fixed number of occurrences."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["after"] = "after"
    count: int = Field(ge=1)


RecurrenceEnd = Annotated[RecurrenceEndOn | RecurrenceEndAfter, Field(discriminator="type")]


class RecurrenceRule(BaseModel):
    """Repetition rule for an event series.

    ``days_of_week`` behaves as a set: duplicates are dropped and the days are
    kept in Monday-first order. It is only meaningful for weekly rules.
    """

    model_config = ConfigDict(extra="forbid")

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    days_of_week: list[Weekday] = Field(default_factory=list)
    end: RecurrenceEnd | None = None

    @field_validator("days_of_week")
    @classmethod
    def _dedupe_days(cls, value: list[Weekday]) -> list[Weekday]:
        return sorted(set(value), key=WEEKDAY_ORDER.index)


class Reminder(BaseModel):
    model_config = ConfigDict(extra="forbid")

    minutes_before_start: int = Field(ge=0)


class Attendee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=1)
    display_name: str | None = None
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.needs_action

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("email must be a non-empty string")
        return normalized


class Event(BaseModel):
    """Canonical time-boxed calendar record.

    ``external_id`` and ``provider`` are either both set (the event mirrors a
    provider record) or both ``None`` (purely local). ``status`` and
    ``visibility`` accept any string at construction time; out-of-range values
    are reported by :meth:`validate` instead of raising.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    external_id: str | None = None
    provider: str | None = None

    title: str = ""
    description: str = ""
    location: str = ""

    start_date: datetime | None = None
    end_date: datetime | None = None
    timezone: str = DEFAULT_TIMEZONE
    is_all_day: bool = False

    recurrence: RecurrenceRule | None = None

    status: str = EventStatus.confirmed
    visibility: str = EventVisibility.private
    color: str | None = None
    reminders: list[Reminder] = Field(default_factory=list)
    attendees: list[Attendee] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            return DEFAULT_TIMEZONE
        ensure_valid_timezone(normalized)
        return normalized

    @field_validator("status", "visibility")
    @classmethod
    def _normalize_enum_text(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("external_id", "provider", "color")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @model_validator(mode="after")
    def _validate_identity(self) -> Event:
        if (self.external_id is None) != (self.provider is None):
            raise ValueError("external_id and provider must both be set or both be empty")
        return self

    @model_validator(mode="after")
    def _normalize_boundaries(self) -> Event:
        tz = ZoneInfo(self.timezone)
        if self.start_date is not None:
            self.start_date = _localize(self.start_date, tz)
        if self.end_date is not None:
            self.end_date = _localize(self.end_date, tz)

        if self.is_all_day:
            if self.start_date is not None:
                self.start_date = _floor_to_midnight(self.start_date, tz)
            if self.end_date is not None:
                self.end_date = _ceil_to_midnight(self.end_date, tz)
        return self

    @model_validator(mode="after")
    def _normalize_audit(self) -> Event:
        self.created_at = _localize(self.created_at, UTC)
        if self.updated_at is None:
            self.updated_at = self.created_at
        else:
            self.updated_at = _localize(self.updated_at, UTC)
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self

    @property
    def is_local(self) -> bool:
        """True when the event is not tied to any external provider."""
        return self.external_id is None

    def duration_minutes(self) -> int:
        """Length in whole minutes, rounded half-up; 0 when a boundary is missing."""
        if self.start_date is None or self.end_date is None:
            return 0
        seconds = (_as_utc(self.end_date) - _as_utc(self.start_date)).total_seconds()
        return math.floor(seconds / 60 + 0.5)

    def is_currently_active(self, now: datetime | None = None) -> bool:
        if self.start_date is None or self.end_date is None:
            return False
        current = _as_utc(now or datetime.now(UTC))
        return _as_utc(self.start_date) <= current <= _as_utc(self.end_date)

    def is_past(self, now: datetime | None = None) -> bool:
        if self.end_date is None:
            return False
        return _as_utc(self.end_date) < _as_utc(now or datetime.now(UTC))

    def is_upcoming(self, now: datetime | None = None) -> bool:
        if self.start_date is None:
            return False
        return _as_utc(self.start_date) > _as_utc(now or datetime.now(UTC))

    def conflicts_with(self, other: Event) -> bool:
        """Return True when the two base occurrences overlap.

        Intervals are treated as half-open, so an event ending exactly when
        the other starts does not conflict.
        """
        if (
            self.start_date is None
            or self.end_date is None
            or other.start_date is None
            or other.end_date is None
        ):
            return False
        return _as_utc(self.start_date) < _as_utc(other.end_date) and _as_utc(
            other.start_date
        ) < _as_utc(self.end_date)

    def formatted_range(self) -> str:
        """Render the time range in English, in the event's timezone."""
        if self.start_date is None:
            return ""

        tz = ZoneInfo(self.timezone)
        start = self.start_date.astimezone(tz)

        if self.is_all_day:
            start_text = _format_date(start.date())
            if self.end_date is None:
                return start_text
            # All-day ends are exclusive midnights; show the last covered day.
            last_day = (self.end_date.astimezone(tz) - timedelta(microseconds=1)).date()
            if last_day <= start.date():
                return start_text
            return f"{start_text} – {_format_date(last_day)}"

        start_text = _format_datetime(start)
        if self.end_date is None:
            return start_text
        end = self.end_date.astimezone(tz)
        if end.date() == start.date():
            return f"{start_text} – {_format_time(end)}"
        return f"{start_text} – {_format_datetime(end)}"

    def validate(self) -> list[str]:  # type: ignore[override]
        """Return the ordered list of violated rules; empty when valid."""
        errors: list[str] = []

        if not self.title.strip():
            errors.append("Title is required")

        if self.start_date is None:
            errors.append("Start date is required")

        if (
            self.start_date is not None
            and self.end_date is not None
            and _as_utc(self.start_date) >= _as_utc(self.end_date)
        ):
            errors.append("End date must be after start date")

        valid_statuses = [status.value for status in EventStatus]
        if self.status not in valid_statuses:
            errors.append("Status must be one of: " + ", ".join(valid_statuses))

        valid_visibilities = [visibility.value for visibility in EventVisibility]
        if self.visibility not in valid_visibilities:
            errors.append("Visibility must be one of: " + ", ".join(valid_visibilities))

        return errors

    def touch(self, now: datetime | None = None) -> None:
        """Refresh ``updated_at`` without ever moving it backwards."""
        current = _as_utc(now or datetime.now(UTC))
        assert self.updated_at is not None
        if current > self.updated_at:
            self.updated_at = current


def ensure_valid_timezone(value: str) -> None:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"timezone must be a valid IANA timezone: {value}") from exc


def _localize(value: datetime, tz: tzinfo) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=tz)
    return value


def _as_utc(value: datetime) -> datetime:
    # Aware datetimes sharing a tzinfo compare by wall clock; UTC avoids DST skew.
    return _localize(value, UTC).astimezone(UTC)


def _floor_to_midnight(value: datetime, tz: tzinfo) -> datetime:
    local = value.astimezone(tz)
    return datetime.combine(local.date(), time(), tzinfo=tz)


def _ceil_to_midnight(value: datetime, tz: tzinfo) -> datetime:
    floored = _floor_to_midnight(value, tz)
    if floored == value.astimezone(tz):
        return floored
    return datetime.combine(floored.date() + timedelta(days=1), time(), tzinfo=tz)


def _format_date(value: date) -> str:
    return value.strftime("%b %d, %Y")


def _format_time(value: datetime) -> str:
    return value.strftime("%I:%M %p")


def _format_datetime(value: datetime) -> str:
    return f"{_format_date(value.date())}, {_format_time(value)}"
