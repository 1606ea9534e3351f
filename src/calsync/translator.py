"""Translation between canonical ``Event`` objects and Google Calendar records.

Both directions are pure and stateless. Unknown enumerated values never raise;
they fall back to the most conservative value (status ``confirmed``,
visibility ``private``, attendee response ``needsAction``). Recurrence rules
the canonical model cannot represent are dropped rather than approximated.

For events that pass ``Event.validate()`` the round trip
``to_internal(to_external(event))`` preserves title, boundaries, all-day flag,
location and status exactly. Google requires an end on every event, so an
open-ended event is sent with an implied end and a private extended property
that lets the inbound direction drop that end again.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calsync.events import (
    DEFAULT_TIMEZONE,
    Attendee,
    AttendeeResponseStatus,
    Event,
    EventStatus,
    EventVisibility,
    Frequency,
    RecurrenceEndAfter,
    RecurrenceEndOn,
    RecurrenceRule,
    Reminder,
    Weekday,
)

PROVIDER_NAME = "google"
UNTITLED_EVENT_TITLE = "Untitled Event"

# Private extended property marking an end written only because Google requires one.
OPEN_END_PROPERTY = "calsyncOpenEnd"

STATUS_FROM_WIRE: dict[str, EventStatus] = {
    "confirmed": EventStatus.confirmed,
    "tentative": EventStatus.tentative,
    "cancelled": EventStatus.cancelled,
}
STATUS_TO_WIRE: dict[str, str] = {status.value: wire for wire, status in STATUS_FROM_WIRE.items()}
DEFAULT_STATUS = EventStatus.confirmed

# Google's "default" and "confidential" have no canonical counterpart.
VISIBILITY_FROM_WIRE: dict[str, EventVisibility] = {
    "public": EventVisibility.public,
    "private": EventVisibility.private,
}
VISIBILITY_TO_WIRE: dict[str, str] = {
    visibility.value: wire for wire, visibility in VISIBILITY_FROM_WIRE.items()
}
DEFAULT_VISIBILITY = EventVisibility.private

_RESPONSE_STATUS_FROM_WIRE = {status.value: status for status in AttendeeResponseStatus}

# Google Calendar event palette (colorId -> hex).
COLOR_PALETTE: dict[str, str] = {
    "1": "#a4bdfc",
    "2": "#7ae7bf",
    "3": "#dbadff",
    "4": "#ff887c",
    "5": "#fbd75b",
    "6": "#ffb878",
    "7": "#46d6db",
    "8": "#e1e1e1",
    "9": "#5484ed",
    "10": "#51b749",
    "11": "#dc2127",
}
_COLOR_IDS_BY_HEX = {hex_value: color_id for color_id, hex_value in COLOR_PALETTE.items()}

_FREQUENCY_TO_WIRE: dict[Frequency, str] = {
    Frequency.daily: "DAILY",
    Frequency.weekly: "WEEKLY",
    Frequency.monthly: "MONTHLY",
    Frequency.yearly: "YEARLY",
}
_FREQUENCY_FROM_WIRE = {wire: frequency for frequency, wire in _FREQUENCY_TO_WIRE.items()}
_SUPPORTED_RRULE_KEYS = frozenset({"FREQ", "INTERVAL", "BYDAY", "UNTIL", "COUNT", "WKST"})


# ---------------------------------------------------------------------------
# Canonical -> wire
# ---------------------------------------------------------------------------


def to_external(event: Event) -> dict[str, Any]:
    """Build a Google Calendar event body from a canonical event."""
    body: dict[str, Any] = {
        "summary": event.title,
        "status": STATUS_TO_WIRE.get(event.status, DEFAULT_STATUS.value),
        "visibility": VISIBILITY_TO_WIRE.get(event.visibility, DEFAULT_VISIBILITY.value),
    }
    if event.description:
        body["description"] = event.description
    if event.location:
        body["location"] = event.location

    if event.start_date is not None:
        body["start"], body["end"] = _boundaries_to_wire(event)
        if event.end_date is None:
            body["extendedProperties"] = {"private": {OPEN_END_PROPERTY: "true"}}

    if event.recurrence is not None:
        body["recurrence"] = [
            build_rrule(event.recurrence, all_day=event.is_all_day, timezone=event.timezone)
        ]

    color_id = _COLOR_IDS_BY_HEX.get((event.color or "").lower())
    if color_id is not None:
        body["colorId"] = color_id

    if event.reminders:
        body["reminders"] = {
            "useDefault": False,
            "overrides": [
                {"method": "popup", "minutes": reminder.minutes_before_start}
                for reminder in event.reminders
            ],
        }

    if event.attendees:
        body["attendees"] = [_attendee_to_wire(attendee) for attendee in event.attendees]

    return body


def _boundaries_to_wire(event: Event) -> tuple[dict[str, str], dict[str, str]]:
    assert event.start_date is not None
    tz = ZoneInfo(event.timezone)
    start = event.start_date.astimezone(tz)
    end = (
        event.end_date.astimezone(tz)
        if event.end_date is not None
        else _implied_end(start, all_day=event.is_all_day)
    )

    if event.is_all_day:
        # Dates carry no zone of their own; timeZone pins the local midnights.
        return (
            {"date": start.date().isoformat(), "timeZone": event.timezone},
            {"date": end.date().isoformat(), "timeZone": event.timezone},
        )

    return (
        {"dateTime": start.isoformat(), "timeZone": event.timezone},
        {"dateTime": end.isoformat(), "timeZone": event.timezone},
    )


def _implied_end(start: datetime, *, all_day: bool) -> datetime:
    """End sent for an open-ended event: the next midnight, or the start instant."""
    if all_day:
        next_day = start.date() + timedelta(days=1)
        return datetime.combine(next_day, time(), tzinfo=start.tzinfo)
    return start


def _attendee_to_wire(attendee: Attendee) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "email": attendee.email,
        "responseStatus": attendee.response_status.value,
    }
    if attendee.display_name is not None:
        entry["displayName"] = attendee.display_name
    return entry


def build_rrule(rule: RecurrenceRule, *, all_day: bool, timezone: str = DEFAULT_TIMEZONE) -> str:
    """Render a recurrence rule as a single ``RRULE:`` line.

    ``UNTIL`` is a plain date for all-day series and the UTC instant of the
    end of the final day (in ``timezone``) for timed series.
    """
    parts = [f"FREQ={_FREQUENCY_TO_WIRE[rule.frequency]}"]
    if rule.interval != 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.frequency is Frequency.weekly and rule.days_of_week:
        parts.append("BYDAY=" + ",".join(day.value for day in rule.days_of_week))

    if isinstance(rule.end, RecurrenceEndAfter):
        parts.append(f"COUNT={rule.end.count}")
    elif isinstance(rule.end, RecurrenceEndOn):
        if all_day:
            parts.append(f"UNTIL={rule.end.until.strftime('%Y%m%d')}")
        else:
            last_instant = datetime.combine(
                rule.end.until, time(23, 59, 59), tzinfo=_zoneinfo_or_utc(timezone)
            )
            parts.append(f"UNTIL={last_instant.astimezone(UTC).strftime('%Y%m%dT%H%M%SZ')}")

    return "RRULE:" + ";".join(parts)


# ---------------------------------------------------------------------------
# Wire -> canonical
# ---------------------------------------------------------------------------


def to_internal(
    record: dict[str, Any],
    *,
    local_id: str | None = None,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> Event:
    """Build a canonical event from a Google Calendar event record.

    Records without an ``id`` produce a purely local event. ``local_id`` keeps
    the identity of an existing local record the wire record mirrors.

    Raises
    ------
    ValueError
        If a boundary carries an unparseable date or dateTime.
    """
    start_payload = record.get("start")
    if not isinstance(start_payload, dict):
        start_payload = {}
    end_payload = record.get("end")
    if not isinstance(end_payload, dict):
        end_payload = {}

    timezone = (
        _valid_timezone(start_payload.get("timeZone"))
        or _valid_timezone(end_payload.get("timeZone"))
        or _valid_timezone(record.get("timeZone"))
        or default_timezone
    )
    is_all_day = not start_payload.get("dateTime") and not end_payload.get("dateTime")

    start_date = _parse_boundary(start_payload, timezone)
    end_date = _parse_boundary(end_payload, timezone)
    if (
        start_date is not None
        and _has_open_end_marker(record)
        and end_date == _implied_end(start_date, all_day=is_all_day)
    ):
        end_date = None

    external_id = _normalize_optional_text(record.get("id"))
    fields: dict[str, Any] = {
        "external_id": external_id,
        "provider": PROVIDER_NAME if external_id is not None else None,
        "title": _title_from_wire(record.get("summary")),
        "description": _text_or_empty(record.get("description")),
        "location": _text_or_empty(record.get("location")),
        "start_date": start_date,
        "end_date": end_date,
        "timezone": timezone,
        "is_all_day": is_all_day,
        "recurrence": _extract_recurrence(record.get("recurrence"), timezone),
        "status": _lookup(STATUS_FROM_WIRE, record.get("status"), DEFAULT_STATUS),
        "visibility": _lookup(VISIBILITY_FROM_WIRE, record.get("visibility"), DEFAULT_VISIBILITY),
        "color": COLOR_PALETTE.get(str(record.get("colorId") or "").strip()),
        "reminders": _extract_reminders(record.get("reminders")),
        "attendees": _extract_attendees(record.get("attendees")),
    }
    if local_id is not None:
        fields["id"] = local_id

    created_at = _parse_rfc3339_optional(record.get("created"))
    updated_at = _parse_rfc3339_optional(record.get("updated"))
    if created_at is not None and updated_at is not None and updated_at < created_at:
        updated_at = created_at
    created_at = created_at or updated_at
    if created_at is not None:
        fields["created_at"] = created_at
    if updated_at is not None:
        fields["updated_at"] = updated_at

    return Event(**fields)


def parse_rrule(line: str, *, timezone: str = DEFAULT_TIMEZONE) -> RecurrenceRule | None:
    """Parse one ``RRULE:`` line; ``None`` when the rule cannot be represented."""
    normalized = line.strip()
    if not normalized.upper().startswith("RRULE:"):
        return None

    components: dict[str, str] = {}
    for part in normalized[len("RRULE:") :].split(";"):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        components[key.strip().upper()] = value.strip().upper()

    if not components.keys() <= _SUPPORTED_RRULE_KEYS:
        return None
    frequency = _FREQUENCY_FROM_WIRE.get(components.get("FREQ", ""))
    if frequency is None:
        return None
    if "UNTIL" in components and "COUNT" in components:
        return None

    interval_raw = components.get("INTERVAL", "1")
    if not interval_raw.isdigit() or int(interval_raw) < 1:
        return None

    days: list[Weekday] = []
    if "BYDAY" in components:
        if frequency is not Frequency.weekly:
            return None
        for code in components["BYDAY"].split(","):
            try:
                days.append(Weekday(code.strip()))
            except ValueError:
                # Ordinal forms such as "1MO" are not representable.
                return None

    end: RecurrenceEndOn | RecurrenceEndAfter | None = None
    if "COUNT" in components:
        count_raw = components["COUNT"]
        if not count_raw.isdigit() or int(count_raw) < 1:
            return None
        end = RecurrenceEndAfter(count=int(count_raw))
    elif "UNTIL" in components:
        until = _parse_rrule_until(components["UNTIL"], timezone)
        if until is None:
            return None
        end = RecurrenceEndOn(until=until)

    return RecurrenceRule(
        frequency=frequency,
        interval=int(interval_raw),
        days_of_week=days,
        end=end,
    )


def _parse_rrule_until(value: str, timezone: str) -> date | None:
    if value.endswith("Z"):
        value = f"{value[:-1]}+0000"
    for pattern in ("%Y%m%dT%H%M%S%z", "%Y%m%dT%H%M%S", "%Y%m%d"):
        try:
            parsed = datetime.strptime(value, pattern)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            return parsed.date()
        return parsed.astimezone(_zoneinfo_or_utc(timezone)).date()
    return None


def _extract_recurrence(payload: Any, timezone: str) -> RecurrenceRule | None:
    if not isinstance(payload, list):
        return None
    for entry in payload:
        if isinstance(entry, str) and entry.strip().upper().startswith("RRULE:"):
            return parse_rrule(entry, timezone=timezone)
    return None


def _extract_reminders(payload: Any) -> list[Reminder]:
    if not isinstance(payload, dict):
        return []
    overrides = payload.get("overrides")
    if not isinstance(overrides, list):
        return []
    reminders: list[Reminder] = []
    for entry in overrides:
        if not isinstance(entry, dict):
            continue
        minutes = entry.get("minutes")
        if isinstance(minutes, int) and not isinstance(minutes, bool) and minutes >= 0:
            reminders.append(Reminder(minutes_before_start=minutes))
    return reminders


def _extract_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []

    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        attendees.append(
            Attendee(
                email=email,
                display_name=_normalize_optional_text(entry.get("displayName")),
                response_status=_lookup(
                    _RESPONSE_STATUS_FROM_WIRE,
                    entry.get("responseStatus"),
                    AttendeeResponseStatus.needs_action,
                    lowercase=False,
                ),
            )
        )
    return attendees


def _parse_boundary(payload: dict[str, Any], timezone: str) -> datetime | None:
    tz = ZoneInfo(timezone)

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_rfc3339(date_time).astimezone(tz)

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(f"Google Calendar returned an invalid date value: {date_value}") from exc
        return datetime.combine(parsed_date, time(), tzinfo=tz)

    return None


def parse_rfc3339(value: str) -> datetime:
    """Parse a wire timestamp into an aware datetime; offset-less values are UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"invalid RFC 3339 timestamp {value!r}") from exc
    return _as_utc_if_naive(parsed)


def format_rfc3339(value: datetime) -> str:
    """Render ``value`` as a ``Z``-suffixed UTC timestamp (``timeMin`` and friends)."""
    instant = _as_utc_if_naive(value).astimezone(UTC)
    return f"{instant.replace(tzinfo=None).isoformat()}Z"


def _as_utc_if_naive(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _title_from_wire(value: Any) -> str:
    # Non-blank titles are kept verbatim, surrounding whitespace included.
    if isinstance(value, str) and value.strip():
        return value
    return UNTITLED_EVENT_TITLE


def _has_open_end_marker(record: dict[str, Any]) -> bool:
    extended = record.get("extendedProperties")
    private = extended.get("private") if isinstance(extended, dict) else None
    return isinstance(private, dict) and private.get(OPEN_END_PROPERTY) == "true"


def _parse_rfc3339_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_rfc3339(value)
    except ValueError:
        return None


def _lookup(table: dict[str, Any], value: Any, default: Any, *, lowercase: bool = True) -> Any:
    if not isinstance(value, str):
        return default
    key = value.strip().lower() if lowercase else value.strip()
    return table.get(key, default)


def _valid_timezone(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        ZoneInfo(value.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return None
    return value.strip()


def _zoneinfo_or_utc(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _text_or_empty(value: Any) -> str:
    return value if isinstance(value, str) else ""
