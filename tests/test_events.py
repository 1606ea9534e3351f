"""Tests for the canonical Event entity."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from calsync.events import (
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

pytestmark = pytest.mark.unit

BERLIN = ZoneInfo("Europe/Berlin")


def _event(start: datetime, end: datetime | None, **kwargs) -> Event:
    return Event(title=kwargs.pop("title", "Meeting"), start_date=start, end_date=end, **kwargs)


# ---------------------------------------------------------------------------
# Construction and defaults
# ---------------------------------------------------------------------------


class TestDefaults:
    def test_new_event_is_local_with_generated_id(self):
        event = Event(title="Lunch")
        assert event.is_local
        assert event.external_id is None
        assert event.provider is None
        assert len(event.id) == 32

    def test_default_status_visibility_and_timezone(self):
        event = Event(title="Lunch")
        assert event.status == EventStatus.confirmed
        assert event.visibility == EventVisibility.private
        assert event.timezone == "UTC"
        assert event.reminders == []
        assert event.attendees == []

    def test_updated_at_defaults_to_created_at(self):
        created = datetime(2024, 1, 1, tzinfo=UTC)
        event = Event(title="Lunch", created_at=created)
        assert event.updated_at == created

    def test_updated_before_created_is_rejected(self):
        with pytest.raises(ValidationError, match="updated_at"):
            Event(
                title="Lunch",
                created_at=datetime(2024, 1, 2, tzinfo=UTC),
                updated_at=datetime(2024, 1, 1, tzinfo=UTC),
            )

    def test_external_id_requires_provider(self):
        with pytest.raises(ValidationError, match="external_id and provider"):
            Event(title="Lunch", external_id="abc")

    def test_mirror_of_provider_record_is_not_local(self):
        event = Event(title="Lunch", external_id="abc", provider="google")
        assert not event.is_local

    def test_invalid_timezone_is_rejected(self):
        with pytest.raises(ValidationError, match="IANA"):
            Event(title="Lunch", timezone="Mars/Olympus")

    def test_status_and_visibility_are_normalized(self):
        event = Event(title="Lunch", status=" Tentative ", visibility="PUBLIC")
        assert event.status == "tentative"
        assert event.visibility == "public"

    def test_naive_boundaries_are_localized_to_event_timezone(self):
        event = _event(
            datetime(2024, 3, 1, 9, 0),
            datetime(2024, 3, 1, 10, 0),
            timezone="Europe/Berlin",
        )
        assert event.start_date == datetime(2024, 3, 1, 8, 0, tzinfo=UTC)
        assert event.end_date == datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


class TestAllDayNormalization:
    def test_boundaries_snap_to_local_midnights(self):
        event = _event(
            datetime(2024, 5, 10, 14, 30, tzinfo=BERLIN),
            datetime(2024, 5, 11, 9, 0, tzinfo=BERLIN),
            timezone="Europe/Berlin",
            is_all_day=True,
        )
        assert event.start_date == datetime(2024, 5, 10, tzinfo=BERLIN)
        assert event.end_date == datetime(2024, 5, 12, tzinfo=BERLIN)

    def test_midnight_end_is_kept(self):
        event = _event(
            datetime(2024, 5, 10, tzinfo=UTC),
            datetime(2024, 5, 11, tzinfo=UTC),
            is_all_day=True,
        )
        assert event.end_date == datetime(2024, 5, 11, tzinfo=UTC)
        assert event.duration_minutes() == 24 * 60


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


class TestRecurrenceRule:
    def test_days_of_week_are_deduplicated_and_ordered(self):
        rule = RecurrenceRule(
            frequency=Frequency.weekly,
            days_of_week=[Weekday.friday, Weekday.monday, Weekday.friday],
        )
        assert rule.days_of_week == [Weekday.monday, Weekday.friday]

    def test_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            RecurrenceRule(frequency=Frequency.daily, interval=0)

    def test_end_is_a_tagged_union(self):
        on = RecurrenceRule.model_validate(
            {"frequency": "daily", "end": {"type": "on", "until": "2024-06-30"}}
        )
        after = RecurrenceRule.model_validate(
            {"frequency": "daily", "end": {"type": "after", "count": 5}}
        )
        assert on.end == RecurrenceEndOn(until=date(2024, 6, 30))
        assert after.end == RecurrenceEndAfter(count=5)

    def test_count_must_be_positive(self):
        with pytest.raises(ValidationError):
            RecurrenceEndAfter(count=0)


class TestReminderAndAttendee:
    def test_negative_reminder_is_rejected(self):
        with pytest.raises(ValidationError):
            Reminder(minutes_before_start=-5)

    def test_attendee_defaults_to_needs_action(self):
        attendee = Attendee(email="  ada@example.com ")
        assert attendee.email == "ada@example.com"
        assert attendee.response_status is AttendeeResponseStatus.needs_action

    def test_blank_attendee_email_is_rejected(self):
        with pytest.raises(ValidationError):
            Attendee(email="   ")


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------


class TestDuration:
    def test_duration_in_minutes(self):
        start = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)
        assert _event(start, start + timedelta(minutes=15)).duration_minutes() == 15

    def test_duration_rounds_half_up(self):
        start = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)
        assert _event(start, start + timedelta(seconds=90)).duration_minutes() == 2
        assert _event(start, start + timedelta(seconds=89)).duration_minutes() == 1

    def test_duration_is_zero_without_end(self):
        assert _event(datetime(2024, 1, 2, tzinfo=UTC), None).duration_minutes() == 0

    def test_duration_across_dst_uses_elapsed_time(self):
        # Europe/Berlin springs forward at 02:00 on 2024-03-31.
        event = _event(
            datetime(2024, 3, 31, 1, 0, tzinfo=BERLIN),
            datetime(2024, 3, 31, 4, 0, tzinfo=BERLIN),
            timezone="Europe/Berlin",
        )
        assert event.duration_minutes() == 120


class TestTemporalQueries:
    start = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)
    end = datetime(2024, 1, 2, 10, 0, tzinfo=UTC)

    def test_currently_active_includes_both_boundaries(self):
        event = _event(self.start, self.end)
        assert event.is_currently_active(self.start)
        assert event.is_currently_active(self.end)
        assert not event.is_currently_active(self.end + timedelta(seconds=1))

    def test_past_and_upcoming(self):
        event = _event(self.start, self.end)
        assert event.is_upcoming(self.start - timedelta(minutes=1))
        assert not event.is_past(self.start - timedelta(minutes=1))
        assert event.is_past(self.end + timedelta(minutes=1))
        assert not event.is_upcoming(self.end + timedelta(minutes=1))

    def test_missing_dates_are_never_active(self):
        event = Event(title="Someday")
        assert not event.is_currently_active(self.start)
        assert not event.is_past(self.start)
        assert not event.is_upcoming(self.start)


class TestConflicts:
    def test_overlapping_events_conflict_symmetrically(self):
        a = _event(datetime(2024, 1, 2, 9, tzinfo=UTC), datetime(2024, 1, 2, 10, tzinfo=UTC))
        b = _event(datetime(2024, 1, 2, 9, 30, tzinfo=UTC), datetime(2024, 1, 2, 11, tzinfo=UTC))
        assert a.conflicts_with(b)
        assert b.conflicts_with(a)

    def test_touching_events_do_not_conflict(self):
        a = _event(datetime(2024, 1, 2, 9, tzinfo=UTC), datetime(2024, 1, 2, 10, tzinfo=UTC))
        b = _event(datetime(2024, 1, 2, 10, tzinfo=UTC), datetime(2024, 1, 2, 11, tzinfo=UTC))
        assert not a.conflicts_with(b)
        assert not b.conflicts_with(a)

    def test_conflicts_compare_instants_across_timezones(self):
        utc = _event(datetime(2024, 1, 2, 9, tzinfo=UTC), datetime(2024, 1, 2, 10, tzinfo=UTC))
        berlin = _event(
            datetime(2024, 1, 2, 10, 30, tzinfo=BERLIN),
            datetime(2024, 1, 2, 11, 30, tzinfo=BERLIN),
            timezone="Europe/Berlin",
        )
        assert utc.conflicts_with(berlin)

    def test_missing_dates_never_conflict(self):
        a = _event(datetime(2024, 1, 2, 9, tzinfo=UTC), datetime(2024, 1, 2, 10, tzinfo=UTC))
        assert not a.conflicts_with(Event(title="Someday"))

    def test_recurrence_is_not_expanded(self):
        weekly = RecurrenceRule(frequency=Frequency.weekly, days_of_week=[Weekday.tuesday])
        a = _event(
            datetime(2024, 1, 2, 9, tzinfo=UTC),
            datetime(2024, 1, 2, 10, tzinfo=UTC),
            recurrence=weekly,
        )
        b = _event(datetime(2024, 1, 9, 9, tzinfo=UTC), datetime(2024, 1, 9, 10, tzinfo=UTC))
        assert not a.conflicts_with(b)


class TestFormattedRange:
    def test_same_day_timed_range(self):
        event = _event(
            datetime(2024, 1, 2, 9, 0, tzinfo=UTC), datetime(2024, 1, 2, 9, 15, tzinfo=UTC)
        )
        assert event.formatted_range() == "Jan 02, 2024, 09:00 AM – 09:15 AM"

    def test_multi_day_timed_range(self):
        event = _event(
            datetime(2024, 1, 2, 22, 0, tzinfo=UTC), datetime(2024, 1, 3, 1, 0, tzinfo=UTC)
        )
        assert event.formatted_range() == "Jan 02, 2024, 10:00 PM – Jan 03, 2024, 01:00 AM"

    def test_range_is_rendered_in_event_timezone(self):
        event = _event(
            datetime(2024, 1, 2, 8, 0, tzinfo=UTC),
            datetime(2024, 1, 2, 9, 0, tzinfo=UTC),
            timezone="Europe/Berlin",
        )
        assert event.formatted_range() == "Jan 02, 2024, 09:00 AM – 10:00 AM"

    def test_single_all_day(self):
        event = _event(
            datetime(2024, 1, 2, tzinfo=UTC), datetime(2024, 1, 3, tzinfo=UTC), is_all_day=True
        )
        assert event.formatted_range() == "Jan 02, 2024"

    def test_multi_all_day_shows_last_covered_day(self):
        event = _event(
            datetime(2024, 1, 2, tzinfo=UTC), datetime(2024, 1, 5, tzinfo=UTC), is_all_day=True
        )
        assert event.formatted_range() == "Jan 02, 2024 – Jan 04, 2024"

    def test_no_start_renders_empty(self):
        assert Event(title="Someday").formatted_range() == ""


# ---------------------------------------------------------------------------
# Validation and mutation
# ---------------------------------------------------------------------------


class TestValidate:
    def test_valid_event_has_no_errors(self):
        event = _event(datetime(2024, 1, 2, 9, tzinfo=UTC), datetime(2024, 1, 2, 10, tzinfo=UTC))
        assert event.validate() == []

    def test_all_violations_are_reported_in_order(self):
        event = Event(
            title="  ",
            start_date=datetime(2024, 1, 2, 10, tzinfo=UTC),
            end_date=datetime(2024, 1, 2, 9, tzinfo=UTC),
            status="maybe",
            visibility="secret",
        )
        assert event.validate() == [
            "Title is required",
            "End date must be after start date",
            "Status must be one of: confirmed, tentative, cancelled",
            "Visibility must be one of: private, public",
        ]

    def test_missing_start_is_reported(self):
        assert Event(title="Lunch").validate() == ["Start date is required"]

    def test_equal_boundaries_are_invalid(self):
        moment = datetime(2024, 1, 2, 9, tzinfo=UTC)
        assert _event(moment, moment).validate() == ["End date must be after start date"]


class TestTouch:
    def test_touch_moves_updated_at_forward(self):
        created = datetime(2024, 1, 1, tzinfo=UTC)
        event = Event(title="Lunch", created_at=created)
        event.touch(created + timedelta(hours=1))
        assert event.updated_at == created + timedelta(hours=1)

    def test_touch_never_moves_backwards(self):
        created = datetime(2024, 1, 1, tzinfo=UTC)
        event = Event(title="Lunch", created_at=created)
        event.touch(created - timedelta(days=1))
        assert event.updated_at == created
