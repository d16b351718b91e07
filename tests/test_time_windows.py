from datetime import datetime, timedelta, timezone

import pytest
import pytz

from services.time_windows import TimeField, TimeWindow, day_window, resolve_period

NOW = datetime(2024, 3, 10, 15, 30, tzinfo=timezone.utc)


def test_today_spans_local_midnight_to_last_millisecond():
    window = resolve_period("today", now=NOW, timezone_name="UTC")
    assert window.start == datetime(2024, 3, 10, tzinfo=timezone.utc)
    assert window.end == datetime(2024, 3, 10, 23, 59, 59, 999000, tzinfo=timezone.utc)
    assert window.end_exclusive == datetime(2024, 3, 11, tzinfo=timezone.utc)


def test_named_periods_resolve_relative_to_now():
    yesterday = resolve_period("yesterday", now=NOW)
    last7 = resolve_period("last7", now=NOW)
    last30 = resolve_period("last30", now=NOW)

    assert yesterday.start.date().isoformat() == "2024-03-09"
    assert yesterday.end.date().isoformat() == "2024-03-09"
    assert last7.start.date().isoformat() == "2024-03-03"
    assert last7.end.date().isoformat() == "2024-03-10"
    assert last30.start.date().isoformat() == "2024-02-09"


def test_local_day_follows_configured_timezone():
    # 02:00 UTC on the 11th is still the 10th in New York
    now = datetime(2024, 3, 11, 2, 0, tzinfo=timezone.utc)
    window = resolve_period("today", now=now, timezone_name="America/New_York")
    tz = pytz.timezone("America/New_York")
    assert window.start == tz.localize(datetime(2024, 3, 10))
    # DST starts on 2024-03-10, so the local day is 23 hours long
    assert window.end_exclusive - window.start == timedelta(hours=23)


def test_unknown_timezone_falls_back_to_utc():
    window = resolve_period("today", now=NOW, timezone_name="Mars/Olympus")
    assert window.start.utcoffset() == timedelta(0)


def test_half_open_boundary_keeps_last_millisecond_and_drops_next_midnight():
    window = day_window("2024-03-10", timezone_name="UTC")
    last_ms = datetime(2024, 3, 10, 23, 59, 59, 999000, tzinfo=timezone.utc)
    inside_last_ms = datetime(2024, 3, 10, 23, 59, 59, 999700, tzinfo=timezone.utc)
    next_midnight = datetime(2024, 3, 11, tzinfo=timezone.utc)

    assert window.contains(last_ms)
    assert window.contains(inside_last_ms)
    assert not window.contains(next_midnight)


def test_closed_window_compares_against_inclusive_end():
    window = resolve_period("custom", start="2024-03-10", end="2024-03-10", now=NOW)
    assert not window.half_open
    assert window.contains(datetime(2024, 3, 10, 23, 59, 59, 999000, tzinfo=timezone.utc))
    assert not window.contains(datetime(2024, 3, 10, 23, 59, 59, 999700, tzinfo=timezone.utc))
    assert window.as_half_open().contains(
        datetime(2024, 3, 10, 23, 59, 59, 999700, tzinfo=timezone.utc)
    )


def test_malformed_custom_range_is_passed_through():
    window = resolve_period("custom", start="2024-03-12", end="2024-03-05", now=NOW)
    assert window.start > window.end
    assert not window.contains(datetime(2024, 3, 8, tzinfo=timezone.utc))


def test_invalid_selectors_raise_value_error():
    with pytest.raises(ValueError):
        resolve_period("fortnight", now=NOW)
    with pytest.raises(ValueError):
        resolve_period("custom", start="2024-03-01", now=NOW)


def test_window_matches_any_listed_timestamp(make_snapshot):
    window = day_window("2024-03-10").with_inclusion([TimeField.ASSIGNED_AT])
    snapshot = make_snapshot(
        created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
        assigned_at=datetime(2024, 3, 10, 8, tzinfo=timezone.utc),
    )
    assert window.includes(snapshot)
    assert not window.with_inclusion([TimeField.CREATED_AT]).includes(snapshot)
    assert not window.contains(None)


def test_time_field_accepts_camel_case_aliases():
    assert TimeField.parse("assignedAt") is TimeField.ASSIGNED_AT
    assert TimeField.parse("updated_at") is TimeField.UPDATED_AT
    with pytest.raises(ValueError):
        TimeField.parse("deletedAt")


def test_window_serialises_boundaries():
    window = TimeWindow(
        start=datetime(2024, 3, 10, tzinfo=timezone.utc),
        end=datetime(2024, 3, 10, 23, 59, 59, 999000, tzinfo=timezone.utc),
    )
    payload = window.to_dict()
    assert payload["endExclusive"] == "2024-03-11T00:00:00+00:00"
    assert payload["inclusion"] == ["updated_at"]
