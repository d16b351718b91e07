"""Resolve logical report periods into concrete, timezone-aware windows."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Tuple

import pytz
from dateutil.parser import parse as dateutil_parse

from .order_snapshots import OrderSnapshot, _parse_datetime


END_OF_DAY = time(23, 59, 59, 999000)
ONE_MILLISECOND = timedelta(milliseconds=1)
PERIOD_SELECTORS = ("today", "yesterday", "last7", "last30", "custom")


class TimeField(str, Enum):
    CREATED_AT = "created_at"
    ASSIGNED_AT = "assigned_at"
    UPDATED_AT = "updated_at"

    @classmethod
    def parse(cls, value: Any) -> "TimeField":
        text = str(value).strip()
        aliases = {"createdAt": cls.CREATED_AT, "assignedAt": cls.ASSIGNED_AT, "updatedAt": cls.UPDATED_AT}
        if text in aliases:
            return aliases[text]
        try:
            return cls(text.lower())
        except ValueError:
            raise ValueError(f"Unknown time field '{value}'")


ALL_TIME_FIELDS: Tuple[TimeField, ...] = (
    TimeField.CREATED_AT,
    TimeField.ASSIGNED_AT,
    TimeField.UPDATED_AT,
)


def _safe_timezone(tz_name: Optional[str]) -> Any:
    try:
        return pytz.timezone(tz_name or "UTC")
    except pytz.UnknownTimeZoneError:
        return pytz.UTC


def _localize(tz: Any, day: date, moment: time) -> datetime:
    return tz.localize(datetime.combine(day, moment))


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return dateutil_parse(str(value)).date()
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f"Could not parse date value '{value}'")


@dataclass(frozen=True)
class TimeWindow:
    """Window with an inclusive end-of-day ``end``.

    ``half_open`` switches ``contains`` to compare against ``end_exclusive``
    (``end`` + 1 ms) so instants inside the final millisecond still match.
    """

    start: datetime
    end: datetime
    inclusion: Tuple[TimeField, ...] = (TimeField.UPDATED_AT,)
    half_open: bool = False

    @property
    def end_exclusive(self) -> datetime:
        return self.end + ONE_MILLISECOND

    def contains(self, instant: Optional[datetime]) -> bool:
        moment = _parse_datetime(instant)
        if moment is None:
            return False
        if moment < self.start:
            return False
        if self.half_open:
            return moment < self.end_exclusive
        return moment <= self.end

    def includes(self, snapshot: OrderSnapshot) -> bool:
        return any(self.contains(getattr(snapshot, field.value)) for field in self.inclusion)

    def with_inclusion(self, fields: Iterable[TimeField]) -> "TimeWindow":
        return replace(self, inclusion=tuple(fields))

    def as_half_open(self) -> "TimeWindow":
        return replace(self, half_open=True)

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "endExclusive": self.end_exclusive.isoformat(),
            "inclusion": [field.value for field in self.inclusion],
            "halfOpen": self.half_open,
        }


def day_window(day: Any, *, timezone_name: str = "UTC", half_open: bool = True) -> TimeWindow:
    """Single local day, half-open by default."""

    tz = _safe_timezone(timezone_name)
    target = _as_date(day)
    return TimeWindow(
        start=_localize(tz, target, time.min),
        end=_localize(tz, target, END_OF_DAY),
        inclusion=ALL_TIME_FIELDS,
        half_open=half_open,
    )


def resolve_period(
    selector: str,
    *,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
    start: Any = None,
    end: Any = None,
    inclusion: Iterable[TimeField] = ALL_TIME_FIELDS,
    half_open: bool = False,
) -> TimeWindow:
    """Turn ``today|yesterday|last7|last30|custom`` into a concrete window.

    ``last7``/``last30`` start at local midnight seven/thirty days before
    today and end at the close of today. Custom ranges with ``start > end``
    are returned as given.
    """

    tz = _safe_timezone(timezone_name)
    reference = now or datetime.now(timezone.utc)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    today = reference.astimezone(tz).date()

    key = (selector or "").strip().lower()
    if key == "today":
        first, last = today, today
    elif key == "yesterday":
        first = last = today - timedelta(days=1)
    elif key == "last7":
        first, last = today - timedelta(days=7), today
    elif key == "last30":
        first, last = today - timedelta(days=30), today
    elif key == "custom":
        if start in (None, "") or end in (None, ""):
            raise ValueError("Custom periods require both a start and an end date")
        first, last = _as_date(start), _as_date(end)
    else:
        raise ValueError(
            f"Unknown period '{selector}'; expected one of {list(PERIOD_SELECTORS)}"
        )

    return TimeWindow(
        start=_localize(tz, first, time.min),
        end=_localize(tz, last, END_OF_DAY),
        inclusion=tuple(inclusion),
        half_open=half_open,
    )


__all__ = [
    "ALL_TIME_FIELDS",
    "END_OF_DAY",
    "PERIOD_SELECTORS",
    "TimeField",
    "TimeWindow",
    "day_window",
    "resolve_period",
]
