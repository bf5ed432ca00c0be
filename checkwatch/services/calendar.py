from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

DATE_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DATE_KEY_FORMAT = "%Y-%m-%d"


@dataclass(frozen=True, slots=True)
class PrecomputedDate:
    date: date
    date_key: str
    day_of_week: int


def _zone(tz_name: str) -> ZoneInfo:
    # Unknown zones raise ZoneInfoNotFoundError; callers treat that as a programming error.
    return ZoneInfo(tz_name)


def _normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def local_now(tz_name: str, now_utc: datetime | None = None) -> datetime:
    return _normalize_ts(now_utc).astimezone(_zone(tz_name))


def day_of_week(value: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return value.isoweekday() % 7


def to_calendar_date(date_key: str) -> date:
    if not isinstance(date_key, str) or not DATE_KEY_PATTERN.match(date_key):
        raise ValueError(f"Invalid date key: {date_key!r}")
    return date.fromisoformat(date_key)


def get_today_in_timezone(tz_name: str, now_utc: datetime | None = None) -> str:
    return local_now(tz_name, now_utc).strftime(DATE_KEY_FORMAT)


def get_current_time_in_timezone(tz_name: str, now_utc: datetime | None = None) -> str:
    return local_now(tz_name, now_utc).strftime("%H:%M")


def get_day_of_week_in_timezone(
    tz_name: str,
    date_key: str | None = None,
    *,
    now_utc: datetime | None = None,
) -> int:
    if date_key is not None:
        _zone(tz_name)
        return day_of_week(to_calendar_date(date_key))
    return day_of_week(local_now(tz_name, now_utc).date())


def parse_date_in_timezone(date_key: str, tz_name: str) -> datetime:
    """Return UTC midnight of the given company-local calendar date.

    The calendar identity survives storage: "2026-01-28" in Asia/Manila becomes
    2026-01-28T00:00:00+00:00, never the previous UTC day.
    """
    _zone(tz_name)
    local_day = to_calendar_date(date_key)
    return datetime(local_day.year, local_day.month, local_day.day, tzinfo=timezone.utc)


def format_date_in_timezone(value: date | datetime, tz_name: str) -> str:
    if isinstance(value, datetime):
        return _normalize_ts(value).astimezone(_zone(tz_name)).strftime(DATE_KEY_FORMAT)
    return value.strftime(DATE_KEY_FORMAT)


def to_local_date(value: str | date | datetime, tz_name: str) -> date:
    if isinstance(value, str):
        return to_calendar_date(value)
    if isinstance(value, datetime):
        return _normalize_ts(value).astimezone(_zone(tz_name)).date()
    return value


def precompute_date_range(
    start: str | date | datetime,
    days: int,
    tz_name: str,
) -> list[PrecomputedDate]:
    """Resolve `days` consecutive calendar days starting at `start`, oldest first.

    Timezone conversion happens once for `start`; every following day is plain
    calendar arithmetic so hot loops never touch tzdata.
    """
    first_day = to_local_date(start, tz_name)
    result: list[PrecomputedDate] = []
    for offset in range(max(0, days)):
        current = first_day + timedelta(days=offset)
        result.append(
            PrecomputedDate(
                date=current,
                date_key=current.strftime(DATE_KEY_FORMAT),
                day_of_week=day_of_week(current),
            )
        )
    return result


def build_date_lookup(values: Iterable[date | datetime], tz_name: str) -> dict[date | datetime, str]:
    lookup: dict[date | datetime, str] = {}
    for value in values:
        if value not in lookup:
            lookup[value] = format_date_in_timezone(value, tz_name)
    return lookup


def days_between_date_keys(first_key: str, second_key: str) -> int:
    return abs((to_calendar_date(second_key) - to_calendar_date(first_key)).days)


def add_days_to_date_key(date_key: str, days: int) -> str:
    return (to_calendar_date(date_key) + timedelta(days=days)).strftime(DATE_KEY_FORMAT)


def week_of_month(date_key: str) -> int:
    return (to_calendar_date(date_key).day - 1) // 7 + 1


def time_to_minutes(value: str) -> int:
    hours_raw, _, minutes_raw = value.partition(":")
    return int(hours_raw or 0) * 60 + int(minutes_raw or 0)


def is_time_within_window(current_time: str, window_start: str, window_end: str) -> bool:
    # Zero-padded HH:MM strings compare correctly as text.
    if window_start <= window_end:
        return window_start <= current_time <= window_end
    return current_time >= window_start or current_time <= window_end


def add_minutes_to_time(value: str, minutes: int) -> str:
    total = (time_to_minutes(value) + minutes) % (24 * 60)
    return f"{total // 60:02d}:{total % 60:02d}"


def format_time_12h(value: str) -> str:
    total = time_to_minutes(value)
    hours, minutes = divmod(total, 60)
    period = "PM" if hours >= 12 else "AM"
    hours_12 = 12 if hours == 0 else hours - 12 if hours > 12 else hours
    return f"{hours_12}:{minutes:02d} {period}"
