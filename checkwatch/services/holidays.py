from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from functools import lru_cache

from sqlalchemy import select
from sqlalchemy.orm import Session

from checkwatch.models import Holiday
from checkwatch.services.calendar import DATE_KEY_FORMAT, to_calendar_date, to_local_date
from checkwatch.settings import get_settings

logger = logging.getLogger("checkwatch.holidays")


@dataclass(frozen=True, slots=True)
class HolidayCheck:
    is_holiday: bool
    holiday_name: str | None = None


NOT_A_HOLIDAY = HolidayCheck(is_holiday=False, holiday_name=None)


class HolidayCache:
    """Process-local holiday lookups keyed by (company id, date key).

    Entries expire after `ttl_seconds`. The map never grows past `max_entries`:
    an insert over the bound first drops expired entries, then the oldest ones.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[int, str], tuple[float, HolidayCheck]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, company_id: int, date_key: str) -> HolidayCheck | None:
        key = (company_id, date_key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, company_id: int, date_key: str, value: HolidayCheck) -> None:
        key = (company_id, date_key)
        with self._lock:
            now = self._clock()
            self._entries.pop(key, None)
            if len(self._entries) >= self.max_entries:
                self._evict(now)
            self._entries[key] = (now + self.ttl_seconds, value)

    def invalidate(self, company_id: int) -> int:
        with self._lock:
            stale_keys = [key for key in self._entries if key[0] == company_id]
            for key in stale_keys:
                del self._entries[key]
        return len(stale_keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict(self, now: float) -> None:
        expired_keys = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired_keys:
            del self._entries[key]

        # Dict order is insertion order, so the head holds the oldest entries.
        overflow = len(self._entries) - self.max_entries + 1
        if overflow > 0:
            for key in list(self._entries)[:overflow]:
                del self._entries[key]


@lru_cache
def get_holiday_cache() -> HolidayCache:
    settings = get_settings()
    return HolidayCache(
        ttl_seconds=settings.holiday_cache_ttl_seconds,
        max_entries=settings.holiday_cache_max_entries,
    )


def invalidate_holiday_cache(company_id: int) -> None:
    removed = get_holiday_cache().invalidate(company_id)
    logger.info(
        "holiday_cache_invalidated",
        extra={"company_id": company_id, "removed_entries": removed},
    )


def _lookup_holiday(db: Session, company_id: int, date_key: str) -> HolidayCheck:
    target = to_calendar_date(date_key)

    exact_name = db.scalar(
        select(Holiday.name)
        .where(
            Holiday.company_id == company_id,
            Holiday.date == target,
            Holiday.is_recurring.is_(False),
        )
        .limit(1)
    )
    if exact_name is not None:
        return HolidayCheck(is_holiday=True, holiday_name=exact_name)

    recurring = db.scalars(
        select(Holiday)
        .where(
            Holiday.company_id == company_id,
            Holiday.is_recurring.is_(True),
        )
        .order_by(Holiday.id.asc())
    ).all()
    for holiday in recurring:
        if holiday.date.month == target.month and holiday.date.day == target.day:
            return HolidayCheck(is_holiday=True, holiday_name=holiday.name)

    return NOT_A_HOLIDAY


def check_holiday_for_date(
    db: Session,
    company_id: int,
    date_key: str,
    *,
    use_cache: bool = True,
) -> HolidayCheck:
    """Exact holidays match the stored date; recurring ones match month/day in any year."""
    if not use_cache:
        return _lookup_holiday(db, company_id, date_key)

    cache = get_holiday_cache()
    cached = cache.get(company_id, date_key)
    if cached is not None:
        return cached

    result = _lookup_holiday(db, company_id, date_key)
    cache.set(company_id, date_key, result)
    return result


def is_holiday(db: Session, company_id: int, date_key: str) -> bool:
    return check_holiday_for_date(db, company_id, date_key).is_holiday


def holiday_date_keys_between(
    holidays: list[Holiday],
    start_day: date,
    end_day: date,
) -> set[str]:
    fixed_days = {item.date for item in holidays if not item.is_recurring}
    recurring_month_days = {(item.date.month, item.date.day) for item in holidays if item.is_recurring}

    result: set[str] = set()
    current = start_day
    while current <= end_day:
        if current in fixed_days or (current.month, current.day) in recurring_month_days:
            result.add(current.strftime(DATE_KEY_FORMAT))
        current += timedelta(days=1)
    return result


def build_holiday_date_set(
    db: Session,
    company_id: int,
    start: str | date | datetime,
    end: str | date | datetime,
    tz_name: str,
) -> set[str]:
    """Holiday date keys for every company-local day in [start, end]."""
    start_day = to_local_date(start, tz_name)
    end_day = to_local_date(end, tz_name)
    if end_day < start_day:
        return set()

    holidays = list(
        db.scalars(
            select(Holiday).where(Holiday.company_id == company_id)
        ).all()
    )
    return holiday_date_keys_between(holidays, start_day, end_day)
