from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from checkwatch.services.calendar import time_to_minutes

# Zero-padded so HH:MM strings compare correctly as text.
TIME_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")
WORK_DAYS_PATTERN = re.compile(r"^[0-6](,[0-6])*$")

DEFAULT_WORK_DAYS: tuple[int, ...] = (1, 2, 3, 4, 5)
DEFAULT_CHECK_IN_START = "06:00"
DEFAULT_CHECK_IN_END = "10:00"


class PersonScheduleSource(Protocol):
    work_days: str | None
    check_in_start: str | None
    check_in_end: str | None


class TeamScheduleSource(Protocol):
    work_days: str
    check_in_start: str
    check_in_end: str


@dataclass(frozen=True, slots=True)
class ScheduleOverride:
    work_days: str | None = None
    check_in_start: str | None = None
    check_in_end: str | None = None


@dataclass(frozen=True, slots=True)
class TeamSchedule:
    work_days: str = "1,2,3,4,5"
    check_in_start: str = DEFAULT_CHECK_IN_START
    check_in_end: str = DEFAULT_CHECK_IN_END


@dataclass(frozen=True, slots=True)
class EffectiveSchedule:
    work_days: frozenset[int]
    check_in_start: str
    check_in_end: str

    @property
    def window_text(self) -> str:
        return f"{self.check_in_start} - {self.check_in_end}"

    def includes(self, day_of_week: int) -> bool:
        return day_of_week in self.work_days


def is_end_time_after_start(start: str | None, end: str | None) -> bool:
    if not start or not end:
        return False
    try:
        return time_to_minutes(end) > time_to_minutes(start)
    except ValueError:
        return False


def parse_work_days(raw: str | None) -> frozenset[int]:
    """Parse a CSV such as "1,3,5"; junk tokens are ignored and an empty result means Monday-Friday."""
    days: set[int] = set()
    for token in (raw or "").split(","):
        token = token.strip()
        if token.isdigit() and 0 <= int(token) <= 6:
            days.add(int(token))
    return frozenset(days) if days else frozenset(DEFAULT_WORK_DAYS)


def normalize_work_days(raw: str) -> str:
    days = sorted({int(token) for token in raw.split(",") if token.strip()})
    return ",".join(str(day) for day in days)


def _pick(override: str | None, fallback: str | None) -> str | None:
    return override if override is not None else fallback


def resolve_effective_schedule(
    person: PersonScheduleSource | None,
    team: TeamScheduleSource,
) -> EffectiveSchedule:
    """Merge a worker override on top of the team default, field by field.

    A merged window that is inverted, empty or malformed falls back to the
    team's window as a whole; a work-days override is still honored.
    """
    work_days_raw = _pick(getattr(person, "work_days", None), team.work_days)
    check_in_start = _pick(getattr(person, "check_in_start", None), team.check_in_start)
    check_in_end = _pick(getattr(person, "check_in_end", None), team.check_in_end)

    if not is_end_time_after_start(check_in_start, check_in_end):
        check_in_start = team.check_in_start
        check_in_end = team.check_in_end

    return EffectiveSchedule(
        work_days=parse_work_days(work_days_raw),
        check_in_start=check_in_start,
        check_in_end=check_in_end,
    )


def is_work_day(
    day_of_week: int,
    person: PersonScheduleSource | None,
    team: TeamScheduleSource,
) -> bool:
    work_days_raw = _pick(getattr(person, "work_days", None), team.work_days)
    return day_of_week in parse_work_days(work_days_raw)
