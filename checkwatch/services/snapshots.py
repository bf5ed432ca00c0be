from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from checkwatch.models import CheckIn, MissedCheckIn, Person, Role
from checkwatch.services.calendar import (
    PrecomputedDate,
    build_date_lookup,
    days_between_date_keys,
    day_of_week,
    format_date_in_timezone,
    precompute_date_range,
    to_calendar_date,
    week_of_month,
)
from checkwatch.services.schedule import EffectiveSchedule, TeamSchedule, resolve_effective_schedule

logger = logging.getLogger("checkwatch.snapshots")

HISTORY_DAYS = 90
RECENT_READINESS_DAYS = 7
SHORT_WINDOW_DAYS = 30
MEDIUM_WINDOW_DAYS = 60
MIN_MISSES_FOR_TREND = 2


@dataclass(frozen=True, slots=True)
class AttendanceSnapshot:
    worker_role_at_miss: Role | None
    day_of_week: int
    week_of_month: int
    days_since_last_check_in: int | None
    days_since_last_miss: int | None
    check_in_streak_before: int
    recent_readiness_avg: float | None
    misses_in_last_30d: int
    misses_in_last_60d: int
    misses_in_last_90d: int
    baseline_completion_rate: float
    is_first_miss_in_30d: bool
    is_increasing_frequency: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class WorkerContext:
    person_id: int
    team_id: int
    role: Role | None
    team_assigned_at: datetime | None
    work_days: str | None = None
    check_in_start: str | None = None
    check_in_end: str | None = None
    team: TeamSchedule = field(default_factory=TeamSchedule)

    @classmethod
    def from_person(cls, person: Person) -> WorkerContext:
        if person.team is None or person.team_id is None:
            raise ValueError(f"Person {person.id} has no team")
        return cls(
            person_id=person.id,
            team_id=person.team_id,
            role=person.role,
            team_assigned_at=person.team_assigned_at,
            work_days=person.work_days,
            check_in_start=person.check_in_start,
            check_in_end=person.check_in_end,
            team=TeamSchedule(
                work_days=person.team.work_days,
                check_in_start=person.team.check_in_start,
                check_in_end=person.team.check_in_end,
            ),
        )

    @property
    def schedule(self) -> EffectiveSchedule:
        return resolve_effective_schedule(self, self.team)


@dataclass(frozen=True, slots=True)
class CheckInHistoryItem:
    date_key: str
    readiness_score: int


def round_half_up(value: float, places: int = 1) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def calculate_streak(
    check_in_keys: set[str],
    work_days: frozenset[int],
    holiday_dates: set[str],
    date_range: Sequence[PrecomputedDate],
    reference_key: str,
) -> int:
    """Consecutive required work days with a check-in, walking back from the day before the reference."""
    streak = 0
    for day in reversed(date_range):
        if day.date_key >= reference_key:
            continue
        if day.date_key in holiday_dates or day.day_of_week not in work_days:
            continue
        if day.date_key not in check_in_keys:
            break
        streak += 1
    return streak


def calculate_completion_rate(
    assigned_key: str | None,
    work_days: frozenset[int],
    check_in_keys: Iterable[str],
    holiday_dates: set[str],
    date_range: Sequence[PrecomputedDate],
    reference_key: str,
) -> float:
    if assigned_key is None:
        return 0.0

    required_days = sum(
        1
        for day in date_range
        if assigned_key <= day.date_key < reference_key
        and day.day_of_week in work_days
        and day.date_key not in holiday_dates
    )
    if required_days == 0:
        return 100.0

    completed = sum(1 for key in check_in_keys if assigned_key <= key < reference_key)
    return min(100.0, completed / required_days * 100)


def _threshold_key(date_range: Sequence[PrecomputedDate], days: int, reference_key: str) -> str:
    if not date_range:
        return reference_key
    if len(date_range) >= days:
        return date_range[len(date_range) - days].date_key
    return date_range[0].date_key


def calculate_snapshot(
    *,
    role: Role | None,
    schedule: EffectiveSchedule,
    assigned_key: str | None,
    check_ins: Sequence[CheckInHistoryItem],
    miss_keys: Sequence[str],
    reference_key: str,
    holiday_dates: set[str],
    date_range: Sequence[PrecomputedDate],
) -> AttendanceSnapshot:
    """Pure per-worker snapshot over normalized date keys; no database or timezone access."""
    reference_day = to_calendar_date(reference_key)
    check_in_keys = {item.date_key for item in check_ins}

    last_check_in_key = max(check_in_keys, default=None)
    last_miss_key = max(miss_keys, default=None)

    seven_days_ago = _threshold_key(date_range, RECENT_READINESS_DAYS, reference_key)
    thirty_days_ago = _threshold_key(date_range, SHORT_WINDOW_DAYS, reference_key)
    sixty_days_ago = _threshold_key(date_range, MEDIUM_WINDOW_DAYS, reference_key)

    recent_scores = [item.readiness_score for item in check_ins if item.date_key >= seven_days_ago]
    recent_readiness_avg = (
        round_half_up(sum(recent_scores) / len(recent_scores)) if recent_scores else None
    )

    misses_30d = sum(1 for key in miss_keys if key >= thirty_days_ago)
    misses_60d = sum(1 for key in miss_keys if key >= sixty_days_ago)
    misses_90d = len(miss_keys)

    completion_rate = calculate_completion_rate(
        assigned_key,
        schedule.work_days,
        check_in_keys,
        holiday_dates,
        date_range,
        reference_key,
    )

    # A trend needs both a rising per-day rate and a minimum sample.
    rate_30d = misses_30d / SHORT_WINDOW_DAYS
    rate_60d = misses_60d / MEDIUM_WINDOW_DAYS

    return AttendanceSnapshot(
        worker_role_at_miss=role,
        day_of_week=day_of_week(reference_day),
        week_of_month=week_of_month(reference_key),
        days_since_last_check_in=(
            days_between_date_keys(last_check_in_key, reference_key) if last_check_in_key else None
        ),
        days_since_last_miss=(
            days_between_date_keys(last_miss_key, reference_key) if last_miss_key else None
        ),
        check_in_streak_before=calculate_streak(
            check_in_keys,
            schedule.work_days,
            holiday_dates,
            date_range,
            reference_key,
        ),
        recent_readiness_avg=recent_readiness_avg,
        misses_in_last_30d=misses_30d,
        misses_in_last_60d=misses_60d,
        misses_in_last_90d=misses_90d,
        baseline_completion_rate=round_half_up(completion_rate),
        is_first_miss_in_30d=misses_30d == 0,
        is_increasing_frequency=rate_30d > rate_60d and misses_30d >= MIN_MISSES_FOR_TREND,
    )


class MissedCheckInSnapshotService:
    """Batch snapshot calculation for one company.

    History for every worker is fetched in two queries; everything after that is
    in-memory work over date keys.
    """

    def __init__(self, db: Session, company_id: int, tz_name: str) -> None:
        self.db = db
        self.company_id = company_id
        self.tz_name = tz_name

    def calculate_batch(
        self,
        workers: Sequence[WorkerContext],
        reference_date: str | date | datetime,
        holiday_dates: set[str],
    ) -> dict[int, AttendanceSnapshot]:
        if not workers:
            return {}

        reference_key = (
            reference_date
            if isinstance(reference_date, str)
            else format_date_in_timezone(reference_date, self.tz_name)
        )
        reference_day = to_calendar_date(reference_key)
        window_start = reference_day - timedelta(days=HISTORY_DAYS)
        person_ids = [worker.person_id for worker in workers]

        check_ins_by_person = self._fetch_check_ins(person_ids, window_start, reference_day)
        misses_by_person = self._fetch_misses(person_ids, window_start, reference_day)

        # Shared by every worker's streak and completion-rate walk.
        date_range = precompute_date_range(window_start, HISTORY_DAYS, self.tz_name)

        results: dict[int, AttendanceSnapshot] = {}
        for worker in workers:
            assigned_key = (
                format_date_in_timezone(worker.team_assigned_at, self.tz_name)
                if worker.team_assigned_at is not None
                else None
            )
            results[worker.person_id] = calculate_snapshot(
                role=worker.role,
                schedule=worker.schedule,
                assigned_key=assigned_key,
                check_ins=check_ins_by_person.get(worker.person_id, []),
                miss_keys=misses_by_person.get(worker.person_id, []),
                reference_key=reference_key,
                holiday_dates=holiday_dates,
                date_range=date_range,
            )

        logger.debug(
            "snapshot_batch_calculated",
            extra={
                "company_id": self.company_id,
                "reference_date": reference_key,
                "worker_count": len(workers),
            },
        )
        return results

    def _fetch_check_ins(
        self,
        person_ids: list[int],
        window_start: date,
        reference_day: date,
    ) -> dict[int, list[CheckInHistoryItem]]:
        rows = self.db.execute(
            select(CheckIn.person_id, CheckIn.check_in_date, CheckIn.readiness_score)
            .where(
                CheckIn.company_id == self.company_id,
                CheckIn.person_id.in_(person_ids),
                CheckIn.check_in_date >= window_start,
                CheckIn.check_in_date < reference_day,
            )
            .order_by(CheckIn.check_in_date.desc())
        ).all()

        date_lookup = build_date_lookup({row.check_in_date for row in rows}, self.tz_name)
        result: dict[int, list[CheckInHistoryItem]] = {person_id: [] for person_id in person_ids}
        for row in rows:
            result[row.person_id].append(
                CheckInHistoryItem(
                    date_key=date_lookup[row.check_in_date],
                    readiness_score=int(row.readiness_score),
                )
            )
        return result

    def _fetch_misses(
        self,
        person_ids: list[int],
        window_start: date,
        reference_day: date,
    ) -> dict[int, list[str]]:
        rows = self.db.execute(
            select(MissedCheckIn.person_id, MissedCheckIn.missed_date)
            .where(
                MissedCheckIn.company_id == self.company_id,
                MissedCheckIn.person_id.in_(person_ids),
                MissedCheckIn.missed_date >= window_start,
                MissedCheckIn.missed_date < reference_day,
            )
            .order_by(MissedCheckIn.missed_date.desc())
        ).all()

        date_lookup = build_date_lookup({row.missed_date for row in rows}, self.tz_name)
        result: dict[int, list[str]] = {person_id: [] for person_id in person_ids}
        for row in rows:
            result[row.person_id].append(date_lookup[row.missed_date])
        return result
