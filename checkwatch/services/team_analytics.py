from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from checkwatch.models import CheckIn, Person, ReadinessLevel, Role, Team
from checkwatch.services.calendar import (
    _normalize_ts,
    build_date_lookup,
    format_date_in_timezone,
    get_today_in_timezone,
    precompute_date_range,
    to_calendar_date,
    to_local_date,
)
from checkwatch.services.schedule import is_work_day
from checkwatch.services.snapshots import round_half_up

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90}
MAX_RECORDS = 200


@dataclass(slots=True)
class ReadinessDistribution:
    green: int = 0
    yellow: int = 0
    red: int = 0

    def add(self, level: ReadinessLevel) -> None:
        if level == ReadinessLevel.GREEN:
            self.green += 1
        elif level == ReadinessLevel.YELLOW:
            self.yellow += 1
        else:
            self.red += 1


@dataclass(slots=True)
class DailyTrend:
    date: str
    check_ins: int
    expected_workers: int
    avg_readiness: int
    compliance_rate: int
    submit_time: str | None
    green: int
    yellow: int
    red: int


@dataclass(slots=True)
class AnalyticsSummary:
    total_check_ins: int
    avg_readiness: int
    worker_count: int
    avg_compliance_rate: int
    readiness_distribution: ReadinessDistribution


@dataclass(slots=True)
class CheckInRecordRow:
    name: str
    date: str
    readiness_score: int
    readiness_level: ReadinessLevel
    submit_time: str


@dataclass(slots=True)
class TeamAnalytics:
    period: str
    summary: AnalyticsSummary
    trends: list[DailyTrend] = field(default_factory=list)
    records: list[CheckInRecordRow] = field(default_factory=list)


@dataclass(slots=True)
class _DayBucket:
    count: int = 0
    total_score: int = 0
    submit_minutes: list[int] = field(default_factory=list)
    distribution: ReadinessDistribution = field(default_factory=ReadinessDistribution)


def _percent(part: int, whole: int) -> int:
    return int(round_half_up(part / whole * 100, 0)) if whole > 0 else 0


def get_team_analytics(
    db: Session,
    team: Team,
    *,
    period: str,
    tz_name: str,
    now_utc: datetime | None = None,
) -> TeamAnalytics:
    """Per-day check-in trends and compliance for one team.

    Expected workers per day use each worker's current schedule, also for past
    days; schedule history is not versioned.
    """
    days = PERIOD_DAYS.get(period, 7)
    zone = ZoneInfo(tz_name)
    today_key = get_today_in_timezone(tz_name, _normalize_ts(now_utc))
    end_day = to_calendar_date(today_key)
    start_day = end_day - timedelta(days=days)
    if team.created_at is not None:
        start_day = max(start_day, to_local_date(team.created_at, tz_name))

    check_ins = db.scalars(
        select(CheckIn)
        .options(selectinload(CheckIn.person))
        .join(Person, Person.id == CheckIn.person_id)
        .where(
            CheckIn.company_id == team.company_id,
            Person.team_id == team.id,
            CheckIn.check_in_date >= start_day,
            CheckIn.check_in_date <= end_day,
        )
        .order_by(CheckIn.check_in_date.desc(), CheckIn.created_at.desc())
    ).all()
    workers = db.scalars(
        select(Person).where(
            Person.company_id == team.company_id,
            Person.team_id == team.id,
            Person.role == Role.WORKER,
            Person.is_active.is_(True),
        )
    ).all()

    date_lookup = build_date_lookup({item.check_in_date for item in check_ins}, tz_name)
    buckets: dict[str, _DayBucket] = {}
    totals = ReadinessDistribution()
    for item in check_ins:
        bucket = buckets.setdefault(date_lookup[item.check_in_date], _DayBucket())
        bucket.count += 1
        bucket.total_score += item.readiness_score
        bucket.distribution.add(item.readiness_level)
        totals.add(item.readiness_level)
        submitted = _normalize_ts(item.created_at).astimezone(zone)
        bucket.submit_minutes.append(submitted.hour * 60 + submitted.minute)

    assigned_keys = {
        worker.id: format_date_in_timezone(worker.team_assigned_at, tz_name)
        for worker in workers
        if worker.team_assigned_at is not None
    }

    trends: list[DailyTrend] = []
    total_expected = 0
    for day in precompute_date_range(start_day, (end_day - start_day).days + 1, tz_name):
        bucket = buckets.get(day.date_key, _DayBucket())
        expected = sum(
            1
            for worker in workers
            if worker.id in assigned_keys
            and assigned_keys[worker.id] < day.date_key
            and is_work_day(day.day_of_week, worker, team)
        )
        if expected == 0 and bucket.count == 0:
            continue
        total_expected += expected

        submit_time = None
        if bucket.submit_minutes:
            avg_minutes = int(round_half_up(sum(bucket.submit_minutes) / len(bucket.submit_minutes), 0))
            submit_time = f"{avg_minutes // 60:02d}:{avg_minutes % 60:02d}"

        trends.append(
            DailyTrend(
                date=day.date_key,
                check_ins=bucket.count,
                expected_workers=expected,
                avg_readiness=int(round_half_up(bucket.total_score / bucket.count, 0)) if bucket.count else 0,
                compliance_rate=_percent(bucket.count, expected),
                submit_time=submit_time,
                green=bucket.distribution.green,
                yellow=bucket.distribution.yellow,
                red=bucket.distribution.red,
            )
        )

    total_check_ins = len(check_ins)
    records = [
        CheckInRecordRow(
            name=item.person.full_name,
            date=date_lookup[item.check_in_date],
            readiness_score=item.readiness_score,
            readiness_level=item.readiness_level,
            submit_time=_normalize_ts(item.created_at).astimezone(zone).strftime("%H:%M"),
        )
        for item in check_ins[:MAX_RECORDS]
    ]

    return TeamAnalytics(
        period=period if period in PERIOD_DAYS else "7d",
        summary=AnalyticsSummary(
            total_check_ins=total_check_ins,
            avg_readiness=(
                int(round_half_up(sum(item.readiness_score for item in check_ins) / total_check_ins, 0))
                if total_check_ins
                else 0
            ),
            worker_count=len(workers),
            avg_compliance_rate=_percent(total_check_ins, total_expected),
            readiness_distribution=totals,
        ),
        trends=trends,
        records=records,
    )
