from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from checkwatch.db import SessionLocal
from checkwatch.models import CheckIn, Company, EventType, MissedCheckIn, NotificationType, Person, Role, Team
from checkwatch.services.calendar import (
    _normalize_ts,
    day_of_week,
    format_date_in_timezone,
    format_time_12h,
    get_current_time_in_timezone,
    get_today_in_timezone,
    time_to_minutes,
    to_calendar_date,
)
from checkwatch.services.dispatch import NotificationRequest, emit_event, send_notifications
from checkwatch.services.holidays import build_holiday_date_set, is_holiday
from checkwatch.services.schedule import EffectiveSchedule, is_work_day, resolve_effective_schedule
from checkwatch.services.snapshots import HISTORY_DAYS, AttendanceSnapshot, MissedCheckInSnapshotService, WorkerContext
from checkwatch.settings import get_settings

logger = logging.getLogger("checkwatch.missed_checkins")

_detector_run_lock = threading.Lock()


@dataclass(slots=True)
class DetectionRunResult:
    detected: int = 0
    failed: int = 0
    companies_processed: int = 0
    companies_failed: int = 0
    already_running: bool = False


def window_closed(current_time: str, check_in_end: str, buffer_minutes: int) -> bool:
    # Compared in minutes so a late window plus buffer never wraps past midnight.
    return time_to_minutes(current_time) >= time_to_minutes(check_in_end) + buffer_minutes


def format_schedule_window(schedule: EffectiveSchedule) -> str:
    return f"{format_time_12h(schedule.check_in_start)} - {format_time_12h(schedule.check_in_end)}"


def _eligible_workers(
    workers: list[Person],
    team_map: dict[int, Team],
    *,
    today_key: str,
    current_time: str,
    tz_name: str,
    buffer_minutes: int,
) -> list[tuple[Person, EffectiveSchedule]]:
    today_dow = day_of_week(to_calendar_date(today_key))
    eligible: list[tuple[Person, EffectiveSchedule]] = []
    for worker in workers:
        team = team_map.get(worker.team_id) if worker.team_id is not None else None
        if team is None or worker.team_assigned_at is None:
            continue
        # Assigned today means not yet required to check in.
        if format_date_in_timezone(worker.team_assigned_at, tz_name) >= today_key:
            continue
        if not is_work_day(today_dow, worker, team):
            continue
        schedule = resolve_effective_schedule(worker, team)
        if not window_closed(current_time, schedule.check_in_end, buffer_minutes):
            continue
        eligible.append((worker, schedule))
    return eligible


def _build_record(
    company_id: int,
    worker: Person,
    team: Team,
    schedule: EffectiveSchedule,
    missed_day: date,
    snapshot: AttendanceSnapshot | None,
) -> MissedCheckIn:
    leader = team.leader
    record = MissedCheckIn(
        company_id=company_id,
        person_id=worker.id,
        team_id=team.id,
        missed_date=missed_day,
        schedule_window=format_schedule_window(schedule),
        team_leader_id_at_miss=leader.id if leader is not None else None,
        team_leader_name_at_miss=leader.full_name if leader is not None else None,
    )
    if snapshot is not None:
        for key, value in snapshot.to_dict().items():
            setattr(record, key, value)
    return record


def process_company(
    db: Session,
    company: Company,
    now_utc: datetime,
    result: DetectionRunResult | None = None,
) -> int:
    tz_name = company.timezone
    reference_utc = _normalize_ts(now_utc)
    today_key = get_today_in_timezone(tz_name, reference_utc)
    current_time = get_current_time_in_timezone(tz_name, reference_utc)
    today = to_calendar_date(today_key)

    if is_holiday(db, company.id, today_key):
        logger.info(
            "missed_check_in_detection_skipped_holiday",
            extra={"company_id": company.id, "date": today_key},
        )
        return 0

    teams = db.scalars(
        select(Team)
        .options(selectinload(Team.leader))
        .where(Team.company_id == company.id, Team.is_active.is_(True))
    ).all()
    team_map = {team.id: team for team in teams}
    if not team_map:
        return 0

    workers = db.scalars(
        select(Person)
        .options(selectinload(Person.team))
        .where(
            Person.company_id == company.id,
            Person.role == Role.WORKER,
            Person.is_active.is_(True),
            Person.team_id.in_(list(team_map)),
            Person.team_assigned_at.is_not(None),
        )
        .order_by(Person.id.asc())
    ).all()

    eligible = _eligible_workers(
        list(workers),
        team_map,
        today_key=today_key,
        current_time=current_time,
        tz_name=tz_name,
        buffer_minutes=get_settings().missed_check_in_buffer_minutes,
    )
    if not eligible:
        return 0

    eligible_ids = [worker.id for worker, _ in eligible]
    checked_in_ids = set(
        db.scalars(
            select(CheckIn.person_id).where(
                CheckIn.company_id == company.id,
                CheckIn.person_id.in_(eligible_ids),
                CheckIn.check_in_date == today,
            )
        ).all()
    )
    already_recorded_ids = set(
        db.scalars(
            select(MissedCheckIn.person_id).where(
                MissedCheckIn.company_id == company.id,
                MissedCheckIn.person_id.in_(eligible_ids),
                MissedCheckIn.missed_date == today,
            )
        ).all()
    )
    new_missing = [
        (worker, schedule)
        for worker, schedule in eligible
        if worker.id not in checked_in_ids and worker.id not in already_recorded_ids
    ]
    if not new_missing:
        return 0

    holiday_dates = build_holiday_date_set(
        db,
        company.id,
        today - timedelta(days=HISTORY_DAYS),
        today,
        tz_name,
    )
    snapshots = MissedCheckInSnapshotService(db, company.id, tz_name).calculate_batch(
        [WorkerContext.from_person(worker) for worker, _ in new_missing],
        today_key,
        holiday_dates,
    )

    inserted: list[tuple[Person, EffectiveSchedule]] = []
    for worker, schedule in new_missing:
        worker_id = worker.id
        try:
            team = team_map[worker.team_id]
            db.add(_build_record(company.id, worker, team, schedule, today, snapshots.get(worker_id)))
            db.commit()
        except IntegrityError:
            # Another run recorded this miss between the existence check and the insert.
            db.rollback()
            logger.info(
                "missed_check_in_already_recorded",
                extra={"company_id": company.id, "person_id": worker_id, "date": today_key},
            )
            continue
        except Exception:
            db.rollback()
            if result is not None:
                result.failed += 1
            logger.exception(
                "missed_check_in_record_failed",
                extra={"company_id": company.id, "person_id": worker_id, "date": today_key},
            )
            continue
        inserted.append((worker, schedule))

    if not inserted:
        return 0

    _notify_misses(company.id, inserted, team_map, today_key)
    for worker, schedule in inserted:
        emit_event(
            company.id,
            event_type=EventType.MISSED_CHECK_IN_DETECTED,
            entity_type="missed_check_in",
            person_id=worker.id,
            tz_name=tz_name,
            payload={
                "missedDate": today_key,
                "scheduleWindow": schedule.window_text,
                "teamId": worker.team_id,
            },
        )

    logger.info(
        "missed_check_ins_detected",
        extra={"company_id": company.id, "detected": len(inserted), "teams": len(team_map)},
    )
    return len(inserted)


def _notify_misses(
    company_id: int,
    inserted: list[tuple[Person, EffectiveSchedule]],
    team_map: dict[int, Team],
    today_key: str,
) -> None:
    notifications = [
        NotificationRequest(
            company_id=company_id,
            person_id=worker.id,
            notification_type=NotificationType.MISSED_CHECK_IN,
            title="Missed Check-in",
            message=f"You missed your check-in for {today_key}. Please contact your team lead if needed.",
            idempotency_key=f"MISSED_CHECK_IN:{worker.id}:{today_key}",
        )
        for worker, _ in inserted
    ]

    # One alert per leader, however many of their workers missed.
    misses_by_leader: dict[int, int] = {}
    for worker, _ in inserted:
        team = team_map.get(worker.team_id)
        if team is None or team.leader_id is None:
            continue
        misses_by_leader[team.leader_id] = misses_by_leader.get(team.leader_id, 0) + 1

    for leader_id, count in misses_by_leader.items():
        plural = "s" if count > 1 else ""
        notifications.append(
            NotificationRequest(
                company_id=company_id,
                person_id=leader_id,
                notification_type=NotificationType.MISSED_CHECK_IN,
                title="Team Missed Check-ins",
                message=f"{count} worker{plural} missed their check-in for {today_key}.",
            )
        )

    send_notifications(company_id, notifications)


def detect_missed_check_ins(
    now_utc: datetime | None = None,
    db: Session | None = None,
) -> DetectionRunResult:
    if not _detector_run_lock.acquire(blocking=False):
        logger.info("missed_check_in_detection_skipped_already_running")
        return DetectionRunResult(already_running=True)

    try:
        if db is None:
            with SessionLocal() as managed_db:
                return _detect_all_companies(managed_db, _normalize_ts(now_utc))
        return _detect_all_companies(db, _normalize_ts(now_utc))
    finally:
        _detector_run_lock.release()


def _detect_all_companies(db: Session, now_utc: datetime) -> DetectionRunResult:
    result = DetectionRunResult()
    companies = db.scalars(
        select(Company).where(Company.is_active.is_(True)).order_by(Company.id.asc())
    ).all()

    # One company at a time keeps connection usage flat.
    for company in companies:
        try:
            result.detected += process_company(db, company, now_utc, result)
            result.companies_processed += 1
        except Exception:
            db.rollback()
            result.companies_failed += 1
            logger.exception(
                "missed_check_in_company_failed",
                extra={"company_id": company.id},
            )

    logger.info(
        "missed_check_in_detection_completed",
        extra={
            "detected": result.detected,
            "failed": result.failed,
            "companies_processed": result.companies_processed,
            "companies_failed": result.companies_failed,
        },
    )
    return result
