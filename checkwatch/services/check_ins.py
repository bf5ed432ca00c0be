from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from checkwatch.errors import ApiError, ConflictApiError, ValidationApiError
from checkwatch.models import CheckIn, EventType, Person, ReadinessLevel
from checkwatch.services.calendar import (
    _normalize_ts,
    day_of_week,
    get_current_time_in_timezone,
    get_today_in_timezone,
    is_time_within_window,
    to_calendar_date,
)
from checkwatch.services.dispatch import emit_event
from checkwatch.services.holidays import check_holiday_for_date
from checkwatch.services.schedule import EffectiveSchedule, resolve_effective_schedule
from checkwatch.services.snapshots import round_half_up

logger = logging.getLogger("checkwatch.check_ins")

GREEN_THRESHOLD = 70
YELLOW_THRESHOLD = 50


@dataclass(frozen=True, slots=True)
class CheckInInput:
    hours_slept: float
    sleep_quality: int
    stress_level: int
    physical_condition: int
    pain_level: int | None = None
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class ReadinessScore:
    overall: int
    level: ReadinessLevel
    sleep: int
    stress: int
    physical: int
    pain: int | None


@dataclass(frozen=True, slots=True)
class CheckInStatus:
    date: str
    is_work_day: bool
    is_holiday: bool
    holiday_name: str | None
    is_within_window: bool
    can_check_in: bool
    has_checked_in_today: bool
    schedule: EffectiveSchedule | None
    team_id: int | None
    team_name: str | None
    message: str


def _round(value: float) -> int:
    return int(round_half_up(value, 0))


def sleep_hours_score(hours: float) -> int:
    if 7 <= hours <= 9:
        return 100
    if 6 <= hours < 7:
        return 80
    if 5 <= hours < 6:
        return 60
    if hours < 5:
        return 40
    return 90


def readiness_level(score: int) -> ReadinessLevel:
    if score >= GREEN_THRESHOLD:
        return ReadinessLevel.GREEN
    if score >= YELLOW_THRESHOLD:
        return ReadinessLevel.YELLOW
    return ReadinessLevel.RED


def calculate_readiness(payload: CheckInInput) -> ReadinessScore:
    """Weighted 0-100 score: sleep 40 / stress 30 / physical 30, or 35/25/20/20 when pain is reported."""
    sleep = _round((sleep_hours_score(payload.hours_slept) + payload.sleep_quality * 10) / 2)
    stress = _round((10 - payload.stress_level + 1) * 10)
    physical = payload.physical_condition * 10
    pain = _round((10 - payload.pain_level) * 10) if payload.pain_level is not None else None

    if pain is not None:
        overall = _round(sleep * 0.35 + stress * 0.25 + physical * 0.20 + pain * 0.20)
    else:
        overall = _round(sleep * 0.4 + stress * 0.3 + physical * 0.3)

    return ReadinessScore(
        overall=overall,
        level=readiness_level(overall),
        sleep=sleep,
        stress=stress,
        physical=physical,
        pain=pain,
    )


def _person_schedule(person: Person) -> EffectiveSchedule | None:
    if person.team is None:
        return None
    return resolve_effective_schedule(person, person.team)


def submit_check_in(
    db: Session,
    person: Person,
    payload: CheckInInput,
    *,
    tz_name: str,
    now_utc: datetime | None = None,
) -> CheckIn:
    reference_utc = _normalize_ts(now_utc)
    today_key = get_today_in_timezone(tz_name, reference_utc)

    if not person.is_active:
        raise ApiError(status_code=403, code="PERSON_INACTIVE", message="Person is inactive.")

    holiday = check_holiday_for_date(db, person.company_id, today_key)
    if holiday.is_holiday:
        raise ValidationApiError(
            f"Today is a company holiday: {holiday.holiday_name}. Check-in is not required.",
            code="HOLIDAY",
        )

    schedule = _person_schedule(person)
    if schedule is not None:
        if not schedule.includes(day_of_week(to_calendar_date(today_key))):
            raise ValidationApiError(
                "Today is not a scheduled work day for your team.",
                code="NOT_WORK_DAY",
            )
        current_time = get_current_time_in_timezone(tz_name, reference_utc)
        if not is_time_within_window(current_time, schedule.check_in_start, schedule.check_in_end):
            raise ValidationApiError(
                f"Check-in is only allowed between {schedule.check_in_start} and {schedule.check_in_end}.",
                code="OUTSIDE_CHECK_IN_WINDOW",
            )

    readiness = calculate_readiness(payload)
    check_in = CheckIn(
        company_id=person.company_id,
        person_id=person.id,
        check_in_date=to_calendar_date(today_key),
        hours_slept=payload.hours_slept,
        sleep_quality=payload.sleep_quality,
        stress_level=payload.stress_level,
        physical_condition=payload.physical_condition,
        pain_level=payload.pain_level,
        notes=payload.notes,
        readiness_score=readiness.overall,
        readiness_level=readiness.level,
        created_at=reference_utc,
    )
    db.add(check_in)
    # The unique (person, date) constraint is the only duplicate guard; a pre-check would race.
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictApiError("Check-in already submitted for today.", code="DUPLICATE_CHECK_IN") from exc
    db.refresh(check_in)

    emit_event(
        person.company_id,
        event_type=EventType.CHECK_IN_SUBMITTED,
        entity_type="check_in",
        entity_id=check_in.id,
        person_id=person.id,
        tz_name=tz_name,
        payload={
            "checkInDate": today_key,
            "readiness": {
                "overall": readiness.overall,
                "level": readiness.level.value,
                "factors": {
                    "sleep": readiness.sleep,
                    "stress": readiness.stress,
                    "physical": readiness.physical,
                    "pain": readiness.pain,
                },
            },
        },
    )
    logger.info(
        "check_in_submitted",
        extra={
            "company_id": person.company_id,
            "person_id": person.id,
            "check_in_date": today_key,
            "readiness_score": readiness.overall,
            "readiness_level": readiness.level.value,
        },
    )
    return check_in


def get_check_in_status(
    db: Session,
    person: Person,
    *,
    tz_name: str,
    now_utc: datetime | None = None,
) -> CheckInStatus:
    reference_utc = _normalize_ts(now_utc)
    today_key = get_today_in_timezone(tz_name, reference_utc)
    current_time = get_current_time_in_timezone(tz_name, reference_utc)

    has_checked_in_today = (
        db.scalar(
            select(CheckIn.id).where(
                CheckIn.person_id == person.id,
                CheckIn.check_in_date == to_calendar_date(today_key),
            )
        )
        is not None
    )
    holiday = check_holiday_for_date(db, person.company_id, today_key)
    schedule = _person_schedule(person)

    if schedule is None:
        is_work_day = True
        is_within_window = True
    else:
        is_work_day = schedule.includes(day_of_week(to_calendar_date(today_key)))
        is_within_window = is_time_within_window(current_time, schedule.check_in_start, schedule.check_in_end)

    can_check_in = is_work_day and is_within_window and not holiday.is_holiday and not has_checked_in_today

    if has_checked_in_today:
        message = "You have already checked in today"
    elif holiday.is_holiday:
        message = f"Today is a holiday: {holiday.holiday_name}"
    elif schedule is None:
        message = "No team assigned - you can check in anytime"
    elif not is_work_day:
        message = "Today is not a scheduled work day for your team"
    elif not is_within_window:
        if current_time < schedule.check_in_start:
            message = f"Check-in window opens at {schedule.check_in_start}"
        else:
            message = f"Check-in window closed at {schedule.check_in_end}"
    else:
        message = "You can check in now"

    return CheckInStatus(
        date=today_key,
        is_work_day=is_work_day,
        is_holiday=holiday.is_holiday,
        holiday_name=holiday.holiday_name,
        is_within_window=is_within_window,
        can_check_in=can_check_in,
        has_checked_in_today=has_checked_in_today,
        schedule=schedule,
        team_id=person.team.id if person.team is not None else None,
        team_name=person.team.name if person.team is not None else None,
        message=message,
    )
