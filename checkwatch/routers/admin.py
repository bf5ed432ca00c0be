from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from checkwatch.audit import AuditAction, record_admin_action, request_actor_person_id
from checkwatch.db import get_db
from checkwatch.errors import ConflictApiError, NotFoundApiError, ValidationApiError
from checkwatch.models import Company, Holiday, MissedCheckIn, Person, Role, Team
from checkwatch.schemas import (
    HolidayCreate,
    HolidayRead,
    HolidayUpdate,
    MissedCheckInListResponse,
    MissedCheckInRead,
    PersonCreate,
    PersonRead,
    PersonUpdate,
    TeamAnalyticsRead,
    TeamCreate,
    TeamRead,
    TeamUpdate,
)
from checkwatch.services.holidays import invalidate_holiday_cache
from checkwatch.services.schedule import is_end_time_after_start
from checkwatch.services.team_analytics import get_team_analytics
from checkwatch.services.transfers import (
    CancelReason,
    TransferStatus,
    apply_person_update_cascades,
    cancel_transfer,
    cancel_transfers_for_team_deactivation,
    get_transfer_status,
    request_team_change,
)

router = APIRouter(prefix="/api/companies/{company_id}", tags=["admin"])

SCHEDULE_FIELDS = ("work_days", "check_in_start", "check_in_end")


def get_company_or_404(db: Session, company_id: int) -> Company:
    company = db.get(Company, company_id)
    if company is None or not company.is_active:
        raise NotFoundApiError("Company")
    return company


def get_team_or_404(db: Session, company: Company, team_id: int) -> Team:
    team = db.get(Team, team_id)
    if team is None or team.company_id != company.id:
        raise NotFoundApiError("Team")
    return team


def get_person_or_404(db: Session, company: Company, person_id: int) -> Person:
    person = db.get(Person, person_id)
    if person is None or person.company_id != company.id:
        raise NotFoundApiError("Person")
    return person


def _to_person_read(person: Person) -> PersonRead:
    return PersonRead.model_validate(person).model_copy(
        update={"transfer_status": get_transfer_status(person).value}
    )


def _require_active_person(db: Session, company: Company, person_id: int | None, label: str) -> None:
    if person_id is None:
        return
    person = db.get(Person, person_id)
    if person is None or person.company_id != company.id or not person.is_active:
        raise ValidationApiError(f"{label} must be an active person in this company.", code=f"INVALID_{label.upper()}")


@router.post("/teams", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
def create_team(
    company_id: int,
    payload: TeamCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> TeamRead:
    company = get_company_or_404(db, company_id)
    _require_active_person(db, company, payload.leader_id, "Leader")
    _require_active_person(db, company, payload.supervisor_id, "Supervisor")

    team = Team(company_id=company.id, **payload.model_dump())
    db.add(team)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictApiError("Team name already exists.", code="TEAM_NAME_TAKEN") from exc
    db.refresh(team)

    record_admin_action(
        db,
        request,
        company_id=company.id,
        action=AuditAction.TEAM_CREATED,
        entity_type="team",
        entity_id=team.id,
        details={"name": team.name, "leader_id": team.leader_id},
    )
    return TeamRead.model_validate(team)


@router.patch("/teams/{team_id}", response_model=TeamRead)
def update_team(
    company_id: int,
    team_id: int,
    payload: TeamUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> TeamRead:
    company = get_company_or_404(db, company_id)
    team = get_team_or_404(db, company, team_id)
    fields_set = payload.model_fields_set

    for field_name in ("name", "leader_id", "work_days", "check_in_start", "check_in_end"):
        if field_name in fields_set and getattr(payload, field_name) is None:
            raise ValidationApiError(f"{field_name} cannot be cleared.")
    if "leader_id" in fields_set:
        _require_active_person(db, company, payload.leader_id, "Leader")
    if "supervisor_id" in fields_set:
        _require_active_person(db, company, payload.supervisor_id, "Supervisor")

    check_in_start = payload.check_in_start if "check_in_start" in fields_set else team.check_in_start
    check_in_end = payload.check_in_end if "check_in_end" in fields_set else team.check_in_end
    if not is_end_time_after_start(check_in_start, check_in_end):
        raise ValidationApiError("check_in_end must be after check_in_start.", code="INVALID_SCHEDULE")

    was_active = team.is_active
    for field_name in ("name", "description", "leader_id", "supervisor_id", "work_days", "check_in_start", "check_in_end"):
        if field_name in fields_set:
            setattr(team, field_name, getattr(payload, field_name))
    if payload.is_active is not None:
        team.is_active = payload.is_active

    # The deactivation cascade flushes, so a duplicate name can surface there too.
    fallout = None
    try:
        if was_active and not team.is_active:
            fallout = cancel_transfers_for_team_deactivation(
                db,
                team,
                actor_id=request_actor_person_id(request),
                tz_name=company.timezone,
            )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictApiError("Team name already exists.", code="TEAM_NAME_TAKEN") from exc
    db.refresh(team)

    details: dict = {"fields": sorted(fields_set)}
    if fallout is not None:
        details["unassigned_members"] = fallout.unassigned_members
        details["cancelled_transfers"] = fallout.cancelled_transfers
    record_admin_action(
        db,
        request,
        company_id=company.id,
        action=AuditAction.TEAM_DEACTIVATED if fallout is not None else AuditAction.TEAM_UPDATED,
        entity_type="team",
        entity_id=team.id,
        details=details,
    )
    return TeamRead.model_validate(team)


@router.get("/teams/{team_id}/analytics", response_model=TeamAnalyticsRead)
def read_team_analytics(
    company_id: int,
    team_id: int,
    period: Literal["7d", "30d", "90d"] = Query(default="7d"),
    db: Session = Depends(get_db),
) -> TeamAnalyticsRead:
    company = get_company_or_404(db, company_id)
    team = get_team_or_404(db, company, team_id)
    analytics = get_team_analytics(db, team, period=period, tz_name=company.timezone)
    return TeamAnalyticsRead.model_validate(analytics)


@router.post("/persons", response_model=PersonRead, status_code=status.HTTP_201_CREATED)
def create_person(
    company_id: int,
    payload: PersonCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> PersonRead:
    company = get_company_or_404(db, company_id)
    if payload.role == Role.WORKER and payload.team_id is None:
        raise ValidationApiError("Workers must be assigned to a team.", code="TEAM_REQUIRED")
    if payload.role != Role.WORKER and any(getattr(payload, name) is not None for name in SCHEDULE_FIELDS):
        raise ValidationApiError("Schedule overrides apply to workers only.", code="INVALID_SCHEDULE")
    target_team = get_team_or_404(db, company, payload.team_id) if payload.team_id is not None else None

    person = Person(
        company_id=company.id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        role=payload.role,
        work_days=payload.work_days,
        check_in_start=payload.check_in_start,
        check_in_end=payload.check_in_end,
    )
    db.add(person)
    db.flush()
    if target_team is not None:
        request_team_change(
            db,
            person,
            target_team,
            initiated_by=request_actor_person_id(request),
            tz_name=company.timezone,
        )
    db.commit()
    db.refresh(person)

    record_admin_action(
        db,
        request,
        company_id=company.id,
        action=AuditAction.PERSON_CREATED,
        entity_type="person",
        entity_id=person.id,
        details={"role": person.role.value, "team_id": person.team_id},
    )
    return _to_person_read(person)


@router.patch("/persons/{person_id}", response_model=PersonRead)
def update_person(
    company_id: int,
    person_id: int,
    payload: PersonUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> PersonRead:
    company = get_company_or_404(db, company_id)
    person = get_person_or_404(db, company, person_id)
    fields_set = payload.model_fields_set
    actor_person_id = request_actor_person_id(request)

    for field_name in ("first_name", "last_name", "role", "is_active"):
        if field_name in fields_set and getattr(payload, field_name) is None:
            raise ValidationApiError(f"{field_name} cannot be cleared.")

    target_team = None
    if "team_id" in fields_set and payload.team_id is not None:
        target_team = get_team_or_404(db, company, payload.team_id)

    previous_role = person.role
    previous_is_active = person.is_active
    for field_name in ("first_name", "last_name", "email", "role", "is_active"):
        if field_name in fields_set:
            setattr(person, field_name, getattr(payload, field_name))

    becomes_required = person.role == Role.WORKER and person.is_active and (
        previous_role != Role.WORKER or not previous_is_active or "team_id" in fields_set
    )
    if becomes_required and target_team is None and (person.team_id is None or "team_id" in fields_set):
        raise ValidationApiError("Workers must be assigned to a team.", code="TEAM_REQUIRED")

    if any(name in fields_set for name in SCHEDULE_FIELDS):
        if person.role != Role.WORKER and any(getattr(payload, name) is not None for name in SCHEDULE_FIELDS):
            raise ValidationApiError("Schedule overrides apply to workers only.", code="INVALID_SCHEDULE")
        for field_name in SCHEDULE_FIELDS:
            if field_name in fields_set:
                setattr(person, field_name, getattr(payload, field_name))

    cancelled_reason = apply_person_update_cascades(
        db,
        person,
        previous_role=previous_role,
        previous_is_active=previous_is_active,
        actor_id=actor_person_id,
        tz_name=company.timezone,
    )

    team_change = None
    if "team_id" in fields_set and person.is_active:
        if target_team is not None:
            team_change = request_team_change(
                db,
                person,
                target_team,
                initiated_by=actor_person_id,
                tz_name=company.timezone,
            ).kind.value
        elif person.team_id is not None:
            cancel_transfer(
                db,
                person,
                reason=CancelReason.CANCELLED_BY_ADMIN,
                actor_id=actor_person_id,
                tz_name=company.timezone,
            )
            person.team_id = None
            person.team_assigned_at = None
            team_change = "UNASSIGNED"

    db.commit()
    db.refresh(person)

    record_admin_action(
        db,
        request,
        company_id=company.id,
        action=AuditAction.PERSON_UPDATED,
        entity_type="person",
        entity_id=person.id,
        details={
            "fields": sorted(fields_set),
            "team_change": team_change,
            "cancelled_transfer_reason": cancelled_reason.value if cancelled_reason is not None else None,
        },
    )
    return _to_person_read(person)


@router.delete("/persons/{person_id}/pending-transfer", response_model=PersonRead)
def delete_pending_transfer(
    company_id: int,
    person_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> PersonRead:
    company = get_company_or_404(db, company_id)
    person = get_person_or_404(db, company, person_id)
    if get_transfer_status(person) is not TransferStatus.PENDING:
        raise NotFoundApiError("Pending transfer")

    cancelled_team_id = person.effective_team_id
    cancel_transfer(
        db,
        person,
        reason=CancelReason.CANCELLED_BY_ADMIN,
        actor_id=request_actor_person_id(request),
        tz_name=company.timezone,
    )
    db.commit()
    db.refresh(person)

    record_admin_action(
        db,
        request,
        company_id=company.id,
        action=AuditAction.TRANSFER_CANCELLED,
        entity_type="person",
        entity_id=person.id,
        details={"cancelled_transfer_to": cancelled_team_id},
    )
    return _to_person_read(person)


@router.get("/holidays", response_model=list[HolidayRead])
def list_holidays(
    company_id: int,
    year: int | None = Query(default=None, ge=1900, le=9999),
    db: Session = Depends(get_db),
) -> list[HolidayRead]:
    company = get_company_or_404(db, company_id)
    stmt = select(Holiday).where(Holiday.company_id == company.id).order_by(Holiday.date.asc())
    if year is not None:
        stmt = stmt.where(Holiday.date >= date(year, 1, 1), Holiday.date <= date(year, 12, 31))
    return [HolidayRead.model_validate(item) for item in db.scalars(stmt).all()]


@router.post("/holidays", response_model=HolidayRead, status_code=status.HTTP_201_CREATED)
def create_holiday(
    company_id: int,
    payload: HolidayCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> HolidayRead:
    company = get_company_or_404(db, company_id)
    holiday = Holiday(
        company_id=company.id,
        name=payload.name,
        date=payload.date,
        is_recurring=payload.is_recurring,
    )
    db.add(holiday)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictApiError("A holiday already exists on this date.", code="HOLIDAY_EXISTS") from exc
    db.refresh(holiday)
    invalidate_holiday_cache(company.id)

    record_admin_action(
        db,
        request,
        company_id=company.id,
        action=AuditAction.HOLIDAY_CREATED,
        entity_type="holiday",
        entity_id=holiday.id,
        details={"date": holiday.date.isoformat(), "is_recurring": holiday.is_recurring},
    )
    return HolidayRead.model_validate(holiday)


@router.patch("/holidays/{holiday_id}", response_model=HolidayRead)
def update_holiday(
    company_id: int,
    holiday_id: int,
    payload: HolidayUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> HolidayRead:
    company = get_company_or_404(db, company_id)
    holiday = db.get(Holiday, holiday_id)
    if holiday is None or holiday.company_id != company.id:
        raise NotFoundApiError("Holiday")

    if payload.name is not None:
        holiday.name = payload.name
    if payload.date is not None:
        holiday.date = payload.date
    if payload.is_recurring is not None:
        holiday.is_recurring = payload.is_recurring
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictApiError("A holiday already exists on this date.", code="HOLIDAY_EXISTS") from exc
    db.refresh(holiday)
    invalidate_holiday_cache(company.id)

    record_admin_action(
        db,
        request,
        company_id=company.id,
        action=AuditAction.HOLIDAY_UPDATED,
        entity_type="holiday",
        entity_id=holiday.id,
        details={"date": holiday.date.isoformat(), "is_recurring": holiday.is_recurring},
    )
    return HolidayRead.model_validate(holiday)


@router.delete("/holidays/{holiday_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_holiday(
    company_id: int,
    holiday_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> Response:
    company = get_company_or_404(db, company_id)
    holiday = db.get(Holiday, holiday_id)
    if holiday is None or holiday.company_id != company.id:
        raise NotFoundApiError("Holiday")

    db.delete(holiday)
    db.commit()
    invalidate_holiday_cache(company.id)

    record_admin_action(
        db,
        request,
        company_id=company.id,
        action=AuditAction.HOLIDAY_DELETED,
        entity_type="holiday",
        entity_id=holiday_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/missed-check-ins", response_model=MissedCheckInListResponse)
def list_missed_check_ins(
    company_id: int,
    person_id: int | None = Query(default=None, ge=1),
    team_id: int | None = Query(default=None, ge=1),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> MissedCheckInListResponse:
    company = get_company_or_404(db, company_id)
    if start_date is not None and end_date is not None and end_date < start_date:
        raise ValidationApiError("end_date must not be before start_date.")

    conditions = [MissedCheckIn.company_id == company.id]
    if person_id is not None:
        conditions.append(MissedCheckIn.person_id == person_id)
    if team_id is not None:
        conditions.append(MissedCheckIn.team_id == team_id)
    if start_date is not None:
        conditions.append(MissedCheckIn.missed_date >= start_date)
    if end_date is not None:
        conditions.append(MissedCheckIn.missed_date <= end_date)

    total = db.scalar(select(func.count(MissedCheckIn.id)).where(*conditions)) or 0
    items = db.scalars(
        select(MissedCheckIn)
        .where(*conditions)
        .order_by(MissedCheckIn.missed_date.desc(), MissedCheckIn.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return MissedCheckInListResponse(
        items=[MissedCheckInRead.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )
