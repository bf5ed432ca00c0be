from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from checkwatch.db import get_db
from checkwatch.routers.admin import get_company_or_404, get_person_or_404
from checkwatch.schemas import (
    CheckInRead,
    CheckInStatusRead,
    CheckInSubmitRequest,
    EffectiveScheduleRead,
)
from checkwatch.services.check_ins import CheckInInput, get_check_in_status, submit_check_in

router = APIRouter(prefix="/api/companies/{company_id}/persons/{person_id}", tags=["check-ins"])


@router.post("/check-ins", response_model=CheckInRead, status_code=status.HTTP_201_CREATED)
def create_check_in(
    company_id: int,
    person_id: int,
    payload: CheckInSubmitRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> CheckInRead:
    company = get_company_or_404(db, company_id)
    person = get_person_or_404(db, company, person_id)
    request.state.person_id = person.id

    check_in = submit_check_in(
        db,
        person,
        CheckInInput(**payload.model_dump()),
        tz_name=company.timezone,
    )
    return CheckInRead.model_validate(check_in)


@router.get("/check-in-status", response_model=CheckInStatusRead)
def read_check_in_status(
    company_id: int,
    person_id: int,
    db: Session = Depends(get_db),
) -> CheckInStatusRead:
    company = get_company_or_404(db, company_id)
    person = get_person_or_404(db, company, person_id)

    result = get_check_in_status(db, person, tz_name=company.timezone)
    schedule = None
    if result.schedule is not None:
        schedule = EffectiveScheduleRead(
            work_days=sorted(result.schedule.work_days),
            check_in_start=result.schedule.check_in_start,
            check_in_end=result.schedule.check_in_end,
        )
    return CheckInStatusRead(
        date=result.date,
        is_work_day=result.is_work_day,
        is_holiday=result.is_holiday,
        holiday_name=result.holiday_name,
        is_within_window=result.is_within_window,
        can_check_in=result.can_check_in,
        has_checked_in_today=result.has_checked_in_today,
        schedule=schedule,
        team_id=result.team_id,
        team_name=result.team_name,
        message=result.message,
    )
