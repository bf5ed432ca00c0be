from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from checkwatch.db import SessionLocal
from checkwatch.errors import TransferConflictError, ValidationApiError
from checkwatch.models import Company, EventType, NotificationType, Person, Role, Team
from checkwatch.services.calendar import (
    _normalize_ts,
    add_days_to_date_key,
    get_today_in_timezone,
    to_calendar_date,
)
from checkwatch.services.dispatch import emit_event, send_notification

logger = logging.getLogger("checkwatch.transfers")

_transfer_run_lock = threading.Lock()


class TransferStatus(str, enum.Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    APPLIED = "APPLIED"
    CANCELLED = "CANCELLED"


class CancelReason(str, enum.Enum):
    CANCELLED_BY_ADMIN = "cancelled_by_admin"
    ROLE_CHANGED = "role_changed"
    DEACTIVATION = "deactivation"
    REASSIGNED_TO_CURRENT_TEAM = "reassigned_to_current_team"
    TEAM_DEACTIVATED = "team_deactivated"
    TARGET_TEAM_INACTIVE = "target_team_inactive"


class TeamChangeKind(str, enum.Enum):
    ASSIGNED = "ASSIGNED"
    SCHEDULED = "SCHEDULED"
    CANCELLED = "CANCELLED"
    UNCHANGED = "UNCHANGED"


@dataclass(frozen=True, slots=True)
class TeamChangeOutcome:
    kind: TeamChangeKind
    team_id: int | None
    effective_team_id: int | None = None
    effective_transfer_date: date | None = None


@dataclass(slots=True)
class TeamDeactivationFallout:
    unassigned_members: int = 0
    cancelled_transfers: int = 0


@dataclass(slots=True)
class TransferRunResult:
    processed: int = 0
    cancelled: int = 0
    failed: int = 0
    skipped: int = 0
    companies_failed: int = 0
    already_running: bool = False


def get_transfer_status(person: Person) -> TransferStatus:
    if person.effective_team_id is not None:
        return TransferStatus.PENDING
    return TransferStatus.NONE


def _clear_pending_fields(person: Person) -> None:
    person.effective_team_id = None
    person.effective_transfer_date = None
    person.transfer_initiated_by = None


def cancel_transfer(
    db: Session,
    person: Person,
    *,
    reason: CancelReason,
    actor_id: int | None,
    tz_name: str,
) -> bool:
    """Clear a pending transfer. Returns False when nothing was pending."""
    if get_transfer_status(person) is not TransferStatus.PENDING:
        return False

    cancelled_team_id = person.effective_team_id
    _clear_pending_fields(person)
    db.flush()

    emit_event(
        person.company_id,
        db=db,
        event_type=EventType.TEAM_TRANSFER_CANCELLED,
        entity_type="person",
        entity_id=person.id,
        person_id=person.id,
        tz_name=tz_name,
        payload={
            "cancelledTransferTo": cancelled_team_id,
            "reason": reason.value,
            "cancelledBy": actor_id,
        },
    )
    logger.info(
        "transfer_cancelled",
        extra={
            "company_id": person.company_id,
            "person_id": person.id,
            "cancelled_team_id": cancelled_team_id,
            "reason": reason.value,
            "actor_id": actor_id,
        },
    )
    return True


def request_team_change(
    db: Session,
    person: Person,
    target_team: Team,
    *,
    initiated_by: int | None,
    tz_name: str,
    now_utc: datetime | None = None,
) -> TeamChangeOutcome:
    """Move a worker to `target_team`.

    No current team means an immediate assignment. A different current team
    schedules the move for tomorrow (company-local); the worker stays on the
    current team's schedule until then.
    """
    reference_utc = _normalize_ts(now_utc)

    if get_transfer_status(person) is TransferStatus.PENDING:
        if target_team.id == person.team_id:
            cancel_transfer(
                db,
                person,
                reason=CancelReason.REASSIGNED_TO_CURRENT_TEAM,
                actor_id=initiated_by,
                tz_name=tz_name,
            )
            return TeamChangeOutcome(kind=TeamChangeKind.CANCELLED, team_id=person.team_id)
        raise TransferConflictError(person_id=person.id, pending_team_id=person.effective_team_id)

    if not target_team.is_active:
        raise ValidationApiError("Target team is not active.", code="INVALID_TEAM")

    if person.team_id == target_team.id:
        return TeamChangeOutcome(kind=TeamChangeKind.UNCHANGED, team_id=person.team_id)

    if person.team_id is None:
        person.team_id = target_team.id
        person.team_assigned_at = reference_utc
        db.flush()
        send_notification(
            person.company_id,
            db=db,
            person_id=person.id,
            notification_type=NotificationType.TEAM_ALERT,
            title=f"Welcome to {target_team.name}!",
            message="You have been assigned to a team. Your first check-in starts on your next scheduled work day.",
        )
        logger.info(
            "team_assigned",
            extra={
                "company_id": person.company_id,
                "person_id": person.id,
                "team_id": target_team.id,
            },
        )
        return TeamChangeOutcome(kind=TeamChangeKind.ASSIGNED, team_id=target_team.id)

    effective_key = add_days_to_date_key(get_today_in_timezone(tz_name, reference_utc), 1)
    person.effective_team_id = target_team.id
    person.effective_transfer_date = to_calendar_date(effective_key)
    person.transfer_initiated_by = initiated_by
    db.flush()

    emit_event(
        person.company_id,
        db=db,
        event_type=EventType.TEAM_TRANSFER_INITIATED,
        entity_type="person",
        entity_id=person.id,
        person_id=person.id,
        tz_name=tz_name,
        payload={
            "fromTeamId": person.team_id,
            "toTeamId": target_team.id,
            "toTeamName": target_team.name,
            "effectiveDate": effective_key,
            "initiatedBy": initiated_by,
        },
    )
    send_notification(
        person.company_id,
        db=db,
        person_id=person.id,
        notification_type=NotificationType.TEAM_ALERT,
        title="Team Transfer Scheduled",
        message=f"You will move to {target_team.name} on {effective_key}. Keep checking in with your current team until then.",
    )
    logger.info(
        "transfer_scheduled",
        extra={
            "company_id": person.company_id,
            "person_id": person.id,
            "from_team_id": person.team_id,
            "to_team_id": target_team.id,
            "effective_date": effective_key,
        },
    )
    return TeamChangeOutcome(
        kind=TeamChangeKind.SCHEDULED,
        team_id=person.team_id,
        effective_team_id=target_team.id,
        effective_transfer_date=person.effective_transfer_date,
    )


def apply_person_update_cascades(
    db: Session,
    person: Person,
    *,
    previous_role: Role,
    previous_is_active: bool,
    actor_id: int | None,
    tz_name: str,
) -> CancelReason | None:
    """Run after role / active changes have been written onto `person`.

    At most one cancellation fires; deactivation wins over a role change.
    """
    left_worker_role = previous_role == Role.WORKER and person.role != Role.WORKER
    if left_worker_role:
        person.work_days = None
        person.check_in_start = None
        person.check_in_end = None

    reason: CancelReason | None = None
    if previous_is_active and not person.is_active:
        reason = CancelReason.DEACTIVATION
    elif left_worker_role:
        reason = CancelReason.ROLE_CHANGED

    if reason is None:
        return None
    if not cancel_transfer(db, person, reason=reason, actor_id=actor_id, tz_name=tz_name):
        return None
    return reason


def cancel_transfers_for_team_deactivation(
    db: Session,
    team: Team,
    *,
    actor_id: int | None,
    tz_name: str,
) -> TeamDeactivationFallout:
    """Cancel transfers into `team`, then unassign its members and cancel their outgoing transfers."""
    fallout = TeamDeactivationFallout()

    incoming = db.scalars(
        select(Person).where(
            Person.company_id == team.company_id,
            Person.effective_team_id == team.id,
        )
    ).all()
    for person in incoming:
        if cancel_transfer(
            db,
            person,
            reason=CancelReason.TEAM_DEACTIVATED,
            actor_id=actor_id,
            tz_name=tz_name,
        ):
            fallout.cancelled_transfers += 1

    members = db.scalars(
        select(Person).where(
            Person.company_id == team.company_id,
            Person.team_id == team.id,
            Person.is_active.is_(True),
        )
    ).all()
    for person in members:
        if cancel_transfer(
            db,
            person,
            reason=CancelReason.TEAM_DEACTIVATED,
            actor_id=actor_id,
            tz_name=tz_name,
        ):
            fallout.cancelled_transfers += 1
        person.team_id = None
        person.team_assigned_at = None
        fallout.unassigned_members += 1

    db.flush()
    logger.info(
        "team_deactivation_fallout",
        extra={
            "company_id": team.company_id,
            "team_id": team.id,
            "unassigned_members": fallout.unassigned_members,
            "cancelled_transfers": fallout.cancelled_transfers,
        },
    )
    return fallout


def _apply_due_transfer(db: Session, person: Person, target_team: Team, now_utc: datetime) -> bool:
    # Keyed on the pending target so a concurrent run that already applied it updates nothing.
    outcome = db.execute(
        update(Person)
        .where(
            Person.id == person.id,
            Person.company_id == person.company_id,
            Person.effective_team_id == target_team.id,
        )
        .values(
            team_id=target_team.id,
            team_assigned_at=now_utc,
            effective_team_id=None,
            effective_transfer_date=None,
            transfer_initiated_by=None,
        )
    )
    db.commit()
    return outcome.rowcount > 0


def process_company_transfers(
    db: Session,
    company: Company,
    now_utc: datetime,
    result: TransferRunResult,
) -> None:
    tz_name = company.timezone
    today_key = get_today_in_timezone(tz_name, now_utc)
    today = to_calendar_date(today_key)

    pending = db.scalars(
        select(Person)
        .options(selectinload(Person.effective_team))
        .where(
            Person.company_id == company.id,
            Person.is_active.is_(True),
            Person.effective_team_id.is_not(None),
            Person.effective_transfer_date <= today,
        )
        .order_by(Person.id.asc())
    ).all()

    for person in pending:
        person_id = person.id
        try:
            target_team = person.effective_team
            if target_team is None:
                logger.warning(
                    "transfer_skipped_missing_target",
                    extra={"company_id": company.id, "person_id": person.id},
                )
                result.skipped += 1
                continue

            if not target_team.is_active:
                cancel_transfer(
                    db,
                    person,
                    reason=CancelReason.TARGET_TEAM_INACTIVE,
                    actor_id=None,
                    tz_name=tz_name,
                )
                db.commit()
                send_notification(
                    company.id,
                    person_id=person.id,
                    notification_type=NotificationType.TEAM_ALERT,
                    title="Transfer Cancelled",
                    message=f"Your transfer to {target_team.name} was cancelled because the team is no longer active.",
                )
                result.cancelled += 1
                continue

            if not _apply_due_transfer(db, person, target_team, now_utc):
                result.skipped += 1
                continue

            send_notification(
                company.id,
                person_id=person.id,
                notification_type=NotificationType.TEAM_ALERT,
                title=f"Welcome to {target_team.name}!",
                message="Your transfer is complete. Your first check-in starts on your next scheduled work day.",
            )
            emit_event(
                company.id,
                event_type=EventType.TEAM_TRANSFER_COMPLETED,
                entity_type="person",
                entity_id=person.id,
                person_id=person.id,
                tz_name=tz_name,
                payload={
                    "newTeamId": target_team.id,
                    "newTeamName": target_team.name,
                    "effectiveDate": today_key,
                },
            )
            result.processed += 1
            logger.info(
                "transfer_completed",
                extra={
                    "company_id": company.id,
                    "person_id": person.id,
                    "new_team_id": target_team.id,
                },
            )
        except Exception:
            db.rollback()
            result.failed += 1
            logger.exception(
                "transfer_apply_failed",
                extra={"company_id": company.id, "person_id": person_id},
            )


def process_transfers(
    now_utc: datetime | None = None,
    db: Session | None = None,
) -> TransferRunResult:
    """Apply every pending transfer whose effective date has arrived, one company at a time."""
    if not _transfer_run_lock.acquire(blocking=False):
        logger.info("transfer_processing_skipped_already_running")
        return TransferRunResult(already_running=True)

    try:
        if db is None:
            with SessionLocal() as managed_db:
                return _process_all_companies(managed_db, _normalize_ts(now_utc))
        return _process_all_companies(db, _normalize_ts(now_utc))
    finally:
        _transfer_run_lock.release()


def _process_all_companies(db: Session, now_utc: datetime) -> TransferRunResult:
    result = TransferRunResult()
    companies = db.scalars(
        select(Company).where(Company.is_active.is_(True)).order_by(Company.id.asc())
    ).all()

    for company in companies:
        try:
            process_company_transfers(db, company, now_utc, result)
        except Exception:
            db.rollback()
            result.companies_failed += 1
            logger.exception(
                "transfer_company_failed",
                extra={"company_id": company.id},
            )

    if result.processed or result.cancelled or result.failed:
        logger.info(
            "transfer_processing_completed",
            extra={
                "processed": result.processed,
                "cancelled": result.cancelled,
                "failed": result.failed,
                "skipped": result.skipped,
                "companies_failed": result.companies_failed,
            },
        )
    return result