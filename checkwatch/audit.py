from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from checkwatch.errors import get_request_id
from checkwatch.models import AuditActorType, AuditLog

logger = logging.getLogger("checkwatch.audit")

SYSTEM_ACTOR = "system"


class AuditAction(str, enum.Enum):
    TEAM_CREATED = "TEAM_CREATED"
    TEAM_UPDATED = "TEAM_UPDATED"
    TEAM_DEACTIVATED = "TEAM_DEACTIVATED"
    PERSON_CREATED = "PERSON_CREATED"
    PERSON_UPDATED = "PERSON_UPDATED"
    TRANSFER_CANCELLED = "TRANSFER_CANCELLED"
    HOLIDAY_CREATED = "HOLIDAY_CREATED"
    HOLIDAY_UPDATED = "HOLIDAY_UPDATED"
    HOLIDAY_DELETED = "HOLIDAY_DELETED"


def request_actor_id(request: Request) -> str:
    """Actor recorded for a request; the middleware copies it from `X-Actor-Id`."""
    return str(getattr(request.state, "actor_id", None) or SYSTEM_ACTOR)


def request_actor_person_id(request: Request) -> int | None:
    actor_id = request_actor_id(request)
    return int(actor_id) if actor_id.isdigit() else None


def record_admin_action(
    db: Session,
    request: Request,
    *,
    company_id: int,
    action: AuditAction,
    entity_type: str,
    entity_id: int | str,
    details: dict[str, Any] | None = None,
) -> bool:
    """Write one audit row in its own commit.

    Runs after the mutation has been committed, so a failed audit write is
    logged and rolled back without undoing the change it describes.
    """
    actor_id = request_actor_id(request)
    request_id = get_request_id(request)
    entry = AuditLog(
        company_id=company_id,
        ts_utc=datetime.now(timezone.utc),
        actor_type=AuditActorType.ADMIN if actor_id != SYSTEM_ACTOR else AuditActorType.SYSTEM,
        actor_id=actor_id,
        action=action.value,
        entity_type=entity_type,
        entity_id=str(entity_id),
        success=True,
        details=details or {},
    )
    db.add(entry)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "company_id": company_id,
                "action": action.value,
                "actor_id": actor_id,
            },
        )
        return False

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "company_id": company_id,
            "action": action.value,
            "actor_type": entry.actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entry.entity_id,
            "details": entry.details,
        },
    )
    return True
