from __future__ import annotations

import logging
import queue
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import event, select
from sqlalchemy.orm import Session, SessionTransaction

from checkwatch.db import SessionLocal
from checkwatch.models import Event, EventType, NotificationJob, NotificationType

logger = logging.getLogger("checkwatch.dispatch")

DEFAULT_QUEUE_SIZE = 10_000
DEFAULT_DRAIN_PAGE_SIZE = 500
_PENDING_KEY = "checkwatch.pending_side_effects"


@dataclass(frozen=True, slots=True)
class EventRequest:
    company_id: int
    event_type: EventType
    entity_type: str
    tz_name: str
    person_id: int | None = None
    entity_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    event_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class NotificationRequest:
    company_id: int
    person_id: int
    notification_type: NotificationType
    title: str
    message: str
    idempotency_key: str | None = None


SideEffect = EventRequest | NotificationRequest


@dataclass(slots=True)
class DrainResult:
    persisted: int = 0
    skipped: int = 0
    failed: int = 0


class SideEffectQueue:
    """Thread-safe hand-off between the engine and whoever persists side effects.

    `put` never blocks and never raises: when the queue is full the item is
    logged and dropped.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: queue.Queue[SideEffect] = queue.Queue(maxsize=maxsize)

    def __len__(self) -> int:
        return self._queue.qsize()

    def put(self, item: SideEffect) -> bool:
        try:
            self._queue.put_nowait(item)
        except queue.Full:
            logger.error(
                "side_effect_queue_full",
                extra={"kind": type(item).__name__, "company_id": item.company_id},
            )
            return False
        return True

    def take(self, limit: int) -> list[SideEffect]:
        items: list[SideEffect] = []
        while len(items) < limit:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return items

    def clear(self) -> None:
        self.take(self._queue.qsize() + 1)


side_effect_queue = SideEffectQueue()


def _dispatch(item: SideEffect, target: SideEffectQueue | None, db: Session | None) -> None:
    if db is None:
        (target or side_effect_queue).put(item)
        return
    # Held on the session until its transaction commits; a rollback or close drops it.
    if not db.in_transaction():
        db.begin()
    db.info.setdefault(_PENDING_KEY, []).append((item, target))


@event.listens_for(Session, "after_commit")
def _publish_pending(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, [])
    for item, target in pending:
        (target or side_effect_queue).put(item)


@event.listens_for(Session, "after_transaction_end")
def _discard_pending(session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is not None:
        return
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.info("side_effects_discarded_on_rollback", extra={"count": len(dropped)})


def emit_event(
    company_id: int,
    *,
    event_type: EventType,
    entity_type: str,
    tz_name: str,
    person_id: int | None = None,
    entity_id: str | int | None = None,
    payload: dict[str, Any] | None = None,
    target: SideEffectQueue | None = None,
    db: Session | None = None,
) -> None:
    """Queue an event. With `db`, it is queued only once that session commits."""
    _dispatch(
        EventRequest(
            company_id=company_id,
            event_type=event_type,
            entity_type=entity_type,
            tz_name=tz_name,
            person_id=person_id,
            entity_id=str(entity_id) if entity_id is not None else None,
            payload=dict(payload or {}),
        ),
        target,
        db,
    )


def send_notification(
    company_id: int,
    *,
    person_id: int,
    notification_type: NotificationType,
    title: str,
    message: str,
    idempotency_key: str | None = None,
    target: SideEffectQueue | None = None,
    db: Session | None = None,
) -> None:
    _dispatch(
        NotificationRequest(
            company_id=company_id,
            person_id=person_id,
            notification_type=notification_type,
            title=title,
            message=message,
            idempotency_key=idempotency_key,
        ),
        target,
        db,
    )


def send_notifications(
    company_id: int,
    notifications: Iterable[NotificationRequest],
    *,
    target: SideEffectQueue | None = None,
) -> None:
    destination = target or side_effect_queue
    for item in notifications:
        if item.company_id != company_id:
            logger.warning(
                "notification_company_mismatch",
                extra={"company_id": company_id, "person_id": item.person_id},
            )
            continue
        destination.put(item)


def _persist_item(session: Session, item: SideEffect) -> bool:
    if isinstance(item, EventRequest):
        session.add(
            Event(
                company_id=item.company_id,
                person_id=item.person_id,
                event_type=item.event_type,
                entity_type=item.entity_type,
                entity_id=item.entity_id,
                payload=item.payload,
                event_time=item.event_time,
                event_timezone=item.tz_name,
            )
        )
        return True

    if item.idempotency_key is not None:
        existing = session.scalar(
            select(NotificationJob.id).where(NotificationJob.idempotency_key == item.idempotency_key)
        )
        if existing is not None:
            return False

    session.add(
        NotificationJob(
            company_id=item.company_id,
            person_id=item.person_id,
            notification_type=item.notification_type,
            title=item.title,
            message=item.message,
            status="PENDING",
            idempotency_key=item.idempotency_key,
        )
    )
    return True


def drain_side_effects(
    db: Session | None = None,
    *,
    page_size: int = DEFAULT_DRAIN_PAGE_SIZE,
    source: SideEffectQueue | None = None,
) -> DrainResult:
    """Persist queued side effects page by page until the queue is empty."""
    if db is None:
        with SessionLocal() as managed_db:
            return drain_side_effects(managed_db, page_size=page_size, source=source)

    session = db
    source_queue = source or side_effect_queue
    page_size = max(1, page_size)
    result = DrainResult()
    while True:
        batch = source_queue.take(page_size)
        for item in batch:
            try:
                if not _persist_item(session, item):
                    result.skipped += 1
                    continue
                session.commit()
                result.persisted += 1
            except Exception:
                session.rollback()
                result.failed += 1
                logger.exception(
                    "side_effect_persist_failed",
                    extra={
                        "kind": type(item).__name__,
                        "company_id": item.company_id,
                        "person_id": item.person_id,
                    },
                )
        if len(batch) < page_size:
            break

    if result.persisted or result.failed:
        logger.info(
            "side_effects_drained",
            extra={
                "persisted": result.persisted,
                "skipped": result.skipped,
                "failed": result.failed,
            },
        )
    return result
