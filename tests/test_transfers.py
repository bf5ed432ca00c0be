from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from unittest.mock import patch

from checkwatch.errors import TransferConflictError, ValidationApiError
from checkwatch.models import EventType, Role
from checkwatch.services.dispatch import EventRequest, NotificationRequest, side_effect_queue
from checkwatch.services.transfers import (
    CancelReason,
    _apply_due_transfer,
    TeamChangeKind,
    TransferStatus,
    _transfer_run_lock,
    apply_person_update_cascades,
    cancel_transfer,
    cancel_transfers_for_team_deactivation,
    get_transfer_status,
    process_transfers,
    request_team_change,
)
from sqlite_support import make_session_factory, seed_company, seed_person, seed_team

UTC = timezone.utc
TZ = "Asia/Manila"
# Wednesday 2026-03-04, 08:30 in Manila.
WED_0830 = datetime(2026, 3, 4, 0, 30, tzinfo=UTC)
THU_0830 = datetime(2026, 3, 5, 0, 30, tzinfo=UTC)


def _drain_events() -> list[EventRequest]:
    return [item for item in side_effect_queue.take(100) if isinstance(item, EventRequest)]


class _TransferTestCase(unittest.TestCase):
    def setUp(self) -> None:
        side_effect_queue.clear()
        self.db = make_session_factory()()
        self.company = seed_company(self.db, tz_name=TZ)
        self.alpha = seed_team(self.db, self.company, name="Alpha")
        self.bravo = seed_team(self.db, self.company, name="Bravo")
        self.charlie = seed_team(self.db, self.company, name="Charlie")
        self.worker = seed_person(
            self.db,
            self.company,
            first_name="Ana",
            team=self.alpha,
            assigned_at=datetime(2026, 2, 1, tzinfo=UTC),
        )

    def tearDown(self) -> None:
        self.db.close()
        side_effect_queue.clear()

    def _schedule_move_to_bravo(self, now_utc: datetime = WED_0830) -> None:
        request_team_change(self.db, self.worker, self.bravo, initiated_by=99, tz_name=TZ, now_utc=now_utc)
        self.db.commit()
        side_effect_queue.clear()


class RequestTeamChangeTests(_TransferTestCase):
    def test_worker_without_team_is_assigned_immediately(self) -> None:
        newcomer = seed_person(self.db, self.company, first_name="Ben")

        outcome = request_team_change(self.db, newcomer, self.bravo, initiated_by=99, tz_name=TZ, now_utc=WED_0830)
        self.db.commit()

        self.assertEqual(outcome.kind, TeamChangeKind.ASSIGNED)
        self.assertEqual(newcomer.team_id, self.bravo.id)
        self.assertEqual(newcomer.team_assigned_at, WED_0830)
        self.assertEqual(get_transfer_status(newcomer), TransferStatus.NONE)
        notifications = [item for item in side_effect_queue.take(10) if isinstance(item, NotificationRequest)]
        self.assertEqual([item.title for item in notifications], ["Welcome to Bravo!"])

    def test_move_between_teams_is_scheduled_for_tomorrow(self) -> None:
        outcome = request_team_change(self.db, self.worker, self.bravo, initiated_by=99, tz_name=TZ, now_utc=WED_0830)
        self.db.commit()

        self.assertEqual(outcome.kind, TeamChangeKind.SCHEDULED)
        self.assertEqual(self.worker.team_id, self.alpha.id)
        self.assertEqual(self.worker.effective_team_id, self.bravo.id)
        self.assertEqual(self.worker.effective_transfer_date, date(2026, 3, 5))
        self.assertEqual(self.worker.transfer_initiated_by, 99)
        self.assertEqual(get_transfer_status(self.worker), TransferStatus.PENDING)
        events = _drain_events()
        self.assertEqual([item.event_type for item in events], [EventType.TEAM_TRANSFER_INITIATED])
        self.assertEqual(events[0].payload["effectiveDate"], "2026-03-05")

    def test_rolled_back_change_queues_nothing(self) -> None:
        request_team_change(self.db, self.worker, self.bravo, initiated_by=99, tz_name=TZ, now_utc=WED_0830)
        self.assertEqual(len(side_effect_queue), 0)

        self.db.rollback()

        self.assertEqual(len(side_effect_queue), 0)
        self.assertEqual(get_transfer_status(self.worker), TransferStatus.NONE)

    def test_tomorrow_is_company_local(self) -> None:
        # 17:00 UTC on Mar 3 is already 01:00 on Mar 4 in Manila.
        request_team_change(
            self.db,
            self.worker,
            self.bravo,
            initiated_by=None,
            tz_name=TZ,
            now_utc=datetime(2026, 3, 3, 17, 0, tzinfo=UTC),
        )

        self.assertEqual(self.worker.effective_transfer_date, date(2026, 3, 5))

    def test_second_transfer_while_pending_conflicts(self) -> None:
        self._schedule_move_to_bravo()

        with self.assertRaises(TransferConflictError) as ctx:
            request_team_change(self.db, self.worker, self.charlie, initiated_by=99, tz_name=TZ, now_utc=WED_0830)

        self.assertEqual(ctx.exception.code, "TRANSFER_PENDING")
        self.assertEqual(ctx.exception.pending_team_id, self.bravo.id)
        self.assertEqual(self.worker.effective_team_id, self.bravo.id)

    def test_reassigning_current_team_cancels_pending(self) -> None:
        self._schedule_move_to_bravo()

        outcome = request_team_change(self.db, self.worker, self.alpha, initiated_by=7, tz_name=TZ, now_utc=WED_0830)
        self.db.commit()

        self.assertEqual(outcome.kind, TeamChangeKind.CANCELLED)
        self.assertEqual(get_transfer_status(self.worker), TransferStatus.NONE)
        self.assertIsNone(self.worker.effective_transfer_date)
        self.assertIsNone(self.worker.transfer_initiated_by)
        events = _drain_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].payload["reason"], "reassigned_to_current_team")
        self.assertEqual(events[0].payload["cancelledTransferTo"], self.bravo.id)
        self.assertEqual(events[0].payload["cancelledBy"], 7)

    def test_inactive_target_is_rejected(self) -> None:
        self.bravo.is_active = False
        self.db.commit()

        with self.assertRaises(ValidationApiError) as ctx:
            request_team_change(self.db, self.worker, self.bravo, initiated_by=99, tz_name=TZ, now_utc=WED_0830)

        self.assertEqual(ctx.exception.code, "INVALID_TEAM")

    def test_same_team_is_a_no_op(self) -> None:
        outcome = request_team_change(self.db, self.worker, self.alpha, initiated_by=99, tz_name=TZ, now_utc=WED_0830)

        self.assertEqual(outcome.kind, TeamChangeKind.UNCHANGED)
        self.assertEqual(len(side_effect_queue), 0)

    def test_cancel_without_pending_returns_false(self) -> None:
        self.assertFalse(
            cancel_transfer(self.db, self.worker, reason=CancelReason.CANCELLED_BY_ADMIN, actor_id=1, tz_name=TZ)
        )
        self.assertEqual(len(side_effect_queue), 0)


class CascadeTests(_TransferTestCase):
    def test_deactivation_with_role_change_cancels_once(self) -> None:
        self._schedule_move_to_bravo()
        self.worker.work_days = "1,2"
        self.worker.role = Role.TEAM_LEAD
        self.worker.is_active = False

        reason = apply_person_update_cascades(
            self.db,
            self.worker,
            previous_role=Role.WORKER,
            previous_is_active=True,
            actor_id=5,
            tz_name=TZ,
        )
        self.db.commit()

        self.assertEqual(reason, CancelReason.DEACTIVATION)
        self.assertIsNone(self.worker.work_days)
        events = _drain_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].event_type, EventType.TEAM_TRANSFER_CANCELLED)
        self.assertEqual(events[0].payload["reason"], "deactivation")

    def test_role_change_clears_overrides_and_cancels(self) -> None:
        self._schedule_move_to_bravo()
        self.worker.check_in_start = "07:00"
        self.worker.check_in_end = "09:00"
        self.worker.role = Role.SUPERVISOR

        reason = apply_person_update_cascades(
            self.db,
            self.worker,
            previous_role=Role.WORKER,
            previous_is_active=True,
            actor_id=5,
            tz_name=TZ,
        )

        self.assertEqual(reason, CancelReason.ROLE_CHANGED)
        self.assertIsNone(self.worker.check_in_start)
        self.assertIsNone(self.worker.check_in_end)
        self.assertEqual(get_transfer_status(self.worker), TransferStatus.NONE)

    def test_nothing_pending_means_no_event(self) -> None:
        self.worker.is_active = False

        reason = apply_person_update_cascades(
            self.db,
            self.worker,
            previous_role=Role.WORKER,
            previous_is_active=True,
            actor_id=5,
            tz_name=TZ,
        )

        self.assertIsNone(reason)
        self.assertEqual(len(side_effect_queue), 0)

    def test_team_deactivation_fallout(self) -> None:
        # Ana: Alpha -> Bravo (incoming to Bravo). Ben: member of Bravo moving to Charlie. Cy: plain Bravo member.
        self._schedule_move_to_bravo()
        ben = seed_person(self.db, self.company, first_name="Ben", team=self.bravo, assigned_at=datetime(2026, 1, 5, tzinfo=UTC))
        cy = seed_person(self.db, self.company, first_name="Cy", team=self.bravo, assigned_at=datetime(2026, 1, 5, tzinfo=UTC))
        request_team_change(self.db, ben, self.charlie, initiated_by=99, tz_name=TZ, now_utc=WED_0830)
        self.db.commit()
        side_effect_queue.clear()

        self.bravo.is_active = False
        fallout = cancel_transfers_for_team_deactivation(self.db, self.bravo, actor_id=99, tz_name=TZ)
        self.db.commit()

        self.assertEqual(fallout.cancelled_transfers, 2)
        self.assertEqual(fallout.unassigned_members, 2)
        self.assertEqual(self.worker.team_id, self.alpha.id)
        self.assertIsNone(self.worker.effective_team_id)
        self.assertIsNone(ben.team_id)
        self.assertIsNone(ben.effective_team_id)
        self.assertIsNone(cy.team_id)
        self.assertIsNone(cy.team_assigned_at)
        reasons = [item.payload["reason"] for item in _drain_events()]
        self.assertEqual(reasons, ["team_deactivated", "team_deactivated"])


class ProcessTransfersTests(_TransferTestCase):
    def test_transfer_waits_for_effective_date(self) -> None:
        self._schedule_move_to_bravo()

        result = process_transfers(WED_0830, db=self.db)

        self.assertEqual(result.processed, 0)
        self.assertEqual(self.worker.team_id, self.alpha.id)
        self.assertEqual(get_transfer_status(self.worker), TransferStatus.PENDING)

    def test_due_transfer_is_applied_once(self) -> None:
        self._schedule_move_to_bravo()

        first = process_transfers(THU_0830, db=self.db)
        second = process_transfers(THU_0830, db=self.db)

        self.assertEqual(first.processed, 1)
        self.assertEqual(second.processed, 0)
        self.db.refresh(self.worker)
        self.assertEqual(self.worker.team_id, self.bravo.id)
        self.assertIsNone(self.worker.effective_team_id)
        self.assertIsNone(self.worker.effective_transfer_date)
        self.assertIsNone(self.worker.transfer_initiated_by)
        self.assertEqual(self.worker.team_assigned_at.replace(tzinfo=UTC), THU_0830)
        events = _drain_events()
        completed = [item for item in events if item.event_type == EventType.TEAM_TRANSFER_COMPLETED]
        self.assertEqual(len(completed), 1)
        self.assertEqual(completed[0].payload["newTeamId"], self.bravo.id)
        self.assertEqual(completed[0].payload["effectiveDate"], "2026-03-05")

    def test_inactive_target_cancels_at_apply_time(self) -> None:
        self._schedule_move_to_bravo()
        self.bravo.is_active = False
        self.db.commit()

        result = process_transfers(THU_0830, db=self.db)

        self.assertEqual(result.processed, 0)
        self.assertEqual(result.cancelled, 1)
        self.db.refresh(self.worker)
        self.assertEqual(self.worker.team_id, self.alpha.id)
        self.assertIsNone(self.worker.effective_team_id)
        items = side_effect_queue.take(10)
        reasons = [item.payload["reason"] for item in items if isinstance(item, EventRequest)]
        titles = [item.title for item in items if isinstance(item, NotificationRequest)]
        self.assertEqual(reasons, ["target_team_inactive"])
        self.assertEqual(titles, ["Transfer Cancelled"])

    def test_one_failing_transfer_does_not_block_the_rest(self) -> None:
        ben = seed_person(self.db, self.company, first_name="Ben", team=self.alpha, assigned_at=datetime(2026, 2, 1, tzinfo=UTC))
        request_team_change(self.db, ben, self.bravo, initiated_by=99, tz_name=TZ, now_utc=WED_0830)
        self._schedule_move_to_bravo()
        ana_id = self.worker.id

        def apply_or_fail(db, person, target_team, now_utc):
            if person.id == ana_id:
                raise RuntimeError("row locked")
            return _apply_due_transfer(db, person, target_team, now_utc)

        with patch("checkwatch.services.transfers._apply_due_transfer", side_effect=apply_or_fail):
            result = process_transfers(THU_0830, db=self.db)

        self.assertEqual((result.processed, result.failed), (1, 1))
        self.db.refresh(self.worker)
        self.db.refresh(ben)
        self.assertEqual(self.worker.team_id, self.alpha.id)
        self.assertEqual(get_transfer_status(self.worker), TransferStatus.PENDING)
        self.assertEqual(ben.team_id, self.bravo.id)
        completed = [item.person_id for item in _drain_events() if item.event_type == EventType.TEAM_TRANSFER_COMPLETED]
        self.assertEqual(completed, [ben.id])

    def test_inactive_worker_is_left_alone(self) -> None:
        self._schedule_move_to_bravo()
        self.worker.is_active = False
        self.db.commit()

        result = process_transfers(THU_0830, db=self.db)

        self.assertEqual(result.processed, 0)
        self.assertEqual(self.worker.team_id, self.alpha.id)

    def test_concurrent_run_is_skipped(self) -> None:
        self._schedule_move_to_bravo()
        self.assertTrue(_transfer_run_lock.acquire(blocking=False))
        try:
            result = process_transfers(THU_0830, db=self.db)
        finally:
            _transfer_run_lock.release()

        self.assertTrue(result.already_running)
        self.assertEqual(result.processed, 0)
        self.assertEqual(self.worker.team_id, self.alpha.id)


if __name__ == "__main__":
    unittest.main()
