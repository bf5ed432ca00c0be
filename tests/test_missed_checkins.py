from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from unittest.mock import patch

from sqlalchemy import select

from checkwatch.models import EventType, MissedCheckIn, Role
from checkwatch.services.dispatch import EventRequest, NotificationRequest, side_effect_queue
from checkwatch.services.holidays import get_holiday_cache
from checkwatch.services.missed_checkins import (
    _build_record,
    _detector_run_lock,
    detect_missed_check_ins,
    format_schedule_window,
    window_closed,
)
from checkwatch.services.schedule import EffectiveSchedule
from sqlite_support import make_session_factory, seed_check_in, seed_company, seed_holiday, seed_person, seed_team

UTC = timezone.utc
TZ = "Asia/Manila"
# Wednesday 2026-03-04, 10:05 in Manila.
AFTER_WINDOW = datetime(2026, 3, 4, 2, 5, tzinfo=UTC)
ASSIGNED = datetime(2026, 2, 1, tzinfo=UTC)


class WindowHelpersTests(unittest.TestCase):
    def test_window_closes_after_buffer(self) -> None:
        self.assertFalse(window_closed("10:01", "10:00", 2))
        self.assertTrue(window_closed("10:02", "10:00", 2))

    def test_late_window_does_not_wrap_past_midnight(self) -> None:
        self.assertFalse(window_closed("00:05", "23:59", 2))
        self.assertFalse(window_closed("23:59", "23:59", 2))

    def test_schedule_window_is_twelve_hour_text(self) -> None:
        schedule = EffectiveSchedule(work_days=frozenset({1}), check_in_start="06:00", check_in_end="13:30")

        self.assertEqual(format_schedule_window(schedule), "6:00 AM - 1:30 PM")


class DetectMissedCheckInsTests(unittest.TestCase):
    def setUp(self) -> None:
        get_holiday_cache().clear()
        side_effect_queue.clear()
        self.db = make_session_factory()()
        self.company = seed_company(self.db, tz_name=TZ)
        self.team = seed_team(self.db, self.company, name="Alpha")
        self.checked_in = seed_person(self.db, self.company, first_name="Ana", team=self.team, assigned_at=ASSIGNED)
        self.missing = seed_person(self.db, self.company, first_name="Ben", team=self.team, assigned_at=ASSIGNED)
        seed_person(
            self.db,
            self.company,
            first_name="Cy",
            team=self.team,
            assigned_at=datetime(2026, 3, 4, 0, 10, tzinfo=UTC),
        )
        seed_person(
            self.db,
            self.company,
            first_name="Dee",
            team=self.team,
            assigned_at=ASSIGNED,
            check_in_start="10:30",
            check_in_end="12:00",
        )
        seed_person(self.db, self.company, first_name="Eli", team=self.team, assigned_at=ASSIGNED, work_days="0,6")
        seed_person(self.db, self.company, first_name="Fay", role=Role.TEAM_LEAD, team=self.team, assigned_at=ASSIGNED)
        seed_check_in(self.db, self.checked_in, date(2026, 3, 4))
        seed_check_in(self.db, self.missing, date(2026, 3, 3), score=70)
        seed_check_in(self.db, self.missing, date(2026, 3, 2), score=90)

    def tearDown(self) -> None:
        self.db.close()
        side_effect_queue.clear()
        get_holiday_cache().clear()

    def _records(self) -> list[MissedCheckIn]:
        return list(self.db.scalars(select(MissedCheckIn).order_by(MissedCheckIn.id)).all())

    def test_records_only_workers_whose_window_closed_without_check_in(self) -> None:
        result = detect_missed_check_ins(AFTER_WINDOW, db=self.db)

        self.assertEqual(result.detected, 1)
        self.assertEqual(result.companies_processed, 1)
        records = self._records()
        self.assertEqual([record.person_id for record in records], [self.missing.id])
        record = records[0]
        self.assertEqual(record.missed_date, date(2026, 3, 4))
        self.assertEqual(record.team_id, self.team.id)
        self.assertEqual(record.schedule_window, "6:00 AM - 10:00 AM")
        self.assertEqual(record.team_leader_id_at_miss, self.team.leader_id)
        self.assertEqual(record.team_leader_name_at_miss, "Alpha Lead Santos")

    def test_record_carries_attendance_snapshot(self) -> None:
        detect_missed_check_ins(AFTER_WINDOW, db=self.db)

        record = self._records()[0]
        self.assertEqual(record.worker_role_at_miss, Role.WORKER)
        self.assertEqual(record.day_of_week, 3)
        self.assertEqual(record.check_in_streak_before, 2)
        self.assertEqual(record.days_since_last_check_in, 1)
        self.assertEqual(record.recent_readiness_avg, 80.0)
        self.assertEqual(record.misses_in_last_30d, 0)
        self.assertTrue(record.is_first_miss_in_30d)
        self.assertFalse(record.is_increasing_frequency)

    def test_rerun_records_nothing_new(self) -> None:
        detect_missed_check_ins(AFTER_WINDOW, db=self.db)
        side_effect_queue.clear()

        result = detect_missed_check_ins(datetime(2026, 3, 4, 3, 0, tzinfo=UTC), db=self.db)

        self.assertEqual(result.detected, 0)
        self.assertEqual(len(self._records()), 1)
        self.assertEqual(len(side_effect_queue), 0)

    def test_buffer_keeps_window_open(self) -> None:
        result = detect_missed_check_ins(datetime(2026, 3, 4, 2, 1, tzinfo=UTC), db=self.db)

        self.assertEqual(result.detected, 0)
        self.assertEqual(self._records(), [])

    def test_company_holiday_skips_detection(self) -> None:
        seed_holiday(self.db, self.company, date(2026, 3, 4), name="Founders Day")

        result = detect_missed_check_ins(AFTER_WINDOW, db=self.db)

        self.assertEqual(result.detected, 0)
        self.assertEqual(self._records(), [])

    def test_inactive_team_is_skipped(self) -> None:
        self.team.is_active = False
        self.db.commit()

        result = detect_missed_check_ins(AFTER_WINDOW, db=self.db)

        self.assertEqual(result.detected, 0)

    def test_notifications_and_event(self) -> None:
        detect_missed_check_ins(AFTER_WINDOW, db=self.db)

        items = side_effect_queue.take(20)
        notifications = [item for item in items if isinstance(item, NotificationRequest)]
        events = [item for item in items if isinstance(item, EventRequest)]

        worker_note = next(item for item in notifications if item.person_id == self.missing.id)
        leader_note = next(item for item in notifications if item.person_id == self.team.leader_id)
        self.assertEqual(worker_note.idempotency_key, f"MISSED_CHECK_IN:{self.missing.id}:2026-03-04")
        self.assertEqual(leader_note.message, "1 worker missed their check-in for 2026-03-04.")
        self.assertEqual(len(notifications), 2)
        self.assertEqual([item.event_type for item in events], [EventType.MISSED_CHECK_IN_DETECTED])
        self.assertEqual(events[0].payload["scheduleWindow"], "06:00 - 10:00")
        self.assertEqual(events[0].payload["missedDate"], "2026-03-04")

    def test_one_failing_record_does_not_block_the_rest(self) -> None:
        gus = seed_person(self.db, self.company, first_name="Gus", team=self.team, assigned_at=ASSIGNED)
        ben_id = self.missing.id

        def build_or_fail(company_id, worker, *args):
            if worker.id == ben_id:
                raise RuntimeError("snapshot column overflow")
            return _build_record(company_id, worker, *args)

        with patch("checkwatch.services.missed_checkins._build_record", side_effect=build_or_fail):
            with self.assertLogs("checkwatch.missed_checkins", level="ERROR"):
                result = detect_missed_check_ins(AFTER_WINDOW, db=self.db)

        self.assertEqual((result.detected, result.failed), (1, 1))
        self.assertEqual((result.companies_processed, result.companies_failed), (1, 0))
        self.assertEqual([record.person_id for record in self._records()], [gus.id])
        items = side_effect_queue.take(20)
        noted = {item.person_id for item in items if isinstance(item, NotificationRequest)}
        events = [item.person_id for item in items if isinstance(item, EventRequest)]
        self.assertEqual(noted, {gus.id, self.team.leader_id})
        self.assertEqual(events, [gus.id])

    def test_concurrent_run_is_skipped(self) -> None:
        self.assertTrue(_detector_run_lock.acquire(blocking=False))
        try:
            result = detect_missed_check_ins(AFTER_WINDOW, db=self.db)
        finally:
            _detector_run_lock.release()

        self.assertTrue(result.already_running)
        self.assertEqual(self._records(), [])


if __name__ == "__main__":
    unittest.main()
