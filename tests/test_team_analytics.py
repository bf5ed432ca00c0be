from __future__ import annotations

import unittest
from datetime import date, datetime, timezone

from checkwatch.models import ReadinessLevel
from checkwatch.schemas import TeamAnalyticsRead
from checkwatch.services.team_analytics import get_team_analytics
from sqlite_support import make_session_factory, seed_check_in, seed_company, seed_person, seed_team

UTC = timezone.utc
TZ = "Asia/Manila"
# Wednesday 2026-03-04, 12:00 in Manila.
NOW = datetime(2026, 3, 4, 4, 0, tzinfo=UTC)


class TeamAnalyticsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.company = seed_company(self.db, tz_name=TZ)
        self.team = seed_team(self.db, self.company, name="Alpha", created_at=datetime(2026, 2, 20, tzinfo=UTC))
        self.worker = seed_person(
            self.db,
            self.company,
            first_name="Ana",
            team=self.team,
            assigned_at=datetime(2026, 2, 23, tzinfo=UTC),
        )
        seed_check_in(self.db, self.worker, date(2026, 3, 2), score=80)
        seed_check_in(self.db, self.worker, date(2026, 3, 3), score=55, level=ReadinessLevel.YELLOW)

        other_team = seed_team(self.db, self.company, name="Bravo")
        outsider = seed_person(
            self.db,
            self.company,
            first_name="Ben",
            team=other_team,
            assigned_at=datetime(2026, 2, 1, tzinfo=UTC),
        )
        seed_check_in(self.db, outsider, date(2026, 3, 3), score=20, level=ReadinessLevel.RED)

    def tearDown(self) -> None:
        self.db.close()

    def test_seven_day_summary(self) -> None:
        analytics = get_team_analytics(self.db, self.team, period="7d", tz_name=TZ, now_utc=NOW)

        summary = analytics.summary
        self.assertEqual(summary.total_check_ins, 2)
        self.assertEqual(summary.avg_readiness, 68)
        self.assertEqual(summary.worker_count, 1)
        self.assertEqual(summary.avg_compliance_rate, 33)
        self.assertEqual((summary.readiness_distribution.green, summary.readiness_distribution.yellow), (1, 1))
        self.assertEqual(summary.readiness_distribution.red, 0)

    def test_trends_skip_days_without_expectations(self) -> None:
        analytics = get_team_analytics(self.db, self.team, period="7d", tz_name=TZ, now_utc=NOW)

        self.assertEqual(
            [item.date for item in analytics.trends],
            ["2026-02-25", "2026-02-26", "2026-02-27", "2026-03-02", "2026-03-03", "2026-03-04"],
        )
        monday = analytics.trends[3]
        self.assertEqual((monday.check_ins, monday.expected_workers, monday.compliance_rate), (1, 1, 100))
        self.assertEqual(monday.avg_readiness, 80)
        self.assertEqual(monday.submit_time, "08:30")
        self.assertIsNone(analytics.trends[0].submit_time)
        self.assertEqual(analytics.trends[0].compliance_rate, 0)

    def test_range_starts_no_earlier_than_team_creation(self) -> None:
        analytics = get_team_analytics(self.db, self.team, period="30d", tz_name=TZ, now_utc=NOW)

        self.assertEqual(analytics.trends[0].date, "2026-02-24")
        self.assertEqual(len(analytics.trends), 7)
        self.assertEqual(analytics.summary.avg_compliance_rate, 29)

    def test_records_are_newest_first(self) -> None:
        analytics = get_team_analytics(self.db, self.team, period="7d", tz_name=TZ, now_utc=NOW)

        self.assertEqual([item.date for item in analytics.records], ["2026-03-03", "2026-03-02"])
        self.assertEqual(analytics.records[0].name, "Ana Santos")
        self.assertEqual(analytics.records[0].submit_time, "08:30")

    def test_unknown_period_falls_back_to_seven_days(self) -> None:
        analytics = get_team_analytics(self.db, self.team, period="1y", tz_name=TZ, now_utc=NOW)

        self.assertEqual(analytics.period, "7d")
        self.assertEqual(len(analytics.trends), 6)

    def test_serializes_through_response_schema(self) -> None:
        analytics = get_team_analytics(self.db, self.team, period="7d", tz_name=TZ, now_utc=NOW)

        payload = TeamAnalyticsRead.model_validate(analytics).model_dump(mode="json")

        self.assertEqual(payload["summary"]["readiness_distribution"], {"green": 1, "yellow": 1, "red": 0})
        self.assertEqual(payload["records"][0]["readiness_level"], "YELLOW")


if __name__ == "__main__":
    unittest.main()
