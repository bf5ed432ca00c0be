from __future__ import annotations

import unittest
from datetime import date, datetime, timezone

from checkwatch.models import Holiday
from checkwatch.services.holidays import (
    HolidayCache,
    HolidayCheck,
    build_holiday_date_set,
    check_holiday_for_date,
    get_holiday_cache,
    invalidate_holiday_cache,
    is_holiday,
)
from sqlite_support import make_session_factory, seed_company, seed_holiday

UTC = timezone.utc


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class HolidayCacheTests(unittest.TestCase):
    def test_entries_expire_after_ttl(self) -> None:
        clock = _FakeClock()
        cache = HolidayCache(ttl_seconds=10, max_entries=10, clock=clock)
        value = HolidayCheck(is_holiday=True, holiday_name="Founders Day")

        cache.set(1, "2026-03-04", value)
        clock.now = 9.9
        self.assertEqual(cache.get(1, "2026-03-04"), value)

        clock.now = 10.0
        self.assertIsNone(cache.get(1, "2026-03-04"))
        self.assertEqual(len(cache), 0)

    def test_insert_at_bound_evicts_oldest(self) -> None:
        clock = _FakeClock()
        cache = HolidayCache(ttl_seconds=100, max_entries=2, clock=clock)

        cache.set(1, "2026-03-01", HolidayCheck(False))
        cache.set(1, "2026-03-02", HolidayCheck(False))
        cache.set(1, "2026-03-03", HolidayCheck(False))

        self.assertEqual(len(cache), 2)
        self.assertIsNone(cache.get(1, "2026-03-01"))
        self.assertIsNotNone(cache.get(1, "2026-03-03"))

    def test_insert_at_bound_drops_expired_before_live_entries(self) -> None:
        clock = _FakeClock()
        cache = HolidayCache(ttl_seconds=10, max_entries=2, clock=clock)

        cache.set(1, "2026-03-01", HolidayCheck(False))
        clock.now = 5
        cache.set(1, "2026-03-02", HolidayCheck(False))
        clock.now = 11
        cache.set(1, "2026-03-03", HolidayCheck(False))

        self.assertIsNotNone(cache.get(1, "2026-03-02"))
        self.assertIsNotNone(cache.get(1, "2026-03-03"))

    def test_invalidate_only_touches_one_company(self) -> None:
        cache = HolidayCache(ttl_seconds=100, max_entries=10)
        cache.set(1, "2026-03-01", HolidayCheck(False))
        cache.set(1, "2026-03-02", HolidayCheck(False))
        cache.set(2, "2026-03-01", HolidayCheck(False))

        self.assertEqual(cache.invalidate(1), 2)
        self.assertEqual(len(cache), 1)
        self.assertIsNotNone(cache.get(2, "2026-03-01"))


class HolidayLookupTests(unittest.TestCase):
    def setUp(self) -> None:
        get_holiday_cache().clear()
        self.session_factory = make_session_factory()
        self.db = self.session_factory()
        self.company = seed_company(self.db)

    def tearDown(self) -> None:
        self.db.close()
        get_holiday_cache().clear()

    def test_recurring_holiday_matches_every_year(self) -> None:
        seed_holiday(self.db, self.company, date(2020, 12, 25), name="Christmas", is_recurring=True)

        result = check_holiday_for_date(self.db, self.company.id, "2026-12-25")

        self.assertTrue(result.is_holiday)
        self.assertEqual(result.holiday_name, "Christmas")
        self.assertFalse(is_holiday(self.db, self.company.id, "2026-12-24"))

    def test_exact_holiday_matches_only_its_year(self) -> None:
        seed_holiday(self.db, self.company, date(2026, 6, 12), name="Independence Day")

        self.assertTrue(is_holiday(self.db, self.company.id, "2026-06-12"))
        self.assertFalse(is_holiday(self.db, self.company.id, "2027-06-12"))

    def test_holidays_are_scoped_per_company(self) -> None:
        other = seed_company(self.db, name="Other Co")
        seed_holiday(self.db, other, date(2026, 6, 12))

        self.assertFalse(is_holiday(self.db, self.company.id, "2026-06-12"))
        self.assertTrue(is_holiday(self.db, other.id, "2026-06-12"))

    def test_cached_answer_survives_until_invalidated(self) -> None:
        holiday = seed_holiday(self.db, self.company, date(2026, 3, 4))
        self.assertTrue(is_holiday(self.db, self.company.id, "2026-03-04"))

        self.db.delete(holiday)
        self.db.commit()
        self.assertTrue(is_holiday(self.db, self.company.id, "2026-03-04"))
        self.assertFalse(check_holiday_for_date(self.db, self.company.id, "2026-03-04", use_cache=False).is_holiday)

        invalidate_holiday_cache(self.company.id)
        self.assertFalse(is_holiday(self.db, self.company.id, "2026-03-04"))

    def test_leap_day_recurring_holiday_only_in_leap_years(self) -> None:
        seed_holiday(self.db, self.company, date(2024, 2, 29), name="Leap Day", is_recurring=True)

        self.assertTrue(is_holiday(self.db, self.company.id, "2028-02-29"))
        self.assertEqual(
            build_holiday_date_set(self.db, self.company.id, "2027-02-27", "2027-03-01", "Asia/Manila"),
            set(),
        )

    def test_date_set_spans_year_boundary(self) -> None:
        seed_holiday(self.db, self.company, date(2000, 1, 1), name="New Year", is_recurring=True)
        seed_holiday(self.db, self.company, date(2025, 12, 30), name="Rizal Day")
        seed_holiday(self.db, self.company, date(2024, 12, 31), name="Old Year")

        result = build_holiday_date_set(self.db, self.company.id, "2025-12-29", "2026-01-02", "Asia/Manila")

        self.assertEqual(result, {"2025-12-30", "2026-01-01"})

    def test_date_set_bounds_are_company_local(self) -> None:
        seed_holiday(self.db, self.company, date(2025, 12, 31))
        seed_holiday(self.db, self.company, date(2026, 1, 1))

        # 16:30 UTC on Dec 31 is already Jan 1 in Manila.
        result = build_holiday_date_set(
            self.db,
            self.company.id,
            datetime(2025, 12, 31, 16, 30, tzinfo=UTC),
            "2026-01-03",
            "Asia/Manila",
        )

        self.assertEqual(result, {"2026-01-01"})

    def test_inverted_range_is_empty(self) -> None:
        seed_holiday(self.db, self.company, date(2026, 1, 1))

        self.assertEqual(
            build_holiday_date_set(self.db, self.company.id, "2026-01-05", "2026-01-01", "Asia/Manila"),
            set(),
        )

    def test_holiday_rows_keep_plain_dates(self) -> None:
        holiday = seed_holiday(self.db, self.company, date(2026, 4, 9), name="Day of Valor")

        stored = self.db.get(Holiday, holiday.id)

        self.assertEqual(stored.date, date(2026, 4, 9))


if __name__ == "__main__":
    unittest.main()
