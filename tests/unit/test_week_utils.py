"""Week boundary tests: league periods are ISO weeks in UTC."""

from datetime import date, datetime, timezone

from questlog.gamification.week_utils import get_current_week_iso, get_monday, get_week_iso


class TestWeekISO:
    def test_monday_00_00_is_new_week(self):
        dt = datetime(2026, 2, 23, 0, 0, 0, tzinfo=timezone.utc)  # Monday
        assert get_week_iso(dt) == "2026-W09"

    def test_sunday_to_monday_boundary(self):
        sun = datetime(2026, 2, 22, 23, 59, 59, tzinfo=timezone.utc)
        mon = datetime(2026, 2, 23, 0, 0, 0, tzinfo=timezone.utc)
        assert get_week_iso(sun) == "2026-W08"
        assert get_week_iso(mon) == "2026-W09"

    def test_year_boundary_week(self):
        """Dec 29, 2025 is W01 of 2026."""
        assert get_week_iso(datetime(2025, 12, 29, 12, 0, tzinfo=timezone.utc)) == "2026-W01"

    def test_week_strings_sort_chronologically(self):
        assert "2025-W52" < "2026-W01" < "2026-W09" < "2026-W10"


class TestMonday:
    def test_midweek(self):
        assert get_monday(datetime(2026, 2, 25, 14, 30, tzinfo=timezone.utc)) == date(2026, 2, 23)

    def test_date_input(self):
        assert get_monday(date(2026, 3, 1)) == date(2026, 2, 23)


def test_current_week():
    now = datetime(2026, 3, 4, 9, 0, tzinfo=timezone.utc)
    assert get_current_week_iso(now) == "2026-W10"
