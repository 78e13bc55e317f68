# ABOUTME: Unit tests for sync window schedule evaluation
# ABOUTME: Tests daily ranges, midnight wrap, cron windows with duration and timezone handling

from datetime import UTC, datetime

import pytest

from argocd_emulator.errors import ValidationError
from argocd_emulator.schedule import CronSchedule, DailyRange, is_within, parse_schedule


def at(hour: int, minute: int = 0, day: int = 15) -> datetime:
    """2024-01-<day> is a Monday for day=15."""
    return datetime(2024, 1, day, hour, minute, tzinfo=UTC)


@pytest.mark.unit
class TestParseSchedule:
    """Tests for parse_schedule."""

    def test_daily_range(self):
        """Test that HH:MM-HH:MM parses as a daily range."""
        parsed = parse_schedule("09:00-17:00")

        assert isinstance(parsed, DailyRange)
        assert parsed.start.hour == 9
        assert parsed.end.hour == 17

    def test_cron_expression(self):
        """Test that a five-field cron expression parses."""
        parsed = parse_schedule("0 22 * * 1-5")

        assert isinstance(parsed, CronSchedule)
        assert parsed.expression == "0 22 * * 1-5"

    @pytest.mark.parametrize(
        "schedule",
        ["", "   ", "25:00-26:00", "09:00-09:00", "every day", "0 22 * *", "* * * * * *", "61 * * * *"],
    )
    def test_malformed_rejected(self, schedule: str):
        """Test that malformed schedules raise ValidationError."""
        with pytest.raises(ValidationError):
            parse_schedule(schedule)

    def test_equal_start_and_end_rejected_not_full_day(self):
        """Test that 00:00-00:00 is malformed and a full day needs a cron window."""
        with pytest.raises(ValidationError, match="start and end are equal"):
            parse_schedule("00:00-00:00")

        assert is_within("0 0 * * *", 1440, at(23, 59), "UTC")
        assert is_within("0 0 * * *", 1440, at(0, 0), "UTC")


@pytest.mark.unit
class TestDailyRange:
    """Tests for daily range windows."""

    def test_inside_range(self):
        """Test that 10:00 is inside 09:00-17:00."""
        assert is_within("09:00-17:00", None, at(10)) is True

    def test_outside_range(self):
        """Test that 20:00 is outside 09:00-17:00."""
        assert is_within("09:00-17:00", None, at(20)) is False

    def test_start_inclusive_end_exclusive(self):
        """Test that the window is half-open."""
        assert is_within("09:00-17:00", None, at(9)) is True
        assert is_within("09:00-17:00", None, at(17)) is False
        assert is_within("09:00-17:00", None, at(16, 59)) is True

    def test_wraps_midnight(self):
        """Test that a range ending before it starts spans midnight."""
        assert is_within("22:00-02:00", None, at(23)) is True
        assert is_within("22:00-02:00", None, at(1, 30)) is True
        assert is_within("22:00-02:00", None, at(12)) is False

    def test_duration_ignored(self):
        """Test that a duration does not change a daily range."""
        assert is_within("09:00-17:00", 5, at(16)) is True

    def test_timezone_shifts_evaluation(self):
        """Test that the range is evaluated in the reference timezone."""
        # 10:00 UTC is 11:00 in Berlin in January
        assert is_within("11:00-12:00", None, at(10), "Europe/Berlin") is True
        assert is_within("11:00-12:00", None, at(10), "UTC") is False


@pytest.mark.unit
class TestCronWindow:
    """Tests for cron windows."""

    def test_open_for_duration_after_match(self):
        """Test that a cron window stays open for its duration."""
        assert is_within("0 22 * * *", 60, at(22)) is True
        assert is_within("0 22 * * *", 60, at(22, 59)) is True
        assert is_within("0 22 * * *", 60, at(23)) is False

    def test_before_match(self):
        """Test that the window is closed before it opens."""
        assert is_within("0 22 * * *", 60, at(21, 59)) is False

    def test_weekday_restriction(self):
        """Test that day-of-week fields are honored."""
        # 2024-01-20 is a Saturday
        assert is_within("0 22 * * 1-5", 60, at(22, 30, day=20)) is False
        assert is_within("0 22 * * 1-5", 60, at(22, 30, day=19)) is True

    def test_no_duration_is_never_open(self):
        """Test that a cron window without duration contains nothing."""
        assert is_within("0 22 * * *", None, at(22)) is False

    def test_open_across_midnight(self):
        """Test that a late window stays open past midnight."""
        assert is_within("0 23 * * *", 120, at(0, 30, day=16)) is True
