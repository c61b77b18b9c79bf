"""Tests for cron expression parsing and matching."""

from datetime import datetime, timedelta

import pytest

from singleschedule.cron import CronExpression, matches, parse, validate
from singleschedule.errors import CronParseError, CronRangeError, CronSyntaxError

MONDAY = datetime(2024, 1, 8)
SUNDAY = datetime(2024, 1, 7)


def _matching_instants(expression: str, day: datetime):
    compiled = parse(expression)
    return {
        day + timedelta(seconds=s)
        for s in range(24 * 60 * 60)
        if compiled.matches(day + timedelta(seconds=s))
    }


def _reference(day: datetime, predicate):
    return {
        day + timedelta(seconds=s)
        for s in range(24 * 60 * 60)
        if predicate(day + timedelta(seconds=s))
    }


class TestReferenceTable:
    """Every second of a day against an independent predicate."""

    def test_every_second(self):
        """Test that '* * * * * *' matches all 86400 seconds."""
        result = _matching_instants("* * * * * *", MONDAY)
        assert len(result) == 86400

    def test_top_of_every_minute(self):
        """Test that '0 * * * * *' matches second zero of each minute."""
        result = _matching_instants("0 * * * * *", MONDAY)
        assert result == _reference(MONDAY, lambda t: t.second == 0)
        assert len(result) == 1440

    def test_weekday_business_hours(self):
        """Test hourly 9-17 on a weekday."""
        result = _matching_instants("0 0 9-17 * * MON-FRI", MONDAY)
        expected = _reference(
            MONDAY, lambda t: t.second == 0 and t.minute == 0 and 9 <= t.hour <= 17
        )
        assert result == expected
        assert len(result) == 9

    def test_weekday_business_hours_skips_sunday(self):
        """Test that MON-FRI never matches on a Sunday."""
        assert _matching_instants("0 0 9-17 * * MON-FRI", SUNDAY) == set()

    def test_every_five_minutes(self):
        """Test that '0 */5 * * * *' matches every fifth minute."""
        result = _matching_instants("0 */5 * * * *", MONDAY)
        assert result == _reference(
            MONDAY, lambda t: t.second == 0 and t.minute % 5 == 0
        )
        assert len(result) == 288


class TestParse:
    """Tests for compiling expressions."""

    def test_field_sets(self):
        """Test the compiled value sets of each field."""
        expr = parse("*/15 0-10/5 1,2,3 31 * *")
        assert expr.seconds == frozenset({0, 15, 30, 45})
        assert expr.minutes == frozenset({0, 5, 10})
        assert expr.hours == frozenset({1, 2, 3})
        assert expr.days_of_month == frozenset({31})
        assert expr.months == frozenset(range(1, 13))
        assert expr.days_of_week == frozenset(range(0, 7))

    def test_start_with_step(self):
        """Test that 'a/n' runs from a to the end of the field."""
        assert parse("0 5/20 * * * *").minutes == frozenset({5, 25, 45})

    def test_names_case_insensitive(self):
        """Test day and month names in any case."""
        expr = parse("0 0 0 * jan,Jul sun,SAT")
        assert expr.months == frozenset({1, 7})
        assert expr.days_of_week == frozenset({0, 6})

    def test_whitespace_normalized(self):
        """Test that extra whitespace is collapsed in the source."""
        assert validate("  0   0 *  * * *  ") == "0 0 * * * *"
        assert str(parse("0 0 * * * *")) == "0 0 * * * *"

    def test_returns_compiled_expression(self):
        """Test that parse returns an immutable CronExpression."""
        expr = parse("* * * * * *")
        assert isinstance(expr, CronExpression)
        with pytest.raises(AttributeError):
            expr.source = "x"

    @pytest.mark.parametrize(
        "expression",
        [
            "",
            "   ",
            "invalid",
            "* * * *",
            "* * * * *",
            "* * * * * * *",
            "abc * * * * *",
            "*/0 * * * * *",
            "5-1 * * * * *",
            "1,,2 * * * * *",
            "1- * * * * *",
            "*/x * * * * *",
            "0 0 MON * * *",
            "0 0 0 * * FOO",
            "-1 * * * * *",
            "\u0665 * * * * *",
            "0 0 \uff11 * * *",
        ],
    )
    def test_syntax_errors(self, expression):
        """Test that malformed expressions raise CronSyntaxError."""
        with pytest.raises(CronSyntaxError):
            parse(expression)

    @pytest.mark.parametrize(
        "expression,field_index",
        [
            ("60 * * * * *", 1),
            ("0 60 * * * *", 2),
            ("0 0 24 * * *", 3),
            ("0 0 0 0 * *", 4),
            ("0 0 0 32 * *", 4),
            ("0 0 0 * 13 *", 5),
            ("0 0 0 * 0 *", 5),
            ("0 0 0 * * 7", 6),
            ("0 0 0-30 * * *", 3),
        ],
    )
    def test_range_errors(self, expression, field_index):
        """Test that out-of-range literals raise CronRangeError for the right field."""
        with pytest.raises(CronRangeError) as exc_info:
            parse(expression)
        assert exc_info.value.field_index == field_index

    def test_error_message_names_field(self):
        """Test that errors tell the operator which field is wrong."""
        with pytest.raises(CronParseError) as exc_info:
            parse("0 0 24 * * *")
        message = str(exc_info.value)
        assert "field 3" in message
        assert "hour" in message
        assert "0-23" in message

    def test_non_string_rejected(self):
        """Test that non-string input is a syntax error."""
        with pytest.raises(CronSyntaxError):
            parse(None)


class TestMatches:
    """Tests for matching instants."""

    def test_day_of_month_and_weekday_both_required(self):
        """Test that restricted day-of-month and day-of-week are ANDed."""
        friday_13 = parse("0 0 0 13 * FRI")
        assert friday_13.matches(datetime(2024, 9, 13)) is True  # Friday
        assert friday_13.matches(datetime(2024, 10, 13)) is False  # Sunday
        assert friday_13.matches(datetime(2024, 9, 20)) is False  # Friday the 20th

    def test_sunday_is_zero(self):
        """Test that day-of-week 0 is Sunday."""
        assert parse("* * * * * 0").matches(SUNDAY) is True
        assert parse("* * * * * 0").matches(MONDAY) is False
        assert parse("* * * * * 1").matches(MONDAY) is True

    def test_month_field(self):
        """Test matching on the month field."""
        expr = parse("0 0 0 1 FEB *")
        assert expr.matches(datetime(2024, 2, 1)) is True
        assert expr.matches(datetime(2024, 3, 1)) is False

    def test_microseconds_ignored(self):
        """Test that sub-second precision does not affect matching."""
        assert parse("30 * * * * *").matches(datetime(2024, 1, 1, 0, 0, 30, 999999))

    def test_matches_accepts_string(self):
        """Test the module-level helper with an uncompiled expression."""
        assert matches("0 * * * * *", datetime(2024, 1, 1, 12, 5, 0)) is True
        assert matches("0 * * * * *", datetime(2024, 1, 1, 12, 5, 1)) is False

    def test_repeated_evaluation_is_stable(self):
        """Test that results don't depend on call history."""
        expr = parse("*/7 * * * * *")
        instant = datetime(2024, 1, 1, 0, 0, 14)
        first = [expr.matches(instant + timedelta(seconds=s)) for s in range(60)]
        second = [expr.matches(instant + timedelta(seconds=s)) for s in range(60)]
        assert first == second
        assert parse("*/7 * * * * *") == expr
