"""
Unit Tests for statement value parsing

Run with: pytest backend/tests/test_parsing.py -v
"""

from datetime import date, datetime

import pytest

from utils.parsing import parse_amount, parse_date, week_ending_sunday


class TestParseAmount:
    """Test won amount parsing."""

    def test_korean_formatting(self):
        assert parse_amount("50,000원") == 50000
        assert parse_amount("₩1,200") == 1200
        assert parse_amount(" 3 000 ") == 3000

    def test_numbers_pass_through(self):
        assert parse_amount(30000) == 30000
        assert parse_amount(12.0) == 12

    def test_blank_is_none(self):
        assert parse_amount(None) is None
        assert parse_amount("") is None
        assert parse_amount("원") is None

    def test_rejects_negative_and_fractional(self):
        with pytest.raises(ValueError):
            parse_amount("(500)")
        with pytest.raises(ValueError):
            parse_amount("-500")
        with pytest.raises(ValueError):
            parse_amount("12.5")

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_amount("abc")


class TestParseDate:
    """Test statement date parsing."""

    def test_bank_formats(self):
        assert parse_date("2025-03-02") == date(2025, 3, 2)
        assert parse_date("2025.03.02") == date(2025, 3, 2)
        assert parse_date("2025/03/02") == date(2025, 3, 2)
        assert parse_date("20250302") == date(2025, 3, 2)
        assert parse_date("2025.03.02 14:05:00") == date(2025, 3, 2)

    def test_date_objects(self):
        assert parse_date(date(2025, 3, 2)) == date(2025, 3, 2)
        assert parse_date(datetime(2025, 3, 2, 9, 30)) == date(2025, 3, 2)

    def test_blank_is_none(self):
        assert parse_date(None) is None
        assert parse_date("   ") is None

    def test_unrecognized(self):
        with pytest.raises(ValueError):
            parse_date("not a date")


class TestWeekEndingSunday:
    """Offerings are booked to the Sunday on or after the transaction."""

    def test_weekday_moves_to_next_sunday(self):
        assert week_ending_sunday(date(2025, 3, 4)) == date(2025, 3, 9)

    def test_saturday(self):
        assert week_ending_sunday(date(2025, 3, 8)) == date(2025, 3, 9)

    def test_sunday_is_kept(self):
        assert week_ending_sunday(date(2025, 3, 2)) == date(2025, 3, 2)
