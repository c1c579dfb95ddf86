"""Tests for cron next-occurrence computation."""

from datetime import datetime, timedelta

import pytest

from autoreach.engine.cron import next_occurrence, parse_every, to_croniter_expression
from autoreach.errors import InvalidRequestError

MONDAY_10AM = datetime(2026, 10, 19, 10, 0, 0)


class TestNextOccurrence:

    def test_five_field_weekday(self):
        assert next_occurrence("0 9 * * MON", MONDAY_10AM) == datetime(2026, 10, 26, 9, 0)

    def test_five_field_later_today(self):
        assert next_occurrence("30 14 * * *", MONDAY_10AM) == datetime(2026, 10, 19, 14, 30)

    def test_six_field_seconds_first(self):
        assert next_occurrence("15 0 9 * * MON", MONDAY_10AM) == datetime(2026, 10, 26, 9, 0, 15)

    def test_strictly_after_now(self):
        assert next_occurrence("0 10 * * *", MONDAY_10AM) == datetime(2026, 10, 20, 10, 0)

    @pytest.mark.parametrize("descriptor,expected", [
        ("@hourly", datetime(2026, 10, 19, 11, 0)),
        ("@daily", datetime(2026, 10, 20, 0, 0)),
        ("@midnight", datetime(2026, 10, 20, 0, 0)),
        ("@weekly", datetime(2026, 10, 25, 0, 0)),
        ("@monthly", datetime(2026, 11, 1, 0, 0)),
        ("@yearly", datetime(2027, 1, 1, 0, 0)),
        ("@annually", datetime(2027, 1, 1, 0, 0)),
    ])
    def test_descriptors(self, descriptor, expected):
        assert next_occurrence(descriptor, MONDAY_10AM) == expected

    def test_every(self):
        assert next_occurrence("@every 1h30m", MONDAY_10AM) == MONDAY_10AM + timedelta(minutes=90)

    def test_every_out_of_range(self):
        with pytest.raises(InvalidRequestError):
            next_occurrence("@every 999999999h", MONDAY_10AM)

    @pytest.mark.parametrize("expression", [
        "", "   ", "not a cron", "0 9 * *", "61 9 * * *", "@fortnightly", "@every", "@every 0s",
    ])
    def test_invalid(self, expression):
        with pytest.raises(InvalidRequestError):
            next_occurrence(expression, MONDAY_10AM)


class TestHelpers:

    def test_parse_every(self):
        assert parse_every("2h") == timedelta(hours=2)
        assert parse_every(" 45s ") == timedelta(seconds=45)

    def test_parse_every_rejects_garbage(self):
        with pytest.raises(InvalidRequestError):
            parse_every("1d")

    def test_parse_every_too_large(self):
        with pytest.raises(InvalidRequestError):
            parse_every("99999999999999h")

    def test_seconds_field_rotated_to_end(self):
        assert to_croniter_expression("15 0 9 * * MON") == "0 9 * * mon 15"
