"""Tests for GTFS time and date helpers."""

import unittest
from datetime import date, datetime, timezone
import sys
from pathlib import Path
from zoneinfo import ZoneInfo

# Add src to path so we can import bustrack
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bustrack.errors import TimeFormatError
from bustrack.time_utils import (
    add_seconds,
    current_gtfs_time,
    day_of_week,
    format_gtfs_date,
    format_time,
    parse_gtfs_date,
    parse_time,
    resolve_timezone,
    time_difference,
    to_absolute,
)

MADRID = ZoneInfo("Europe/Madrid")


class TestParseTime(unittest.TestCase):
    """Test GTFS time string parsing."""

    def test_parse_regular_time(self):
        self.assertEqual(parse_time("14:30:00"), 52200)
        self.assertEqual(parse_time("00:00:00"), 0)
        self.assertEqual(parse_time("7:05:09"), 7 * 3600 + 5 * 60 + 9)

    def test_parse_time_past_midnight(self):
        self.assertEqual(parse_time("25:15:00"), 90900)
        self.assertEqual(parse_time("48:00:00"), 172800)

    def test_parse_time_with_whitespace(self):
        self.assertEqual(parse_time(" 08:00:00 "), 28800)

    def test_parse_time_rejects_malformed_input(self):
        for bad in ["14:30", "14:30:00:00", "ab:cd:ef", "14:60:00", "14:30:60", "", "-1:00:00", "14:3x:00"]:
            with self.subTest(value=bad):
                with self.assertRaises(TimeFormatError):
                    parse_time(bad)

    def test_time_format_error_is_value_error(self):
        with self.assertRaises(ValueError):
            parse_time("nope")

    def test_format_time(self):
        self.assertEqual(format_time(52200), "14:30:00")
        self.assertEqual(format_time(90900), "25:15:00")
        self.assertEqual(format_time(5), "00:00:05")

    def test_format_negative_time_raises(self):
        with self.assertRaises(TimeFormatError):
            format_time(-1)

    def test_round_trip_preserves_seconds(self):
        for value in ["00:00:00", "09:05:03", "23:59:59", "25:15:00", "30:00:01"]:
            with self.subTest(value=value):
                seconds = parse_time(value)
                self.assertEqual(parse_time(format_time(seconds)), seconds)


class TestToAbsolute(unittest.TestCase):
    """Test conversion of GTFS times to timestamps on a service day."""

    def test_same_day(self):
        result = to_absolute("14:30:00", date(2024, 1, 15), MADRID)
        self.assertEqual(result, datetime(2024, 1, 15, 14, 30, tzinfo=MADRID))

    def test_next_day_rollover(self):
        result = to_absolute("25:15:00", date(2024, 1, 15), MADRID)
        self.assertEqual(result.date(), date(2024, 1, 16))
        self.assertEqual((result.hour, result.minute, result.second), (1, 15, 0))
        self.assertEqual(result.tzinfo, MADRID)

    def test_aware_base_uses_local_day(self):
        # 23:30 UTC on the 15th is already the 16th in Madrid
        base = datetime(2024, 1, 15, 23, 30, tzinfo=timezone.utc)
        result = to_absolute("08:00:00", base, MADRID)
        self.assertEqual(result, datetime(2024, 1, 16, 8, 0, tzinfo=MADRID))

    def test_malformed_time_raises(self):
        with self.assertRaises(TimeFormatError):
            to_absolute("8:00", date(2024, 1, 15), MADRID)


class TestDates(unittest.TestCase):
    """Test YYYYMMDD helpers."""

    def test_parse_gtfs_date_is_local_midnight(self):
        result = parse_gtfs_date("20240115", MADRID)
        self.assertEqual(result, datetime(2024, 1, 15, 0, 0, tzinfo=MADRID))

    def test_parse_gtfs_date_rejects_bad_input(self):
        for bad in ["2024-01-15", "20241315", "2024011", "abcdefgh"]:
            with self.subTest(value=bad):
                with self.assertRaises(TimeFormatError):
                    parse_gtfs_date(bad, MADRID)

    def test_format_gtfs_date(self):
        self.assertEqual(format_gtfs_date(date(2024, 1, 5)), "20240105")
        # 23:30 UTC is after midnight in Madrid
        moment = datetime(2024, 1, 15, 23, 30, tzinfo=timezone.utc)
        self.assertEqual(format_gtfs_date(moment, MADRID), "20240116")

    def test_default_timezone_is_madrid(self):
        self.assertEqual(resolve_timezone(None), MADRID)
        self.assertEqual(resolve_timezone("Europe/Madrid"), MADRID)


class TestHelpers(unittest.TestCase):
    """Test the remaining time helpers."""

    def test_current_gtfs_time(self):
        now = datetime(2024, 1, 15, 13, 5, 9, tzinfo=timezone.utc)
        self.assertEqual(current_gtfs_time(now, MADRID), "14:05:09")

    def test_day_of_week(self):
        self.assertEqual(day_of_week(date(2024, 1, 15)), 0)
        self.assertEqual(day_of_week(date(2024, 1, 21)), 6)

    def test_time_difference(self):
        self.assertEqual(time_difference("14:00:00", "14:30:00"), 1800)
        self.assertEqual(time_difference("14:30:00", "14:00:00"), -1800)

    def test_add_seconds(self):
        self.assertEqual(add_seconds("23:59:00", 120), "24:01:00")
        self.assertEqual(add_seconds("00:01:00", -120), "00:00:00")


if __name__ == "__main__":
    unittest.main()
