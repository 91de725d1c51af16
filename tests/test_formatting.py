"""Tests for formatting module."""

import pytest

from s3wire.formatting import format_bytes, format_duration, format_speed


class TestFormatBytes:
    @pytest.mark.parametrize(
        "size,expected",
        [
            (0, "0 B"),
            (512, "512 B"),
            (1023, "1023 B"),
            (1024, "1.00 KiB"),
            (1536, "1.50 KiB"),
            (64 * 1024 * 1024, "64.00 MiB"),
            (3 * 1024**3, "3.00 GiB"),
            (2 * 1024**5, "2048.00 TiB"),
        ],
    )
    def test_units(self, size, expected):
        assert format_bytes(size) == expected


class TestFormatSpeed:
    def test_appends_per_second(self):
        assert format_speed(1536) == "1.50 KiB/s"


class TestFormatDuration:
    """Durations switch to minutes and hours as they grow."""

    @pytest.mark.parametrize(
        "seconds,expected",
        [
            (0.04, "0.0s"),
            (1.23, "1.2s"),
            (59.9, "59.9s"),
            (185, "3m 05s"),
            (3599, "59m 59s"),
            (7380, "2h 03m"),
        ],
    )
    def test_ranges(self, seconds, expected):
        assert format_duration(seconds) == expected
