"""Tests for duration parsing."""

from datetime import timedelta

import pytest

from ruledrift.durations import format_duration, parse_duration
from ruledrift.errors import UnrecognizedFormat


class TestParseDuration:
    """Tests for the three duration spellings."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("1:00:00", timedelta(hours=1)),
            ("01:00:00", timedelta(hours=1)),
            ("0:05:00", timedelta(minutes=5)),
            ("2:30:15", timedelta(hours=2, minutes=30, seconds=15)),
            ("1.00:00:00", timedelta(days=1)),
            ("14.00:00:00", timedelta(days=14)),
        ],
    )
    def test_clock_time(self, value: str, expected: timedelta) -> None:
        """Test that clock time equals the directly constructed timedelta."""
        assert parse_duration(value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("PT1H", timedelta(hours=1)),
            ("PT5M", timedelta(minutes=5)),
            ("P1D", timedelta(days=1)),
            ("P1DT12H", timedelta(days=1, hours=12)),
            ("P2W", timedelta(weeks=2)),
            ("PT30S", timedelta(seconds=30)),
            ("pt1h", timedelta(hours=1)),
        ],
    )
    def test_iso_8601(self, value: str, expected: timedelta) -> None:
        """Test ISO 8601 durations."""
        assert parse_duration(value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("15m", timedelta(minutes=15)),
            ("1h", timedelta(hours=1)),
            ("2d", timedelta(days=2)),
            ("90s", timedelta(seconds=90)),
        ],
    )
    def test_short_form(self, value: str, expected: timedelta) -> None:
        """Test the short human form."""
        assert parse_duration(value) == expected

    def test_representations_are_equivalent(self) -> None:
        """Test that every spelling of one hour compares equal."""
        assert parse_duration("PT1H") == parse_duration("1:00:00") == parse_duration("1h")

    def test_timedelta_passes_through(self) -> None:
        """Test that an already parsed value is returned unchanged."""
        assert parse_duration(timedelta(minutes=5)) == timedelta(minutes=5)

    def test_surrounding_whitespace_ignored(self) -> None:
        """Test that whitespace around a value is ignored."""
        assert parse_duration("  PT1H ") == timedelta(hours=1)

    @pytest.mark.parametrize("value", ["", "P", "PT", "P1DT", "1 hour", "1:5:00", "abc", "-PT1H"])
    def test_unrecognized_strings(self, value: str) -> None:
        """Test that unknown shapes are rejected, not guessed."""
        with pytest.raises(UnrecognizedFormat):
            parse_duration(value)

    @pytest.mark.parametrize("value", [3600, None, 1.5, ["PT1H"]])
    def test_non_strings_rejected(self, value: object) -> None:
        """Test that non-string values are rejected."""
        with pytest.raises(UnrecognizedFormat):
            parse_duration(value)


class TestFormatDuration:
    """Tests for ISO 8601 rendering."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (timedelta(hours=1), "PT1H"),
            (timedelta(minutes=5), "PT5M"),
            (timedelta(days=1), "P1D"),
            (timedelta(days=1, hours=2), "P1DT2H"),
            (timedelta(hours=1, minutes=30, seconds=5), "PT1H30M5S"),
            (timedelta(0), "PT0S"),
        ],
    )
    def test_format(self, value: timedelta, expected: str) -> None:
        """Test rendering of common intervals."""
        assert format_duration(value) == expected

    def test_format_parses_back(self) -> None:
        """Test that the rendered form parses to the same value."""
        value = timedelta(days=3, hours=4, minutes=5, seconds=6)
        assert parse_duration(format_duration(value)) == value

    def test_negative_rejected(self) -> None:
        """Test that negative durations raise ValueError."""
        with pytest.raises(ValueError):
            format_duration(timedelta(minutes=-1))
