"""Duration parsing for rule scheduling fields.

Three spellings of the same interval are in circulation:
- Clock time from PowerShell exports: "1:00:00", "1.00:00:00" (days prefix)
- ISO 8601 machine durations from the REST API: "PT1H", "P1D", "P1DT2H"
- Short human form used when authoring rules by hand: "15m", "1h", "2d"

All of them resolve to a datetime.timedelta. Comparisons happen on the
timedelta, never on the string.
"""

from __future__ import annotations

import re
from datetime import timedelta

from .errors import UnrecognizedFormat

_CLOCK_PATTERN = re.compile(
    r"^(?:(?P<days>\d+)\.)?(?P<hours>\d+):(?P<minutes>[0-5]\d):(?P<seconds>[0-5]\d)$"
)

_ISO_PATTERN = re.compile(
    r"^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$",
    re.IGNORECASE,
)

_SHORT_PATTERN = re.compile(r"^(?P<value>\d+)\s*(?P<unit>[smhd])$", re.IGNORECASE)

_SHORT_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_clock(value: str) -> timedelta | None:
    """Parse "H:MM:SS" or "D.HH:MM:SS". Returns None if the pattern does not match."""
    match = _CLOCK_PATTERN.match(value)
    if match is None:
        return None
    return timedelta(
        days=int(match.group("days") or 0),
        hours=int(match.group("hours")),
        minutes=int(match.group("minutes")),
        seconds=int(match.group("seconds")),
    )


def parse_iso(value: str) -> timedelta | None:
    """Parse an ISO 8601 duration. Returns None if the pattern does not match."""
    match = _ISO_PATTERN.match(value)
    if match is None:
        return None
    parts = match.groupdict()
    if not any(parts.values()):
        # "P" or "PT" alone
        return None
    if value.upper().endswith("T"):
        return None
    return timedelta(
        weeks=int(parts["weeks"] or 0),
        days=int(parts["days"] or 0),
        hours=int(parts["hours"] or 0),
        minutes=int(parts["minutes"] or 0),
        seconds=float(parts["seconds"] or 0),
    )


def parse_short(value: str) -> timedelta | None:
    match = _SHORT_PATTERN.match(value)
    if match is None:
        return None
    unit = _SHORT_UNITS[match.group("unit").lower()]
    return timedelta(**{unit: int(match.group("value"))})


def parse_duration(value: object) -> timedelta:
    """Resolve any known duration spelling to a timedelta.

    Shapes are tried in a fixed order: clock time, ISO 8601, short form.

    Args:
        value: Raw value from a desired-state record or remote payload.

    Returns:
        The resolved duration.

    Raises:
        UnrecognizedFormat: If the value matches none of the known shapes.
    """
    if isinstance(value, timedelta):
        return value
    if not isinstance(value, str):
        raise UnrecognizedFormat(f"Duration must be a string, got {type(value).__name__}")

    text = value.strip()
    for parser in (parse_clock, parse_iso, parse_short):
        parsed = parser(text)
        if parsed is not None:
            return parsed

    raise UnrecognizedFormat(f"Unrecognized duration format: {value!r}")


def format_duration(value: timedelta) -> str:
    """Render a timedelta as an ISO 8601 duration ("PT1H", "P1DT12H", "PT0S")."""
    if value < timedelta(0):
        raise ValueError(f"Negative durations are not supported: {value}")

    days = value.days
    seconds = value.seconds
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    fraction = value.microseconds

    result = "P"
    if days:
        result += f"{days}D"

    time_part = ""
    if hours:
        time_part += f"{hours}H"
    if minutes:
        time_part += f"{minutes}M"
    if seconds or fraction:
        if fraction:
            time_part += f"{seconds + fraction / 1_000_000:g}S"
        else:
            time_part += f"{seconds}S"

    if time_part:
        result += "T" + time_part
    elif not days:
        result += "T0S"

    return result
