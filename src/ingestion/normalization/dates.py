"""
Date and time parsing for raw listings.

Every accepted shape is listed explicitly; anything else raises
``NormalizationError(InvalidDate)``. Naive local values are interpreted in the
source's timezone and every result is returned in UTC.

Accepted:
- ``datetime`` / ``date`` objects and integer epoch seconds
- ISO-8601 (``2024-05-03``, ``2024-05-03T20:00``, ``2024-05-03T20:00:00+01:00``, ``...Z``)
- the source's ``date_formats`` followed by ``BUILTIN_FORMATS``
- ``today`` / ``tonight`` / ``tomorrow``, optionally followed by a time
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from src.ingestion.errors import NormalizationError, NormalizationErrorKind

_DATES = ("%Y-%m-%d", "%d/%m/%Y", "%d %B %Y", "%d %b %Y", "%B %d %Y", "%b %d %Y")
_WEEKDAY_DATES = ("%A %d %B %Y", "%a %d %b %Y", "%a %d %B %Y", "%A %d %b %Y")
_TIMES = ("%H:%M", "%H:%M:%S", "%I:%M%p", "%I%p")

# Day-first for slashed dates; sources publishing month-first dates declare
# "%m/%d/%Y" in their own date_formats, which are tried first.
BUILTIN_FORMATS: Tuple[str, ...] = tuple(
    f"{d} {t}" for d in _DATES + _WEEKDAY_DATES for t in _TIMES
) + _DATES + _WEEKDAY_DATES

RELATIVE_DAYS = {"today": 0, "tonight": 0, "tomorrow": 1}

_RELATIVE_RE = re.compile(r"^(today|tonight|tomorrow)(?:\s+(.+))?$", re.IGNORECASE)
_TWELVE_HOUR_RE = re.compile(
    r"^(\d{1,2})(?:[:.](\d{2}))?\s*([ap])\.?m\.?$", re.IGNORECASE
)
_TWENTY_FOUR_HOUR_RE = re.compile(r"^(\d{1,2})[:.h](\d{2})(?::(\d{2}))?$")
_ORDINAL_RE = re.compile(r"(\d)(st|nd|rd|th)\b", re.IGNORECASE)
_AT_RE = re.compile(r"\s+at\s+", re.IGNORECASE)
_DOTTED_TIME_RE = re.compile(r"\b(\d{1,2})\.(\d{2})\s*([ap]m)\b", re.IGNORECASE)
_MERIDIEM_SPACE_RE = re.compile(r"(\d)\s+([ap]m)\b", re.IGNORECASE)


def _invalid(value: Any, reason: str = "unrecognised date") -> NormalizationError:
    return NormalizationError(
        NormalizationErrorKind.INVALID_DATE,
        f"Invalid date {value!r}: {reason}",
    )


def to_utc(value: datetime, tz: ZoneInfo) -> datetime:
    """Attach ``tz`` to a naive value, then convert to UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(timezone.utc)


def clean_date_text(value: str) -> str:
    """
    Strip decoration that ``strptime`` cannot skip.

    "Fri 3rd May, 2024 at 7.30 pm" -> "Fri 3 May 2024 7:30pm"
    """
    text = " ".join(value.split())
    text = _ORDINAL_RE.sub(r"\1", text)
    text = _AT_RE.sub(" ", text)
    text = text.replace(",", " ")
    text = _DOTTED_TIME_RE.sub(r"\1:\2\3", text)
    text = _MERIDIEM_SPACE_RE.sub(r"\1\2", text)
    return " ".join(text.split())


def parse_time(value: Any) -> time:
    """
    Parse a wall-clock time.

    Handles "7pm", "7:30 PM", "7.30pm", "19:30", "19.30", "19h30".

    Raises:
        NormalizationError: InvalidDate for anything else
    """
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    text = " ".join(str(value or "").split())

    match = _TWELVE_HOUR_RE.match(text)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            raise _invalid(value, "time out of range")
        meridiem = match.group(3).lower()
        if meridiem == "p" and hour != 12:
            hour += 12
        if meridiem == "a" and hour == 12:
            hour = 0
        return time(hour, minute)

    match = _TWENTY_FOUR_HOUR_RE.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        second = int(match.group(3) or 0)
        if hour > 23 or minute > 59 or second > 59:
            raise _invalid(value, "time out of range")
        return time(hour, minute, second)

    raise _invalid(value, "unrecognised time")


def _parse_iso(text: str) -> Optional[datetime]:
    candidate = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def _parse_with_formats(text: str, formats: Sequence[str]) -> Optional[datetime]:
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _parse_relative(text: str, tz: ZoneInfo, now: datetime) -> Optional[datetime]:
    match = _RELATIVE_RE.match(text)
    if not match:
        return None
    offset = timedelta(days=RELATIVE_DAYS[match.group(1).lower()])
    day = now.astimezone(tz).date() + offset
    at = parse_time(match.group(2)) if match.group(2) else time(0, 0)
    return datetime.combine(day, at)


def parse_local(
    value: Any,
    tz: ZoneInfo,
    *,
    formats: Sequence[str] = (),
    now: Optional[datetime] = None,
) -> datetime:
    """
    Parse ``value`` without converting it.

    The result is naive when the source gave a local wall-clock time and
    aware when it carried an offset.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time(0, 0))
    if isinstance(value, bool):
        raise _invalid(value, "not a date")
    if isinstance(value, int):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise _invalid(value, "epoch out of range") from e
    if not isinstance(value, str) or not value.strip():
        raise _invalid(value, "empty or not a string")

    raw = " ".join(value.split())
    cleaned = clean_date_text(raw)

    relative = _parse_relative(cleaned, tz, now or datetime.now(timezone.utc))
    if relative is not None:
        return relative

    iso = _parse_iso(raw)
    if iso is not None:
        return iso

    all_formats = tuple(formats) + BUILTIN_FORMATS
    parsed = _parse_with_formats(raw, all_formats)
    if parsed is None and cleaned != raw:
        parsed = _parse_with_formats(cleaned, all_formats)
    if parsed is None:
        raise _invalid(value)
    return parsed


def parse_datetime(
    value: Any,
    tz: ZoneInfo,
    *,
    formats: Sequence[str] = (),
    now: Optional[datetime] = None,
) -> datetime:
    """
    Parse a raw date/datetime into a UTC-aware datetime.

    Args:
        value: Raw value from the source
        tz: Zone for naive local values
        formats: Source-specific ``strptime`` formats, tried before the built-ins
        now: Reference instant for relative words

    Raises:
        NormalizationError: InvalidDate when no accepted shape matches
    """
    return to_utc(parse_local(value, tz, formats=formats, now=now), tz)


def combine_date_and_time(
    date_value: Any,
    time_value: Any,
    tz: ZoneInfo,
    *,
    formats: Sequence[str] = (),
    now: Optional[datetime] = None,
) -> datetime:
    """
    Combine separate date and time fields into a UTC-aware datetime.

    The time replaces whatever wall-clock time the date field carried.
    """
    local = parse_local(date_value, tz, formats=formats, now=now)
    if local.tzinfo is not None:
        local = local.astimezone(tz).replace(tzinfo=None)
    at = parse_time(time_value)
    return to_utc(datetime.combine(local.date(), at), tz)
