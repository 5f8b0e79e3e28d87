"""Spreadsheet cell values to timestamps.

Time-clock exports arrive in several shapes: native date/time cells from
xlsx, day fractions (0.5 == noon), serial date-times, and free text such as
"8:05", "16:30:15" or "4:30 PM". Everything here is pure and returns ``None``
for values it cannot interpret; callers treat that as "time absent".

All returned datetimes are naive. Timezone-aware inputs are normalized to
UTC before the tzinfo is dropped.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

SECONDS_PER_DAY = 86400

# Day zero of spreadsheet serial dates (serial 25569 == 1970-01-01)
SERIAL_EPOCH = datetime(1899, 12, 30)

_TIME_24H = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_TIME_12H = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])$")

_DATETIME_FORMATS = (
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%y %H:%M",
    "%m/%d/%y %I:%M %p",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
)

_DATE_FORMATS = (
    "%m/%d/%Y",
    "%m/%d/%y",
    "%Y/%m/%d",
    "%m-%d-%Y",
    "%d-%b-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
)


def _naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _at_midnight(anchor: date) -> datetime:
    return datetime(anchor.year, anchor.month, anchor.day)


def serial_to_datetime(serial: float) -> datetime:
    """Convert a spreadsheet serial date-time to a naive datetime."""
    return SERIAL_EPOCH + timedelta(seconds=math.floor(serial * SECONDS_PER_DAY))


def _from_day_fraction(fraction: float, anchor: date) -> datetime:
    total_seconds = math.floor(fraction * SECONDS_PER_DAY)
    return _at_midnight(anchor) + timedelta(seconds=total_seconds)


def _parse_datetime_string(text: str) -> datetime | None:
    try:
        return _naive(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _clock_time(hours: int, minutes: int, seconds: int, anchor: date) -> datetime | None:
    if not (0 <= hours <= 23 and 0 <= minutes <= 59 and 0 <= seconds <= 59):
        return None
    return datetime.combine(anchor, time(hours, minutes, seconds))


def _parse_clock_string(text: str, anchor: date) -> datetime | None:
    match = _TIME_24H.match(text)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        seconds = int(match.group(3) or 0)
        parsed = _clock_time(hours, minutes, seconds, anchor)
        if parsed is not None:
            return parsed

    match = _TIME_12H.match(text)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        seconds = int(match.group(3) or 0)
        period = match.group(4).upper()
        if period == "PM" and hours != 12:
            hours += 12
        elif period == "AM" and hours == 12:
            hours = 0
        return _clock_time(hours, minutes, seconds, anchor)

    return None


def parse_time_value(value: Any, anchor: date | None) -> datetime | None:
    """Parse a raw time cell into a timestamp anchored to ``anchor``.

    Args:
        value: Native datetime/time, elapsed timedelta, day fraction, serial
            date-time or string
        anchor: Calendar date the time of day is applied to

    Returns:
        Naive datetime, or None when the value is empty or unparseable
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return _naive(value)

    if isinstance(value, time):
        if anchor is None:
            return None
        return datetime.combine(anchor, value.replace(tzinfo=None))

    if isinstance(value, date):
        return _at_midnight(value)

    if isinstance(value, timedelta):
        # Elapsed time since midnight, as read from [h]:mm cells
        if anchor is None or not timedelta(0) <= value < timedelta(days=1):
            return None
        return datetime.combine(anchor, time.min) + timedelta(seconds=round(value.total_seconds()))

    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        if math.isnan(number) or number < 0:
            return None
        if number < 1:
            if anchor is None:
                return None
            return _from_day_fraction(number, anchor)
        return serial_to_datetime(number)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        parsed = _parse_datetime_string(text)
        if parsed is not None:
            return parsed
        if anchor is None:
            return None
        return _parse_clock_string(text, anchor)

    return None


def parse_work_date(value: Any) -> date | None:
    """Parse a work-date cell (native date, serial number or string)."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return _naive(value).date()

    if isinstance(value, date):
        return value

    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        if math.isnan(number) or number < 1:
            return None
        return serial_to_datetime(number).date()

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return _naive(datetime.fromisoformat(text)).date()
        except ValueError:
            pass
        for fmt in _DATE_FORMATS + _DATETIME_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
    return None


def compute_worked_minutes(
    in_time: datetime | None,
    out_time: datetime | None,
) -> tuple[datetime | None, int | None]:
    """Apply overnight correction and return (adjusted_out, minutes).

    An OUT earlier than IN is moved forward one day. Minutes is None unless
    the adjusted span holds at least one whole minute.
    """
    if in_time is None or out_time is None:
        return out_time, None

    adjusted = out_time
    if adjusted < in_time:
        adjusted = adjusted + timedelta(days=1)

    minutes = int((adjusted - in_time).total_seconds() // 60)
    if minutes <= 0:
        return adjusted, None
    return adjusted, minutes


def minutes_to_hours(minutes: int | None) -> Decimal | None:
    """Minutes as hours rounded to 2 decimal places."""
    if minutes is None:
        return None
    return (Decimal(minutes) / Decimal(60)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
