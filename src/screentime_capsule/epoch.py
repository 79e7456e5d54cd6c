"""Conversion between Core Data timestamps and absolute datetimes.

Timestamps are float seconds since 2001-01-01T00:00:00Z. Conversion goes
through integer microseconds, so ``to_absolute(to_epoch(moment)) == moment``
holds exactly for every moment less than ``EXACT_RANGE_SECONDS`` (2**33 s,
about 272 years) away from the reference date. Further out a float cannot
hold microseconds and the round trip is exact to the float's resolution.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

from .exceptions import InvalidTimestamp

REFERENCE_DATE = datetime(2001, 1, 1, tzinfo=timezone.utc)
UNIX_OFFSET_SECONDS = 978307200
EXACT_RANGE_SECONDS = 2**33

_MICROSECOND = timedelta(microseconds=1)
_MIN_MICROS = (datetime.min.replace(tzinfo=timezone.utc) - REFERENCE_DATE) // _MICROSECOND
_MAX_MICROS = (datetime.max.replace(tzinfo=timezone.utc) - REFERENCE_DATE) // _MICROSECOND


def to_absolute(epoch_seconds: float) -> datetime:
    """Return the UTC datetime for seconds since 2001-01-01T00:00:00Z.

    Raises :class:`InvalidTimestamp` for values that are not numbers or fall
    outside the range of :class:`datetime`.
    """
    try:
        seconds = float(epoch_seconds)
        micros = round(seconds * 1_000_000)
    except (TypeError, ValueError, OverflowError) as exc:
        raise InvalidTimestamp(epoch_seconds) from exc
    # Float resolution near the datetime limits.
    slack = math.ceil(math.ulp(seconds) * 1_000_000)
    if _MAX_MICROS < micros <= _MAX_MICROS + slack:
        micros = _MAX_MICROS
    elif _MIN_MICROS - slack <= micros < _MIN_MICROS:
        micros = _MIN_MICROS
    try:
        return REFERENCE_DATE + timedelta(microseconds=micros)
    except OverflowError as exc:
        raise InvalidTimestamp(epoch_seconds) from exc


def to_epoch(moment: datetime) -> float:
    """Return seconds since the reference date; naive values are local time."""
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return ((moment - REFERENCE_DATE) // _MICROSECOND) / 1_000_000
