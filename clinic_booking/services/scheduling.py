# clinic_booking/services/scheduling.py
"""
Time-interval helpers behind slot generation.

Everything here is pure: no database, no clock. Intervals are half-open
``[start, end)`` pairs of naive UTC datetimes.
"""
from __future__ import annotations
import logging
from datetime import datetime, date, time, timedelta
from typing import Iterable, List, NamedTuple, Optional

import pytz

from ..config import settings

logger = logging.getLogger(__name__)


class Interval(NamedTuple):
    start: datetime
    end: datetime


# ====== Timezone utilities ======
def _local_tz(timezone_str: Optional[str] = None):
    return pytz.timezone(timezone_str or settings.TIMEZONE or "UTC")


def to_utc_naive(dt: datetime) -> datetime:
    """Aware datetimes are converted to UTC; naive ones are taken as UTC already."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(pytz.UTC).replace(tzinfo=None)


def day_bounds(day: date, timezone_str: Optional[str] = None) -> Interval:
    """
    The clinic-local calendar day as a UTC interval. Computed from two local
    midnights so DST days come out as 23 or 25 hours.
    """
    tz = _local_tz(timezone_str)
    start_local = tz.localize(datetime.combine(day, time(0, 0)))
    end_local = tz.localize(datetime.combine(day + timedelta(days=1), time(0, 0)))
    return Interval(to_utc_naive(start_local), to_utc_naive(end_local))


# ====== Interval algebra ======
def split_range(start: datetime, end: datetime, minutes: int) -> List[Interval]:
    """
    Consecutive sub-intervals of ``minutes`` covering [start, end); the last
    one is truncated at ``end``. An empty range yields nothing.
    """
    if minutes <= 0:
        raise ValueError("minutes must be positive")
    step = timedelta(minutes=minutes)
    out: List[Interval] = []
    cur = start
    while cur < end:
        nxt = min(cur + step, end)
        out.append(Interval(cur, nxt))
        cur = nxt
    return out


def merge_intervals(intervals: Iterable[tuple]) -> List[Interval]:
    """Sort by start and merge overlapping or touching intervals."""
    ordered = sorted((Interval(s, e) for s, e in intervals), key=lambda iv: (iv.start, iv.end))
    merged: List[Interval] = []
    for iv in ordered:
        if merged and iv.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, iv.end))
        else:
            merged.append(iv)
    return merged


def fill_gaps(
    window_start: datetime,
    window_end: datetime,
    occupied: Iterable[tuple],
    minutes: int,
) -> List[Interval]:
    """
    New slot intervals for every part of [window_start, window_end) not
    covered by ``occupied`` (already merged and sorted). Each gap is cut into
    ``minutes`` pieces, the last one truncated at the gap end.
    """
    out: List[Interval] = []
    cur = window_start
    for occ_start, occ_end in occupied:
        if occ_end <= cur:
            continue
        if occ_start >= window_end:
            break
        gap_end = min(occ_start, window_end)
        if gap_end > cur:
            out.extend(split_range(cur, gap_end, minutes))
        cur = max(cur, occ_end)
        if cur >= window_end:
            break
    if cur < window_end:
        out.extend(split_range(cur, window_end, minutes))
    logger.debug(
        "fill_gaps window=%s..%s minutes=%s -> %d intervals",
        window_start.isoformat(), window_end.isoformat(), minutes, len(out),
    )
    return out


def outside_window(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    """True when [start, end) is not fully contained in the window."""
    return start < window_start or end > window_end
