"""
Business-hours clock -- working time elapsed between two instants.

Responsibility:
    Computes the turnaround hours used for first-time-through (FTT) metrics.

Architecture position:
    Kernel > Domain -- pure function, zero I/O.  Never reads wall-clock time;
    both instants are supplied by the caller.

Counting rule:
    Starting at ``start``, the cursor steps forward one whole hour at a time
    while it is strictly before ``end``.  Each cursor position that falls on a
    working day contributes 1.  Sub-hour remainders therefore count as a full
    step when the cursor lands before ``end`` and not at all otherwise: 30
    minutes counts 1, 60 minutes counts 1, 61 minutes counts 2.  This hour
    granularity is kept for compatibility with historical FTT figures.

    Steps are wall-clock hours in the business zone.  Across a DST change
    the count therefore drifts from elapsed time: a spring-forward gap can
    count one instant twice and a fall-back repeat skips an hour.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta, tzinfo

# Monday=0 ... Sunday=6
DEFAULT_WEEKEND_DAYS: frozenset[int] = frozenset({5, 6})

_STEP = timedelta(hours=1)


def business_hours(
    start: datetime,
    end: datetime,
    *,
    weekend_days: Iterable[int] = DEFAULT_WEEKEND_DAYS,
    tz: tzinfo | None = None,
) -> int:
    """
    Count hourly steps from ``start`` to ``end`` that fall on working days.

    Args:
        start: First instant (aware).
        end: Last instant (aware).
        weekend_days: Weekday numbers (Monday=0) that contribute nothing.
        tz: Zone in which to judge the weekday of each step.  Defaults to
            ``start``'s own offset.

    Returns:
        Whole business hours; 0 when ``end <= start``.
    """
    if end <= start:
        return 0

    weekend = frozenset(weekend_days)
    cursor = start.astimezone(tz) if tz is not None else start
    total = 0
    while cursor < end:
        if cursor.weekday() not in weekend:
            total += 1
        cursor = cursor + _STEP
    return total
