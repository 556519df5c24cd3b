from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Sequence

from usage_monitor.core.usage.types import UsageSample

HISTORY_WINDOW = timedelta(minutes=5)
PREDICTION_LOOKAHEAD = timedelta(minutes=15)
RESET_WINDOW = timedelta(hours=5)

# Largest duration `timedelta` can hold; projections beyond it are meaningless.
_TIME_TO_FULL_CEILING_SECONDS = timedelta.max.total_seconds()


def prune_history(
    history: Sequence[UsageSample],
    *,
    now: datetime,
    window: timedelta = HISTORY_WINDOW,
) -> list[UsageSample]:
    cutoff = now - window
    return [sample for sample in history if sample.timestamp >= cutoff]


def velocity(
    history: Sequence[UsageSample],
    *,
    now: datetime,
    window: timedelta = HISTORY_WINDOW,
) -> float | None:
    """Usage growth in percent per second over the trailing window.

    Only a strictly increasing trend yields a velocity; flat or falling usage returns None.
    """
    if len(history) < 2:
        return None
    relevant = prune_history(history, now=now, window=window)
    if len(relevant) < 2:
        return None

    first = relevant[0]
    last = relevant[-1]
    elapsed = (last.timestamp - first.timestamp).total_seconds()
    if elapsed <= 0:
        return None
    delta = last.percent - first.percent
    if delta <= 0:
        return None
    return delta / elapsed


def predicted_percent(
    percent: int,
    percent_per_second: float | None,
    lookahead: timedelta = PREDICTION_LOOKAHEAD,
) -> int | None:
    if percent >= 100 or percent_per_second is None:
        return None
    projected = percent + percent_per_second * lookahead.total_seconds()
    return min(100, int(projected))


def time_to_full(percent: int, percent_per_second: float | None) -> timedelta | None:
    if percent >= 100 or percent_per_second is None or percent_per_second <= 0:
        return None
    seconds = (100 - percent) / percent_per_second
    if not math.isfinite(seconds) or seconds <= 0 or seconds >= _TIME_TO_FULL_CEILING_SECONDS:
        return None
    return timedelta(seconds=seconds)


def reset_progress(
    reset_at: datetime | None,
    *,
    now: datetime,
    window: timedelta = RESET_WINDOW,
) -> int | None:
    """Share of the reset window still remaining: 100 = window just began, 0 = reset due."""
    if reset_at is None:
        return None
    remaining = (reset_at - now).total_seconds()
    if remaining <= 0:
        return 0
    progress = int(remaining / window.total_seconds() * 100.0)
    return min(100, max(0, progress))
