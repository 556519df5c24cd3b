from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

_FRACTION_RE = re.compile(r"\.\d+")


def utcnow() -> datetime:
    # usage-monitor keeps timestamps as "UTC-naive" datetimes (tzinfo stripped). Treat any tz-naive
    # timestamp as UTC, and only apply local timezone conversion at the presentation layer.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_epoch_seconds(value: datetime) -> float:
    return to_utc_naive(value).replace(tzinfo=timezone.utc).timestamp()


def normalize_to_minute(value: datetime) -> datetime:
    """Round to the nearest minute so that polls a few seconds apart agree on the same instant."""
    seconds = to_epoch_seconds(value)
    # Half a minute rounds up.
    normalized = math.floor(seconds / 60.0 + 0.5) * 60
    return datetime.fromtimestamp(normalized, tz=timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: str, *, now: datetime | None = None) -> datetime:
    """Parse an ISO 8601 timestamp from the usage API.

    Falls back to dropping fractional seconds, and finally to ``now`` when the value
    cannot be parsed at all.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        return to_utc_naive(datetime.fromisoformat(text))
    except ValueError:
        pass
    try:
        return to_utc_naive(datetime.fromisoformat(_FRACTION_RE.sub("", text, count=1)))
    except ValueError:
        logger.warning("Unparseable timestamp value=%r; using current time", value)
        return now if now is not None else utcnow()


def format_duration(value: timedelta | float) -> str:
    seconds = value.total_seconds() if isinstance(value, timedelta) else float(value)
    if seconds <= 0:
        return "0m"
    total_minutes = int(seconds // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"
