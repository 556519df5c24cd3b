from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

from usage_monitor.core.clients.usage import UsageFetchErrorKind


class UsageStatus(str, Enum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class UsageSample:
    timestamp: datetime
    percent: int


@dataclass(slots=True)
class UsageState:
    account_id: str
    percent: int = 0
    predicted_percent: int | None = None
    reset_at: datetime | None = None
    reset_progress_percent: int | None = None
    time_until_reset: str = "..."
    time_to_full: timedelta | None = None
    status: UsageStatus = UsageStatus.LOADING
    error: str | None = None
    error_kind: UsageFetchErrorKind | None = None
    history: list[UsageSample] = field(default_factory=list)
    weekly_percent: int | None = None
    weekly_reset_at: datetime | None = None
    weekly_time_until_reset: str | None = None

    @property
    def at_limit(self) -> bool:
        return self.percent >= 100

    def copy(self) -> UsageState:
        return replace(self, history=list(self.history))
