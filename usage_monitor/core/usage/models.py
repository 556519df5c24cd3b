from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class UsagePeriod(BaseModel):
    model_config = ConfigDict(extra="ignore")

    utilization: float
    resets_at: str | None = None


class UsagePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    five_hour: UsagePeriod | None = None
    seven_day: UsagePeriod | None = None
