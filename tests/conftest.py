from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from prometheus_client import CollectorRegistry

TEST_HOME_DIR = Path(tempfile.mkdtemp(prefix="usage-monitor-tests-"))

os.environ["USAGE_MONITOR_USAGE_API_BASE_URL"] = "https://example.invalid/api"
os.environ["USAGE_MONITOR_ACCOUNTS_FILE"] = str(TEST_HOME_DIR / "accounts.json")
os.environ["USAGE_MONITOR_STARTUP_LOG_CONFIG"] = "false"

from usage_monitor.core.metrics.metrics import Metrics  # noqa: E402
from usage_monitor.core.utils.time import utcnow  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingAlertPlatform:
    def __init__(self) -> None:
        self.alerts: dict[str, tuple[str, str, datetime]] = {}
        self.upserts: list[tuple[str, str]] = []
        self.cancels: list[str] = []

    def upsert(self, key: str, title: str, body: str, fire_at: datetime) -> None:
        self.alerts[key] = (title, body, fire_at)
        self.upserts.append((key, body))

    def cancel(self, key: str) -> None:
        self.alerts.pop(key, None)
        self.cancels.append(key)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def alert_platform() -> RecordingAlertPlatform:
    return RecordingAlertPlatform()


@pytest.fixture
def metrics() -> Metrics:
    return Metrics(registry=CollectorRegistry(auto_describe=True))


@pytest.fixture(autouse=True)
def temp_accounts_file(monkeypatch):
    accounts_path = TEST_HOME_DIR / f"accounts-{uuid4().hex}.json"
    monkeypatch.setenv("USAGE_MONITOR_ACCOUNTS_FILE", str(accounts_path))
    from usage_monitor.core.config.settings import get_settings

    get_settings.cache_clear()
    return accounts_path
