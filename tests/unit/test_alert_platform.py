from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from usage_monitor.modules.notifications.platform import InProcessAlertPlatform, ScheduledAlert

pytestmark = pytest.mark.unit

NOW = datetime(2025, 1, 1, 12, 0, 0)


@pytest.mark.asyncio
async def test_alert_is_delivered_at_fire_time() -> None:
    delivered: list[ScheduledAlert] = []
    platform = InProcessAlertPlatform(on_delivery=delivered.append, clock=lambda: NOW)

    platform.upsert("usage-reset-1", "Claude Usage Reset", "Work usage has reset to 0%", NOW + timedelta(seconds=0.05))
    assert list(platform.pending) == ["usage-reset-1"]
    await asyncio.sleep(0.15)

    assert [alert.body for alert in delivered] == ["Work usage has reset to 0%"]
    assert platform.pending == {}


@pytest.mark.asyncio
async def test_upsert_with_same_key_replaces_pending_alert() -> None:
    delivered: list[ScheduledAlert] = []
    platform = InProcessAlertPlatform(on_delivery=delivered.append, clock=lambda: NOW)
    fire_at = NOW + timedelta(seconds=0.05)

    platform.upsert("usage-reset-1", "Claude Usage Reset", "Work usage has reset to 0%", fire_at)
    platform.upsert("usage-reset-1", "Claude Usage Reset", "2 accounts have reset to 0%: Home, Work", fire_at)
    await asyncio.sleep(0.15)

    assert [alert.body for alert in delivered] == ["2 accounts have reset to 0%: Home, Work"]


@pytest.mark.asyncio
async def test_cancel_prevents_delivery() -> None:
    delivered: list[ScheduledAlert] = []
    platform = InProcessAlertPlatform(on_delivery=delivered.append, clock=lambda: NOW)

    platform.upsert("usage-reset-1", "t", "b", NOW + timedelta(seconds=0.05))
    platform.cancel("usage-reset-1")
    platform.cancel("usage-reset-unknown")
    await asyncio.sleep(0.15)

    assert delivered == []


@pytest.mark.asyncio
async def test_past_alerts_fire_immediately_and_close_drops_pending() -> None:
    delivered: list[ScheduledAlert] = []
    platform = InProcessAlertPlatform(on_delivery=delivered.append, clock=lambda: NOW)

    platform.upsert("usage-reset-past", "t", "past", NOW - timedelta(minutes=1))
    platform.upsert("usage-reset-future", "t", "future", NOW + timedelta(hours=1))
    await asyncio.sleep(0.01)
    platform.close()

    assert [alert.body for alert in delivered] == ["past"]
    assert platform.pending == {}
