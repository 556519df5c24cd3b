from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from usage_monitor.core.clients.http import close_http_client, init_http_client
from usage_monitor.core.clients.usage import UsageFetchError, UsageFetchErrorKind, fetch_usage
from usage_monitor.core.config.settings import get_settings
from usage_monitor.core.usage.types import UsageStatus
from usage_monitor.core.utils.time import normalize_to_minute, utcnow
from usage_monitor.modules.accounts.schemas import Account
from usage_monitor.modules.accounts.store import InMemoryAccountStore
from usage_monitor.modules.notifications.scheduler import alert_key
from usage_monitor.modules.usage.manager import build_usage_manager

pytestmark = pytest.mark.integration


@dataclass
class UsageApi:
    base_url: str
    payloads: dict[str, dict] = field(default_factory=dict)
    valid_keys: dict[str, str] = field(default_factory=dict)
    requests: list[str] = field(default_factory=list)


@pytest_asyncio.fixture
async def usage_api(monkeypatch):
    api = UsageApi(base_url="")

    async def handler(request: web.Request) -> web.Response:
        org_id = request.match_info["org_id"]
        api.requests.append(org_id)
        if request.headers.get("Cookie") != f"sessionKey={api.valid_keys.get(org_id)}":
            return web.json_response({"error": "forbidden"}, status=403)
        payload = api.payloads.get(org_id)
        if payload is None:
            return web.Response(status=404, text="not found")
        return web.json_response(payload)

    app = web.Application()
    app.router.add_get("/api/organizations/{org_id}/usage", handler)
    server = TestServer(app)
    await server.start_server()
    api.base_url = str(server.make_url("/api"))
    monkeypatch.setenv("USAGE_MONITOR_USAGE_API_BASE_URL", api.base_url)
    monkeypatch.setenv("USAGE_MONITOR_POLL_ALIGN_TO_CLOCK", "false")
    monkeypatch.setenv("USAGE_MONITOR_POLL_INTERVAL_SECONDS", "3600")
    get_settings.cache_clear()
    await init_http_client()
    try:
        yield api
    finally:
        await close_http_client()
        await server.close()


@pytest.mark.asyncio
async def test_fetch_usage_against_live_server(usage_api: UsageApi) -> None:
    usage_api.valid_keys["org-1"] = "sk-1"
    usage_api.payloads["org-1"] = {
        "five_hour": {"utilization": 33.0, "resets_at": "2025-01-01T05:00:00.5+00:00"},
        "seven_day": None,
    }

    payload = await fetch_usage(org_id="org-1", session_key="sk-1")

    assert payload.five_hour is not None
    assert payload.five_hour.utilization == 33.0
    assert payload.seven_day is None

    with pytest.raises(UsageFetchError) as excinfo:
        await fetch_usage(org_id="org-1", session_key="wrong")
    assert excinfo.value.kind is UsageFetchErrorKind.AUTH_FAILED

    with pytest.raises(UsageFetchError) as excinfo:
        await fetch_usage(org_id="org-missing", session_key="")
    assert excinfo.value.kind is UsageFetchErrorKind.AUTH_FAILED


@pytest.mark.asyncio
async def test_poll_cycle_against_live_server(usage_api: UsageApi, alert_platform) -> None:
    reset = normalize_to_minute(utcnow() + timedelta(hours=2))
    resets_at = f"{reset.isoformat()}+00:00"
    usage_api.valid_keys.update({"org-work": "sk-work", "org-home": "sk-home", "org-old": "sk-current"})
    usage_api.payloads["org-work"] = {"five_hour": {"utilization": 12.0, "resets_at": resets_at}}
    usage_api.payloads["org-home"] = {
        "five_hour": {"utilization": 100.0, "resets_at": resets_at},
        "seven_day": {"utilization": 40.0, "resets_at": resets_at},
    }
    store = InMemoryAccountStore(
        [
            Account(id="org-work", credential="sk-work", name="Work"),
            Account(id="org-home", credential="sk-home", name="Home"),
            Account(id="org-old", credential="sk-expired", name="Old"),
        ]
    )
    flushed = asyncio.Event()
    flushes: list[int] = []

    def on_change() -> None:
        flushes.append(1)
        flushed.set()

    manager = build_usage_manager(account_store=store, alert_platform=alert_platform, on_state_change=on_change)
    try:
        manager.start()
        for _ in range(20):
            if all(state.status is not UsageStatus.LOADING for state in manager.snapshot()):
                break
            await asyncio.wait_for(flushed.wait(), timeout=5)
            flushed.clear()

        states = {state.account_id: state for state in manager.snapshot()}
        assert [state.account_id for state in manager.snapshot()] == ["org-home", "org-old", "org-work"]
        assert states["org-work"].status is UsageStatus.SUCCESS
        assert states["org-work"].percent == 12
        assert states["org-home"].percent == 100
        assert states["org-home"].weekly_percent == 40
        assert states["org-old"].status is UsageStatus.ERROR
        assert states["org-old"].error_kind is UsageFetchErrorKind.AUTH_FAILED
        assert alert_platform.alerts[alert_key(reset)][1] == "2 accounts have reset to 0%: Home, Work"

        # One cycle: only the account below its limit goes to the network.
        usage_api.requests.clear()
        flushes.clear()
        flushed.clear()
        manager.poll_all()
        await asyncio.wait_for(flushed.wait(), timeout=5)

        assert usage_api.requests == ["org-work"]
        assert flushes == [1]
    finally:
        await manager.stop()
