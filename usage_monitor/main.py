from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from usage_monitor.core.clients.http import close_http_client, init_http_client
from usage_monitor.core.config.startup_log import log_startup_config
from usage_monitor.core.usage.types import UsageState, UsageStatus
from usage_monitor.core.utils.time import format_duration
from usage_monitor.modules.accounts.schemas import short_account_id
from usage_monitor.modules.accounts.store import AccountStore, build_account_store
from usage_monitor.modules.notifications.platform import InProcessAlertPlatform, ScheduledAlert
from usage_monitor.modules.usage.manager import UsageManager, build_usage_manager

logger = logging.getLogger(__name__)


def format_state_line(state: UsageState, name: str | None) -> str:
    label = name or short_account_id(state.account_id)
    if state.status is UsageStatus.LOADING:
        return f"{label}: loading"
    if state.status is UsageStatus.ERROR:
        return f"{label}: error ({state.error})"

    parts = [f"{label}: {state.percent}%"]
    if state.predicted_percent is not None and state.predicted_percent > state.percent:
        parts.append(f"(trending to {state.predicted_percent}%)")
    parts.append(f"resets in {state.time_until_reset}")
    if state.reset_progress_percent is not None:
        parts.append(f"({state.reset_progress_percent}% of window left)")
    if state.time_to_full is not None:
        parts.append(f"full in {format_duration(state.time_to_full)}")
    if state.weekly_percent is not None:
        weekly = f"weekly {state.weekly_percent}%"
        if state.weekly_time_until_reset:
            weekly = f"{weekly} resets in {state.weekly_time_until_reset}"
        parts.append(f"| {weekly}")
    return " ".join(parts)


def log_snapshot(manager: UsageManager, account_store: AccountStore) -> None:
    states = manager.snapshot()
    if not states:
        logger.info("No accounts tracked")
        return
    for state in states:
        logger.info(format_state_line(state, account_store.display_name(state.account_id)))


@asynccontextmanager
async def monitor_lifespan(
    *,
    account_store: AccountStore | None = None,
    on_state_change: Callable[[UsageManager], None] | None = None,
) -> AsyncIterator[UsageManager]:
    """Run a started ``UsageManager`` with an HTTP client and in-process reset alerts."""
    log_startup_config()
    store = account_store or build_account_store()
    manager: UsageManager | None = None

    def _on_delivery(_alert: ScheduledAlert) -> None:
        if manager is not None:
            manager.refresh_now()

    def _on_state_change() -> None:
        if manager is not None and on_state_change is not None:
            on_state_change(manager)

    await init_http_client()
    platform = InProcessAlertPlatform(on_delivery=_on_delivery)
    try:
        manager = build_usage_manager(
            account_store=store,
            alert_platform=platform,
            on_state_change=_on_state_change,
        )
        manager.start()
        yield manager
    finally:
        try:
            if manager is not None:
                await manager.stop()
            platform.close()
        finally:
            await close_http_client()
