from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from usage_monitor.core.clients.usage import UsageFetchError, UsageFetchErrorKind, fetch_account_usage
from usage_monitor.core.config.settings import get_settings
from usage_monitor.core.metrics import get_metrics
from usage_monitor.core.metrics.metrics import Metrics
from usage_monitor.core.usage import prediction
from usage_monitor.core.usage.models import UsagePayload
from usage_monitor.core.usage.types import UsageSample, UsageState, UsageStatus
from usage_monitor.core.utils.time import format_duration, normalize_to_minute, parse_timestamp, utcnow
from usage_monitor.modules.accounts.schemas import Account, account_label, short_account_id
from usage_monitor.modules.accounts.store import AccountStore
from usage_monitor.modules.notifications.platform import AlertPlatform
from usage_monitor.modules.notifications.scheduler import DEFAULT_ALERT_TITLE, ResetNotificationScheduler
from usage_monitor.modules.usage.debounce import ChangeNotifier
from usage_monitor.modules.usage.poll_schedule import PollSchedule

logger = logging.getLogger(__name__)

UsageFetcher = Callable[[str, str], Awaitable[UsagePayload]]

# Accounts this close to their reset are fetched even at 100% so the reset is seen promptly.
RESET_IMMINENT_SECONDS = 1.0


class UsageManager:
    """Tracks usage for every registered account on a single event loop.

    All mutating entry points must be called from the loop that runs the manager.
    Fetches run as tasks; their results are applied back on the loop, one at a time.
    """

    def __init__(
        self,
        *,
        account_store: AccountStore,
        alert_platform: AlertPlatform,
        fetcher: UsageFetcher = fetch_account_usage,
        on_state_change: Callable[[], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval_seconds: float = 30.0,
        align_polls_to_clock: bool = True,
        poll_align_offset_seconds: float = 1.0,
        history_window: timedelta = prediction.HISTORY_WINDOW,
        prediction_lookahead: timedelta = prediction.PREDICTION_LOOKAHEAD,
        reset_window: timedelta = prediction.RESET_WINDOW,
        debounce_timeout_seconds: float = 5.0,
        alert_title: str = DEFAULT_ALERT_TITLE,
        metrics: Metrics | None = None,
    ) -> None:
        self.on_state_change = on_state_change
        self._account_store = account_store
        self._fetcher = fetcher
        self._clock = clock
        self._history_window = history_window
        self._prediction_lookahead = prediction_lookahead
        self._reset_window = reset_window
        self._metrics = metrics or get_metrics()
        self._accounts: dict[str, Account] = {}
        self._states: dict[str, UsageState] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._paused = False
        self._started = False
        self._notifications = ResetNotificationScheduler(
            alert_platform,
            display_name=account_store.display_name,
            title=alert_title,
            metrics=self._metrics,
        )
        self._notifier = ChangeNotifier(
            on_flush=self._emit_state_change,
            timeout_seconds=debounce_timeout_seconds,
            metrics=self._metrics,
        )
        self._schedule = PollSchedule(
            interval_seconds=poll_interval_seconds,
            on_tick=self.poll_all,
            align_to_clock=align_polls_to_clock,
            offset_seconds=poll_align_offset_seconds,
        )

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def polling(self) -> bool:
        return self._schedule.running

    # Lifecycle

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        accounts = self._account_store.list_accounts()
        logger.info("Usage manager starting accounts=%s", len(accounts))
        for account in accounts:
            self.register_account(account)

    async def stop(self) -> None:
        self._started = False
        await self._schedule.stop()
        self._notifier.close()
        self._notifications.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Usage manager stopped")

    # Accounts

    def register_account(self, account: Account) -> None:
        self._accounts[account.id] = account
        state = self._states.get(account.id)
        if state is None:
            self._states[account.id] = UsageState(account_id=account.id)
        elif state.error_kind is UsageFetchErrorKind.AUTH_FAILED:
            # A re-registered account usually carries a new credential.
            state.error_kind = None
        self._metrics.set_tracked_accounts(set(self._states))
        if not self._paused:
            self._schedule.start()
        self._update_usage(account.id, explicit=True)

    def unregister_account(self, account_id: str) -> None:
        self._accounts.pop(account_id, None)
        if self._states.pop(account_id, None) is None:
            return
        self._metrics.set_tracked_accounts(set(self._states))
        self._notifications.remove_account(account_id)
        if not self._states:
            self._schedule.cancel()
        logger.info("Account removed account=%s", short_account_id(account_id))
        self._notifier.discard(account_id)

    # Polling

    def poll_all(self) -> None:
        account_ids = list(self._states)
        self._notifier.begin(account_ids)
        for account_id in account_ids:
            self._update_usage(account_id)

    def poll_one(self, account_id: str) -> None:
        if account_id not in self._states:
            return
        self._update_usage(account_id, explicit=True)

    def refresh_now(self) -> None:
        """Entry point for alert delivery: refresh everything right after a reset."""
        self.poll_all()

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        self._schedule.cancel()
        logger.info("Usage tracking paused")

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        logger.info("Usage tracking resumed")
        if self._states:
            self._schedule.start()
        self.poll_all()

    # State access

    def state(self, account_id: str) -> UsageState | None:
        state = self._states.get(account_id)
        return state.copy() if state is not None else None

    def snapshot(self) -> list[UsageState]:
        return [state.copy() for state in sorted(self._states.values(), key=self._sort_key)]

    def _sort_key(self, state: UsageState) -> tuple[str, str]:
        name = self._account_store.display_name(state.account_id) or short_account_id(state.account_id)
        return name.casefold(), state.account_id

    # Internals

    def _update_usage(self, account_id: str, *, explicit: bool = False) -> None:
        account = self._accounts.get(account_id)
        state = self._states.get(account_id)
        if account is None or state is None:
            return

        skip_reason = self._skip_reason(state, explicit=explicit)
        if skip_reason is not None:
            self._metrics.observe_fetch_skipped(reason=skip_reason)
            self._refresh_clock_fields(state)
            self._notifier.mark_complete(account_id)
            return

        task = asyncio.create_task(self._fetch_and_apply(account, state))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _skip_reason(self, state: UsageState, *, explicit: bool) -> str | None:
        if self._paused:
            return "paused"
        if state.error_kind is UsageFetchErrorKind.AUTH_FAILED and not explicit:
            return "auth_failed"
        if state.reset_at is None or not state.at_limit:
            return None
        remaining = (state.reset_at - self._clock()).total_seconds()
        if remaining <= RESET_IMMINENT_SECONDS:
            return None
        return "at_limit"

    async def _fetch_and_apply(self, account: Account, state: UsageState) -> None:
        try:
            payload = await self._fetcher(account.id, account.credential)
        except UsageFetchError as exc:
            self._metrics.observe_usage_fetch(outcome=exc.kind.value)
            if self._is_live(account.id, state):
                self._apply_error(state, exc.message, kind=exc.kind)
            return
        self._metrics.observe_usage_fetch(outcome="success")
        if self._is_live(account.id, state):
            self._apply_payload(state, payload)

    def _is_live(self, account_id: str, state: UsageState) -> bool:
        # Completions for removed (or removed and re-added) accounts are dropped.
        return self._states.get(account_id) is state

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Usage fetch task failed", exc_info=exc)

    def _apply_payload(self, state: UsageState, payload: UsagePayload) -> None:
        account_id = state.account_id
        period = payload.five_hour
        if period is None:
            self._apply_error(state, "No usage data", kind=UsageFetchErrorKind.DECODE_ERROR)
            return

        now = self._clock()
        percent = int(period.utilization)
        reset_at: datetime | None = None
        if period.resets_at:
            reset_at = normalize_to_minute(parse_timestamp(period.resets_at, now=now))
            self._notifications.schedule_or_update(account_id, reset_at)
        else:
            self._notifications.remove_account(account_id)

        history = [*state.history, UsageSample(timestamp=now, percent=percent)]
        state.history = prediction.prune_history(history, now=now, window=self._history_window)
        state.percent = percent
        state.reset_at = reset_at
        state.time_until_reset = format_duration(reset_at - now) if reset_at is not None else "N/A"

        velocity = prediction.velocity(state.history, now=now, window=self._history_window)
        state.time_to_full = prediction.time_to_full(percent, velocity)
        state.predicted_percent = prediction.predicted_percent(percent, velocity, self._prediction_lookahead)
        state.reset_progress_percent = prediction.reset_progress(reset_at, now=now, window=self._reset_window)
        state.status = UsageStatus.SUCCESS
        state.error = None
        state.error_kind = None
        self._apply_weekly(state, payload, now)
        self._metrics.set_account_usage(account_id, percent)

        logger.debug(
            "Usage updated account=%s percent=%s resets_in=%s predicted=%s time_to_full=%s",
            self._label(account_id),
            percent,
            state.time_until_reset,
            state.predicted_percent,
            format_duration(state.time_to_full) if state.time_to_full is not None else None,
        )
        self._notifier.mark_complete(account_id)

    def _apply_weekly(self, state: UsageState, payload: UsagePayload, now: datetime) -> None:
        weekly = payload.seven_day
        if weekly is None:
            state.weekly_percent = None
            state.weekly_reset_at = None
            state.weekly_time_until_reset = None
            return
        state.weekly_percent = int(weekly.utilization)
        if weekly.resets_at:
            state.weekly_reset_at = parse_timestamp(weekly.resets_at, now=now)
            state.weekly_time_until_reset = format_duration(state.weekly_reset_at - now)
        else:
            state.weekly_reset_at = None
            state.weekly_time_until_reset = None

    def _apply_error(self, state: UsageState, message: str, *, kind: UsageFetchErrorKind) -> None:
        state.status = UsageStatus.ERROR
        state.error = message
        state.error_kind = kind
        log = logger.warning if kind is UsageFetchErrorKind.AUTH_FAILED else logger.info
        log("Usage fetch failed account=%s kind=%s error=%s", self._label(state.account_id), kind.value, message)
        self._notifier.mark_complete(state.account_id)

    def _refresh_clock_fields(self, state: UsageState) -> None:
        if state.reset_at is None:
            return
        now = self._clock()
        state.time_until_reset = format_duration(state.reset_at - now)
        state.reset_progress_percent = prediction.reset_progress(state.reset_at, now=now, window=self._reset_window)
        logger.debug(
            "Timer-only update account=%s resets_in=%s",
            self._label(state.account_id),
            state.time_until_reset,
        )

    def _emit_state_change(self) -> None:
        if self.on_state_change is not None:
            self.on_state_change()

    def _label(self, account_id: str) -> str:
        return account_label(account_id, self._account_store.display_name(account_id))


def build_usage_manager(
    *,
    account_store: AccountStore,
    alert_platform: AlertPlatform,
    on_state_change: Callable[[], None] | None = None,
    fetcher: UsageFetcher = fetch_account_usage,
) -> UsageManager:
    settings = get_settings()
    return UsageManager(
        account_store=account_store,
        alert_platform=alert_platform,
        fetcher=fetcher,
        on_state_change=on_state_change,
        poll_interval_seconds=settings.poll_interval_seconds,
        align_polls_to_clock=settings.poll_align_to_clock,
        poll_align_offset_seconds=settings.poll_align_offset_seconds,
        history_window=timedelta(seconds=settings.history_window_seconds),
        prediction_lookahead=timedelta(seconds=settings.prediction_lookahead_seconds),
        reset_window=timedelta(seconds=settings.reset_window_seconds),
        debounce_timeout_seconds=settings.debounce_timeout_seconds,
        alert_title=settings.notification_title,
    )
