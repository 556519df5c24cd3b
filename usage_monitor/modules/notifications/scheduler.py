from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Mapping

from usage_monitor.core.metrics import get_metrics
from usage_monitor.core.metrics.metrics import Metrics
from usage_monitor.core.utils.time import to_epoch_seconds
from usage_monitor.modules.accounts.schemas import account_label, short_account_id
from usage_monitor.modules.notifications.platform import AlertPlatform

logger = logging.getLogger(__name__)

DEFAULT_ALERT_TITLE = "Claude Usage Reset"


def alert_key(reset_at: datetime) -> str:
    return f"usage-reset-{int(to_epoch_seconds(reset_at))}"


def compose_alert_body(names: Iterable[str]) -> str:
    ordered = sorted(names)
    if len(ordered) == 1:
        return f"{ordered[0]} usage has reset to 0%"
    return f"{len(ordered)} accounts have reset to 0%: {', '.join(ordered)}"


class ResetNotificationScheduler:
    """Keeps one platform alert per reset instant, naming every account that resets then.

    Accounts whose (minute-normalized) reset times coincide share a group and a single
    alert. The alert key is derived from the reset instant, so re-issuing it replaces the
    previous alert instead of adding a second one.
    """

    def __init__(
        self,
        platform: AlertPlatform,
        *,
        display_name: Callable[[str], str | None] = lambda _account_id: None,
        title: str = DEFAULT_ALERT_TITLE,
        metrics: Metrics | None = None,
    ) -> None:
        self._platform = platform
        self._display_name = display_name
        self._title = title
        self._metrics = metrics or get_metrics()
        self._groups: dict[datetime, set[str]] = {}
        self._scheduled: dict[str, datetime] = {}

    @property
    def groups(self) -> Mapping[datetime, frozenset[str]]:
        return {reset_at: frozenset(members) for reset_at, members in self._groups.items()}

    def scheduled_reset_at(self, account_id: str) -> datetime | None:
        return self._scheduled.get(account_id)

    def schedule_or_update(self, account_id: str, reset_at: datetime) -> bool:
        """Move ``account_id`` into the group for ``reset_at``; returns False when nothing changed."""
        previous = self._scheduled.get(account_id)
        if previous == reset_at:
            return False

        if previous is not None:
            self._leave_group(account_id, previous)
        self._scheduled[account_id] = reset_at

        members = self._groups.setdefault(reset_at, set())
        members.add(account_id)
        logger.debug(
            "Scheduling reset alert account=%s reset_at=%s accounts=%s",
            self._label(account_id),
            reset_at.isoformat(),
            len(members),
        )
        self._issue(reset_at)
        return True

    def remove_account(self, account_id: str) -> None:
        self._scheduled.pop(account_id, None)
        for reset_at in [key for key, members in self._groups.items() if account_id in members]:
            self._leave_group(account_id, reset_at)

    def clear(self) -> None:
        for reset_at in list(self._groups):
            self._cancel(reset_at)
        self._groups.clear()
        self._scheduled.clear()

    def _leave_group(self, account_id: str, reset_at: datetime) -> None:
        members = self._groups.get(reset_at)
        if members is None:
            return
        members.discard(account_id)
        if members:
            self._issue(reset_at)
            return
        del self._groups[reset_at]
        self._cancel(reset_at)
        logger.debug("Cancelled reset alert reset_at=%s (no accounts remaining)", reset_at.isoformat())

    def _issue(self, reset_at: datetime) -> None:
        members = self._groups.get(reset_at)
        if not members:
            return
        key = alert_key(reset_at)
        body = compose_alert_body(self._alert_name(account_id) for account_id in members)
        try:
            self._platform.upsert(key, self._title, body, reset_at)
        except Exception:
            self._metrics.observe_reset_alert(action="upsert", ok=False)
            logger.warning("Failed to schedule reset alert key=%s", key, exc_info=True)
            return
        self._metrics.observe_reset_alert(action="upsert", ok=True)

    def _cancel(self, reset_at: datetime) -> None:
        key = alert_key(reset_at)
        try:
            self._platform.cancel(key)
        except Exception:
            self._metrics.observe_reset_alert(action="cancel", ok=False)
            logger.warning("Failed to cancel reset alert key=%s", key, exc_info=True)
            return
        self._metrics.observe_reset_alert(action="cancel", ok=True)

    def _alert_name(self, account_id: str) -> str:
        return self._display_name(account_id) or short_account_id(account_id)

    def _label(self, account_id: str) -> str:
        return account_label(account_id, self._display_name(account_id))
