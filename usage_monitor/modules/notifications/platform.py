from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

from usage_monitor.core.utils.time import to_epoch_seconds, utcnow

logger = logging.getLogger(__name__)


class AlertPlatform(Protocol):
    def upsert(self, key: str, title: str, body: str, fire_at: datetime) -> None: ...

    def cancel(self, key: str) -> None: ...


@dataclass(frozen=True, slots=True)
class ScheduledAlert:
    key: str
    title: str
    body: str
    fire_at: datetime


class InProcessAlertPlatform:
    """Fires alerts from event loop timers while the process is running.

    Re-issuing a key replaces the pending alert; delivery is logged and reported to
    ``on_delivery`` so the shell can refresh usage right after a reset.
    """

    def __init__(
        self,
        *,
        on_delivery: Callable[[ScheduledAlert], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._on_delivery = on_delivery
        self._clock = clock
        self._pending: dict[str, tuple[ScheduledAlert, asyncio.TimerHandle]] = {}

    @property
    def pending(self) -> dict[str, ScheduledAlert]:
        return {key: alert for key, (alert, _) in self._pending.items()}

    def upsert(self, key: str, title: str, body: str, fire_at: datetime) -> None:
        self.cancel(key)
        alert = ScheduledAlert(key=key, title=title, body=body, fire_at=fire_at)
        loop = asyncio.get_running_loop()
        delay = max(0.0, to_epoch_seconds(fire_at) - to_epoch_seconds(self._clock()))
        handle = loop.call_later(delay, self._deliver, key)
        self._pending[key] = (alert, handle)
        logger.debug("Alert scheduled key=%s fire_in=%.0fs", key, delay)

    def cancel(self, key: str) -> None:
        entry = self._pending.pop(key, None)
        if entry is None:
            return
        entry[1].cancel()

    def close(self) -> None:
        for _, handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

    def _deliver(self, key: str) -> None:
        entry = self._pending.pop(key, None)
        if entry is None:
            return
        alert = entry[0]
        logger.info("%s: %s", alert.title, alert.body)
        if self._on_delivery is None:
            return
        try:
            self._on_delivery(alert)
        except Exception:
            logger.exception("Alert delivery callback failed key=%s", key)
