from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from usage_monitor.core.metrics import get_metrics
from usage_monitor.core.metrics.metrics import FlushTrigger, Metrics

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChangeNotifier:
    """Collapses the per-account completions of one poll cycle into a single callback.

    A cycle flushes once every pending account has completed, or when ``timeout_seconds``
    elapses first. Starting a new cycle supersedes any open one.
    """

    on_flush: Callable[[], None]
    timeout_seconds: float = 5.0
    metrics: Metrics = field(default_factory=get_metrics)
    _pending: set[str] = field(default_factory=set)
    _completed: set[str] = field(default_factory=set)
    _timer: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._timer is not None

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    def begin(self, account_ids: Iterable[str]) -> None:
        self._cancel_timer()
        self._pending = set(account_ids)
        self._completed = set()
        if not self._pending:
            self.flush(trigger="complete")
            return
        logger.debug("Debounce: starting cycle for %s accounts", len(self._pending))
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.timeout_seconds, self._on_timeout)

    def mark_complete(self, account_id: str) -> None:
        self._completed.add(account_id)
        logger.debug("Debounce: account complete %s/%s", len(self._completed), len(self._pending))
        self._flush_if_done()

    def discard(self, account_id: str) -> None:
        """Stop waiting for an account that is no longer tracked."""
        if account_id not in self._pending:
            return
        self._pending.discard(account_id)
        self._completed.discard(account_id)
        self._flush_if_done()

    def flush(self, *, trigger: FlushTrigger = "complete") -> None:
        self._cancel_timer()
        self._pending.clear()
        self._completed.clear()
        self.metrics.observe_state_change_flush(trigger=trigger)
        logger.debug("Debounce: state change flushed trigger=%s", trigger)
        try:
            self.on_flush()
        except Exception:
            logger.exception("State change callback failed")

    def close(self) -> None:
        self._cancel_timer()
        self._pending.clear()
        self._completed.clear()

    def _flush_if_done(self) -> None:
        if self._completed >= self._pending:
            self.flush(trigger="complete")

    def _on_timeout(self) -> None:
        self._timer = None
        logger.debug("Debounce: timeout fired with %s/%s complete", len(self._completed), len(self._pending))
        self.flush(trigger="timeout")

    def _cancel_timer(self) -> None:
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
