from __future__ import annotations

from typing import Literal

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

AlertAction = Literal["upsert", "cancel"]
FlushTrigger = Literal["complete", "timeout"]


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)
        self._known_account_ids: set[str] = set()

        self._usage_fetches_total = Counter(
            "usage_monitor_usage_fetches_total",
            "Usage fetches completed, by outcome.",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._usage_fetches_skipped_total = Counter(
            "usage_monitor_usage_fetches_skipped_total",
            "Polls answered locally without a network request.",
            labelnames=("reason",),
            registry=self._registry,
        )
        self._reset_alerts_total = Counter(
            "usage_monitor_reset_alerts_total",
            "Reset alert operations sent to the alert platform.",
            labelnames=("action", "status"),
            registry=self._registry,
        )
        self._state_change_flushes_total = Counter(
            "usage_monitor_state_change_flushes_total",
            "Batched state change notifications, by trigger.",
            labelnames=("trigger",),
            registry=self._registry,
        )
        self._tracked_accounts = Gauge(
            "usage_monitor_tracked_accounts",
            "Accounts currently tracked.",
            registry=self._registry,
        )
        self._account_usage_percent = Gauge(
            "usage_monitor_account_usage_percent",
            "Latest five-hour utilization per account.",
            labelnames=("account_id",),
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def observe_usage_fetch(self, *, outcome: str) -> None:
        self._usage_fetches_total.labels(outcome=outcome).inc()

    def observe_fetch_skipped(self, *, reason: str) -> None:
        self._usage_fetches_skipped_total.labels(reason=reason).inc()

    def observe_reset_alert(self, *, action: AlertAction, ok: bool) -> None:
        self._reset_alerts_total.labels(action=action, status="ok" if ok else "error").inc()

    def observe_state_change_flush(self, *, trigger: FlushTrigger) -> None:
        self._state_change_flushes_total.labels(trigger=trigger).inc()

    def set_account_usage(self, account_id: str, percent: int) -> None:
        self._known_account_ids.add(account_id)
        self._account_usage_percent.labels(account_id=account_id).set(percent)

    def set_tracked_accounts(self, account_ids: set[str]) -> None:
        self._tracked_accounts.set(len(account_ids))
        # Drop series for accounts that are no longer tracked.
        for stale in self._known_account_ids - account_ids:
            self._account_usage_percent.remove(stale)
        self._known_account_ids &= account_ids

    def render(self) -> bytes:
        return generate_latest(self._registry)
