from __future__ import annotations

from prometheus_client.parser import text_string_to_metric_families

from usage_monitor.core.metrics.metrics import Metrics


def _sample_value(text: str, metric_name: str, labels: dict[str, str] | None = None) -> float | None:
    target_labels = labels or {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            if sample.name != metric_name:
                continue
            if all(sample.labels.get(k) == v for k, v in target_labels.items()):
                return float(sample.value)
    return None


def test_metrics_counts_fetch_outcomes(metrics: Metrics) -> None:
    metrics.observe_usage_fetch(outcome="success")
    metrics.observe_usage_fetch(outcome="success")
    metrics.observe_usage_fetch(outcome="auth_failed")
    metrics.observe_fetch_skipped(reason="at_limit")

    rendered = metrics.render().decode("utf-8")
    assert _sample_value(rendered, "usage_monitor_usage_fetches_total", {"outcome": "success"}) == 2.0
    assert _sample_value(rendered, "usage_monitor_usage_fetches_total", {"outcome": "auth_failed"}) == 1.0
    assert _sample_value(rendered, "usage_monitor_usage_fetches_skipped_total", {"reason": "at_limit"}) == 1.0


def test_metrics_alerts_and_flushes(metrics: Metrics) -> None:
    metrics.observe_reset_alert(action="upsert", ok=True)
    metrics.observe_reset_alert(action="cancel", ok=False)
    metrics.observe_state_change_flush(trigger="timeout")

    rendered = metrics.render().decode("utf-8")
    assert (
        _sample_value(rendered, "usage_monitor_reset_alerts_total", {"action": "upsert", "status": "ok"}) == 1.0
    )
    assert (
        _sample_value(rendered, "usage_monitor_reset_alerts_total", {"action": "cancel", "status": "error"})
        == 1.0
    )
    assert _sample_value(rendered, "usage_monitor_state_change_flushes_total", {"trigger": "timeout"}) == 1.0


def test_metrics_drops_usage_series_for_untracked_accounts(metrics: Metrics) -> None:
    metrics.set_account_usage("org-1", 40)
    metrics.set_account_usage("org-2", 100)
    metrics.set_tracked_accounts({"org-2"})

    rendered = metrics.render().decode("utf-8")
    assert _sample_value(rendered, "usage_monitor_tracked_accounts") == 1.0
    assert _sample_value(rendered, "usage_monitor_account_usage_percent", {"account_id": "org-1"}) is None
    assert _sample_value(rendered, "usage_monitor_account_usage_percent", {"account_id": "org-2"}) == 100.0
