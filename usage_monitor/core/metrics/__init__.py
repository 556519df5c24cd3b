from __future__ import annotations

from functools import lru_cache

from usage_monitor.core.metrics.metrics import Metrics


@lru_cache(maxsize=1)
def get_metrics() -> Metrics:
    return Metrics()
