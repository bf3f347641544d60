"""
experiment_sdk.tier0_core.metrics
──────────────────────────────────
Counters and histograms with standard naming and labels, registered on the
default prometheus registry so the host application's /metrics endpoint
picks them up.

Minimal stack: prometheus-client
"""
from __future__ import annotations

from typing import Callable

from prometheus_client import Counter, Histogram

from experiment_sdk.tier0_core.config import get_config

# Standard labels applied to every metric
_DEFAULT_LABELS = ["service", "env"]


def default_label_values() -> dict[str, str]:
    config = get_config()
    return {"service": config.app_name, "env": config.environment}


def counter(name: str, description: str, labels: list[str] | None = None) -> Callable:
    """
    Create a counter with the standard labels.

    Usage:
        assignments_total = counter("experiment_assignments_total", "Assignments", ["outcome"])
        assignments_total(outcome="created").inc()
    """
    c = Counter(name, description, _DEFAULT_LABELS + (labels or []))

    def _counter(**extra_labels: str) -> Counter:
        return c.labels(**default_label_values(), **extra_labels)

    return _counter


def histogram(
    name: str,
    description: str,
    labels: list[str] | None = None,
    buckets: tuple = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
) -> Callable:
    """
    Create a histogram with the standard labels.

    Usage:
        duration = histogram("experiment_results_seconds", "Results computation time")
        with duration().time():
            ...
    """
    h = Histogram(name, description, _DEFAULT_LABELS + (labels or []), buckets=buckets)

    def _histogram(**extra_labels: str) -> Histogram:
        return h.labels(**default_label_values(), **extra_labels)

    return _histogram


__all__ = ["counter", "histogram", "default_label_values"]
