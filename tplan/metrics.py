"""Prometheus metrics for prerequisite resolution.

Metrics live in a registry-local ``CollectorRegistry`` so they do not clash
with external collectors during tests or when the package is imported more
than once.  Short-lived CLI runs can dump them for the node-exporter textfile
collector with ``write_metrics``.
"""

from __future__ import annotations

import os

from prometheus_client import CollectorRegistry, Counter, Gauge, write_to_textfile

registry = CollectorRegistry()

tplan_resolutions_total = Counter(
    "tplan_resolutions_total",
    "Total number of finished resolutions by outcome",
    ["outcome"],
    registry=registry,
)
tplan_steps_executed_total = Counter(
    "tplan_steps_executed_total",
    "Total number of prerequisite steps executed, by mode (inline/subprocess)",
    ["mode"],
    registry=registry,
)
tplan_subprocess_failures_total = Counter(
    "tplan_subprocess_failures_total",
    "Total number of prerequisite subprocesses that failed",
    registry=registry,
)
tplan_last_resolution_timestamp_seconds = Gauge(
    "tplan_last_resolution_timestamp_seconds",
    "Time the last resolution finished, as epoch seconds",
    registry=registry,
)


def record_resolution(outcome: str) -> None:
    """Count a finished resolution and stamp its completion time."""
    tplan_resolutions_total.labels(outcome=outcome).inc()
    tplan_last_resolution_timestamp_seconds.set_to_current_time()


def record_step(mode: str) -> None:
    tplan_steps_executed_total.labels(mode=mode).inc()


def write_metrics(path: str) -> None:
    """Write all metrics to *path* in the Prometheus text format."""
    dir_name = os.path.dirname(path)
    if dir_name:
        os.makedirs(dir_name, exist_ok=True)
    write_to_textfile(path, registry)


__all__ = [
    "registry",
    "record_resolution",
    "record_step",
    "tplan_last_resolution_timestamp_seconds",
    "tplan_resolutions_total",
    "tplan_steps_executed_total",
    "tplan_subprocess_failures_total",
    "write_metrics",
]
