"""Prometheus metrics.

Durations and outcomes of lifecycle runs, flow table mutations and
backend calls. The HTTP agent serves them on /metrics.
"""
from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

lifecycle_duration = Histogram(
    "isoflow_lifecycle_seconds",
    "Duration of start/stop runs",
    ["action", "status"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

flow_operations = Counter(
    "isoflow_flow_operations_total",
    "Flow table mutations",
    ["operation", "status"],
)

endpoint_operations = Counter(
    "isoflow_endpoint_operations_total",
    "Backend endpoint operations",
    ["backend", "operation", "status"],
)

isolation_failures = Counter(
    "isoflow_isolation_failures_total",
    "Endpoints left without an isolation pair after start",
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
