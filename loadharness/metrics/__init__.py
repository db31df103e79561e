"""
Run metrics: typed accumulators and immutable snapshots.

Provides:
- MetricKind / MetricPoint: Counter, Rate and Trend observations
- MetricsRegistry: thread-safe accumulator shared by every worker
- MetricsSnapshot / SeriesSnapshot: frozen copies with count, rate and
  p50/p95/p99 derived on demand

Usage:
    from loadharness.metrics import MetricsRegistry, MetricKind

    registry = MetricsRegistry()
    registry.record("errors", MetricKind.RATE, False, {"scenario": "cpu"})

    snap = registry.freeze()
    print(snap.get("http_req_duration").percentile(95))
"""

from loadharness.metrics.point import MetricKind, MetricPoint, tag_key
from loadharness.metrics.series import SeriesSnapshot, TagGroup, percentile
from loadharness.metrics.registry import (
    BUILTIN_METRICS,
    MetricsRegistry,
    MetricsSnapshot,
)

__all__ = [
    "MetricKind",
    "MetricPoint",
    "tag_key",
    "SeriesSnapshot",
    "TagGroup",
    "percentile",
    "BUILTIN_METRICS",
    "MetricsRegistry",
    "MetricsSnapshot",
]
