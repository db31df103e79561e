"""
MetricsRegistry: thread-safe, in-memory accumulator for all run metrics.

Every worker of every scenario records into one registry injected through
its WorkloadContext. record() only appends under a per-series lock; the
registry-wide lock is taken just to create a series the first time a name
is seen. snapshot() copies each series under its own lock.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from loadharness.exceptions import HarnessConfigError
from loadharness.metrics.point import MetricKind, MetricPoint, TagKey, tag_key
from loadharness.metrics.series import SeriesSnapshot, TagGroup, merge_groups

# Built-in metrics recorded by the probe, checks and executors.
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
DROPPED_ITERATIONS = "dropped_iterations"
ITERATIONS_INTERRUPTED = "iterations_interrupted"
WORKLOAD_ERRORS = "workload_errors"
SCENARIO_ERRORS = "scenario_errors"
CHECKS = "checks"

BUILTIN_METRICS: Dict[str, MetricKind] = {
    HTTP_REQS: MetricKind.COUNTER,
    HTTP_REQ_DURATION: MetricKind.TREND,
    HTTP_REQ_FAILED: MetricKind.RATE,
    ITERATIONS: MetricKind.COUNTER,
    ITERATION_DURATION: MetricKind.TREND,
    DROPPED_ITERATIONS: MetricKind.COUNTER,
    ITERATIONS_INTERRUPTED: MetricKind.COUNTER,
    WORKLOAD_ERRORS: MetricKind.COUNTER,
    SCENARIO_ERRORS: MetricKind.COUNTER,
    CHECKS: MetricKind.RATE,
}


class _Series:
    """Append-only sample store for one metric name."""

    def __init__(self, name: str, kind: MetricKind) -> None:
        self.name = name
        self.kind = kind
        self._groups: Dict[TagKey, List[float]] = {}
        self._lock = threading.Lock()

    def append(self, key: TagKey, value: float) -> None:
        with self._lock:
            bucket = self._groups.get(key)
            if bucket is None:
                bucket = self._groups[key] = []
            bucket.append(value)

    def copy(self) -> SeriesSnapshot:
        with self._lock:
            groups = [TagGroup(tags=k, values=tuple(v)) for k, v in self._groups.items()]
        return SeriesSnapshot(name=self.name, kind=self.kind, groups=merge_groups(groups))


@dataclass(frozen=True)
class MetricsSnapshot:
    """
    Frozen copy of every series in a registry.

    Attributes:
        series: Metric name to SeriesSnapshot.
        taken_at: Wall-clock time of the snapshot.
    """

    series: Dict[str, SeriesSnapshot] = field(default_factory=dict)
    taken_at: float = 0.0

    def names(self) -> List[str]:
        return sorted(self.series)

    def has(self, name: str) -> bool:
        return name in self.series

    def get(
        self,
        name: str,
        tags: Optional[Mapping[str, str]] = None,
        kind: Optional[MetricKind] = None,
    ) -> SeriesSnapshot:
        """
        Series for ``name`` restricted to ``tags``.

        Names that were declared but never recorded yield an empty series of
        ``kind`` (or Trend when unknown).
        """
        series = self.series.get(name)
        if series is None:
            return SeriesSnapshot(name=name, kind=kind or MetricKind.TREND)
        return series.filter(tags)

    def to_dict(self, duration_seconds: Optional[float] = None) -> Dict[str, Any]:
        return {
            name: self.series[name].to_dict(duration_seconds) for name in self.names()
        }


class MetricsRegistry:
    """
    Collects Counter, Rate and Trend samples keyed by metric name.

    Thread-safe, in-memory. Unknown names are created lazily on first
    record(); declare() registers a name ahead of time so thresholds can be
    validated before any traffic.

    Example:
        registry = MetricsRegistry()
        registry.record("db_latency", MetricKind.TREND, 42.0, {"scenario": "db"})
        snap = registry.snapshot()
        print(snap.get("db_latency").percentile(95))
    """

    def __init__(self) -> None:
        self._series: Dict[str, _Series] = {}
        self._declared: Dict[str, MetricKind] = dict(BUILTIN_METRICS)
        self._lock = threading.Lock()
        self._frozen: Optional[MetricsSnapshot] = None

    def declare(self, name: str, kind: MetricKind) -> None:
        """Register a metric name and kind without recording a sample."""
        with self._lock:
            existing = self._declared.get(name)
            if existing is not None and existing is not kind:
                raise HarnessConfigError(
                    f"Metric {name!r} already declared as {existing.value}",
                    code="metric_kind_conflict",
                    details={"metric": name, "declared": existing.value, "requested": kind.value},
                )
            self._declared[name] = kind

    def declared(self) -> Dict[str, MetricKind]:
        with self._lock:
            return dict(self._declared)

    def _series_for(self, name: str, kind: MetricKind) -> _Series:
        series = self._series.get(name)
        if series is None:
            with self._lock:
                series = self._series.get(name)
                if series is None:
                    declared = self._declared.get(name)
                    if declared is not None and declared is not kind:
                        raise HarnessConfigError(
                            f"Metric {name!r} is a {declared.value}, not a {kind.value}",
                            code="metric_kind_conflict",
                            details={"metric": name},
                        )
                    self._declared[name] = kind
                    series = self._series[name] = _Series(name, kind)
        if series.kind is not kind:
            raise HarnessConfigError(
                f"Metric {name!r} is a {series.kind.value}, not a {kind.value}",
                code="metric_kind_conflict",
                details={"metric": name},
            )
        return series

    def record(
        self,
        name: str,
        kind: MetricKind,
        value: float,
        tags: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Append one sample. Safe to call from any number of threads."""
        if isinstance(value, bool) or kind is MetricKind.RATE:
            value = 1.0 if value else 0.0
        self._series_for(name, kind).append(tag_key(tags), float(value))

    def record_point(self, point: MetricPoint) -> None:
        self._series_for(point.name, point.kind).append(point.key, point.value)

    # Convenience wrappers used by workloads.

    def add(self, name: str, value: float = 1.0, tags: Optional[Mapping[str, str]] = None) -> None:
        self.record(name, MetricKind.COUNTER, value, tags)

    def rate(self, name: str, ok: bool, tags: Optional[Mapping[str, str]] = None) -> None:
        self.record(name, MetricKind.RATE, ok, tags)

    def trend(self, name: str, value: float, tags: Optional[Mapping[str, str]] = None) -> None:
        self.record(name, MetricKind.TREND, value, tags)

    def snapshot(self) -> MetricsSnapshot:
        """Point-in-time copy of all series."""
        if self._frozen is not None:
            return self._frozen
        with self._lock:
            series = list(self._series.values())
        return MetricsSnapshot(
            series={s.name: s.copy() for s in series},
            taken_at=time.time(),
        )

    def freeze(self) -> MetricsSnapshot:
        """Take the final snapshot; later calls to snapshot() return it."""
        if self._frozen is None:
            self._frozen = self.snapshot()
        return self._frozen

    @property
    def frozen(self) -> bool:
        return self._frozen is not None

