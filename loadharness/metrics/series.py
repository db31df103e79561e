"""
Immutable series snapshots and the pure aggregate functions over them.

Nothing here mutates: snapshots are built once by the registry and every
derived value (count, rate, percentiles) is computed on demand.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from functools import cached_property
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from loadharness.metrics.point import MetricKind, TagKey

SUMMARY_PERCENTILES: Tuple[float, ...] = (50.0, 90.0, 95.0, 99.0)


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """
    Linear-interpolated percentile of an already sorted sequence.

    Returns 0.0 for an empty sequence.
    """
    if not sorted_values:
        return 0.0
    if p <= 0:
        return float(sorted_values[0])
    if p >= 100:
        return float(sorted_values[-1])
    k = (len(sorted_values) - 1) * (p / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return float(sorted_values[int(k)])
    return sorted_values[f] * (c - k) + sorted_values[c] * (k - f)


def percentile_label(p: float) -> str:
    return f"p({p:g})"


@dataclass(frozen=True)
class TagGroup:
    """Samples sharing one exact tag set."""

    tags: TagKey
    values: Tuple[float, ...]

    def matches(self, selector: Mapping[str, str]) -> bool:
        own = dict(self.tags)
        return all(own.get(k) == v for k, v in selector.items())


@dataclass(frozen=True)
class SeriesSnapshot:
    """
    Point-in-time copy of one metric across all of its tag sets.

    ``count`` is the number of recorded samples. Counter ``total`` is the
    sum of their values.
    """

    name: str
    kind: MetricKind
    groups: Tuple[TagGroup, ...] = ()

    @cached_property
    def values(self) -> Tuple[float, ...]:
        out: List[float] = []
        for group in self.groups:
            out.extend(group.values)
        return tuple(out)

    @cached_property
    def _sorted(self) -> Tuple[float, ...]:
        return tuple(sorted(self.values))

    def filter(self, selector: Optional[Mapping[str, str]]) -> "SeriesSnapshot":
        """Sub-series of the groups whose tags include every selector pair."""
        if not selector:
            return self
        return SeriesSnapshot(
            name=self.name,
            kind=self.kind,
            groups=tuple(g for g in self.groups if g.matches(selector)),
        )

    @property
    def count(self) -> int:
        return len(self.values)

    @property
    def total(self) -> float:
        return float(sum(self.values))

    @property
    def rate(self) -> float:
        """Fraction of non-zero samples (Rate metrics)."""
        if not self.values:
            return 0.0
        return sum(1 for v in self.values if v) / len(self.values)

    @property
    def passes(self) -> int:
        return sum(1 for v in self.values if v)

    @property
    def avg(self) -> float:
        return self.total / len(self.values) if self.values else 0.0

    @property
    def min(self) -> float:
        return self._sorted[0] if self._sorted else 0.0

    @property
    def max(self) -> float:
        return self._sorted[-1] if self._sorted else 0.0

    @property
    def med(self) -> float:
        return percentile(self._sorted, 50.0)

    def percentile(self, p: float) -> float:
        return percentile(self._sorted, p)

    def summary(self, duration_seconds: Optional[float] = None) -> Dict[str, Any]:
        """Aggregates appropriate to the metric kind."""
        if self.kind is MetricKind.COUNTER:
            out: Dict[str, Any] = {"count": self.total}
            if duration_seconds:
                out["rate"] = self.total / duration_seconds
            else:
                out["rate"] = 0.0
            return out
        if self.kind is MetricKind.RATE:
            return {
                "rate": self.rate,
                "passes": self.passes,
                "fails": self.count - self.passes,
            }
        out = {
            "count": self.count,
            "avg": self.avg,
            "min": self.min,
            "med": self.med,
            "max": self.max,
        }
        for p in SUMMARY_PERCENTILES:
            out[percentile_label(p)] = self.percentile(p)
        return out

    def to_dict(self, duration_seconds: Optional[float] = None) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "values": self.summary(duration_seconds),
            "tags": [
                {
                    "tags": dict(group.tags),
                    "values": SeriesSnapshot(
                        name=self.name, kind=self.kind, groups=(group,)
                    ).summary(duration_seconds),
                }
                for group in sorted(self.groups, key=lambda g: g.tags)
            ],
        }


def merge_groups(groups: Iterable[TagGroup]) -> Tuple[TagGroup, ...]:
    """Order groups by tag key so snapshots are deterministic."""
    return tuple(sorted(groups, key=lambda g: g.tags))
