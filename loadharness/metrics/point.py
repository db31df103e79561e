"""
MetricPoint: a single recorded observation.

Points are immutable once recorded. Counter and Trend points carry numeric
values; Rate points carry 1.0 (true) or 0.0 (false).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

TagKey = Tuple[Tuple[str, str], ...]


class MetricKind(str, Enum):
    """How samples of a metric are aggregated."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"


def tag_key(tags: Optional[Mapping[str, str]]) -> TagKey:
    """Canonical, hashable form of a tag mapping (sorted by tag name)."""
    if not tags:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items()))


@dataclass(frozen=True)
class MetricPoint:
    """
    One observation for a named metric.

    Attributes:
        name: Metric name (e.g. "http_req_duration").
        kind: Counter, Rate or Trend.
        value: Numeric value; booleans are stored as 1.0/0.0.
        tags: Low-cardinality labels (scenario, endpoint, check...).
    """

    name: str
    kind: MetricKind
    value: float
    tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def of(
        cls,
        name: str,
        kind: MetricKind,
        value: float,
        tags: Optional[Mapping[str, str]] = None,
    ) -> "MetricPoint":
        if isinstance(value, bool) or kind is MetricKind.RATE:
            value = 1.0 if value else 0.0
        return cls(name=name, kind=kind, value=float(value), tags=dict(tags or {}))

    @property
    def key(self) -> TagKey:
        return tag_key(self.tags)
