"""
Threshold rules: pass/fail assertions over aggregate metrics.

Rules use k6 syntax. The key selects a metric, optionally narrowed to a
tagged sub-series; the expression compares one aggregation to a literal:

    http_req_duration                  p(95)<5000
    http_req_failed                    rate<0.15
    http_req_duration{scenario:cpu}    avg<=800
    iterations                         count>=100

Rules are parsed and validated against the declared metric kinds before
any traffic is generated, so a typo in a metric name fails the run up
front instead of silently passing on an empty series.
"""

from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from loadharness.exceptions import HarnessConfigError
from loadharness.metrics.point import MetricKind, tag_key
from loadharness.metrics.registry import MetricsSnapshot
from loadharness.metrics.series import SeriesSnapshot, percentile_label

logger = logging.getLogger(__name__)

_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_EXPRESSION_RE = re.compile(
    r"^\s*(?P<agg>count|rate|avg|min|max|med|sum|p\(\s*(?P<p>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<value>[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

_SELECTOR_RE = re.compile(r"^\s*(?P<name>[A-Za-z_][\w.\-]*)\s*(?:\{(?P<tags>[^{}]*)\})?\s*$")

# Aggregations each metric kind supports.
_ALLOWED: Dict[MetricKind, Tuple[str, ...]] = {
    MetricKind.COUNTER: ("count", "sum", "rate"),
    MetricKind.RATE: ("rate", "count"),
    MetricKind.TREND: ("count", "avg", "min", "max", "med", "sum", "p"),
}

ThresholdMapping = Mapping[str, Union[str, Sequence[str]]]


def parse_selector(key: str) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
    """
    Split ``name{tag:value,other:value}`` into the metric name and tag pairs.

    Raises:
        HarnessConfigError: If the key is malformed.
    """
    match = _SELECTOR_RE.match(key)
    if not match:
        raise HarnessConfigError(
            f"Invalid threshold metric selector: {key!r}",
            code="invalid_threshold",
            details={"selector": key},
        )
    tags: Dict[str, str] = {}
    raw_tags = match.group("tags")
    if raw_tags is not None:
        for part in raw_tags.split(","):
            if not part.strip():
                continue
            name, sep, value = part.partition(":")
            if not sep or not name.strip() or not value.strip():
                raise HarnessConfigError(
                    f"Invalid tag filter {part!r} in {key!r}; expected tag:value",
                    code="invalid_threshold",
                    details={"selector": key},
                )
            tags[name.strip()] = value.strip()
    return match.group("name"), tag_key(tags)


@dataclass(frozen=True)
class ThresholdRule:
    """
    One parsed threshold.

    Attributes:
        metric: Metric name.
        expression: Original expression text, e.g. "p(95)<5000".
        aggregation: count, rate, avg, min, max, med, sum or p.
        comparator: One of < <= > >= == !=.
        literal: Right-hand side.
        percentile: N for p(N) aggregations.
        tags: Sub-series selector; empty means the whole metric.
        window: Evaluation window. Only "overall" is supported.
    """

    metric: str
    expression: str
    aggregation: str
    comparator: str
    literal: float
    percentile: Optional[float] = None
    tags: Tuple[Tuple[str, str], ...] = ()
    window: str = "overall"

    @classmethod
    def parse(cls, key: str, expression: str) -> "ThresholdRule":
        metric, tags = parse_selector(key)
        match = _EXPRESSION_RE.match(expression)
        if not match:
            raise HarnessConfigError(
                f"Invalid threshold expression {expression!r} for {key!r}",
                code="invalid_threshold",
                details={"metric": key, "expression": expression},
            )
        agg = match.group("agg")
        pct: Optional[float] = None
        if agg.startswith("p("):
            pct = float(match.group("p"))
            if pct > 100:
                raise HarnessConfigError(
                    f"Percentile out of range in {expression!r}",
                    code="invalid_threshold",
                    details={"metric": key, "expression": expression},
                )
            agg = "p"
        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=agg,
            comparator=match.group("op"),
            literal=float(match.group("value")),
            percentile=pct,
            tags=tags,
        )

    @property
    def selector(self) -> Dict[str, str]:
        return dict(self.tags)

    @property
    def key(self) -> str:
        """Metric selector as written in a plan."""
        if not self.tags:
            return self.metric
        inner = ",".join(f"{k}:{v}" for k, v in self.tags)
        return f"{self.metric}{{{inner}}}"

    @property
    def aggregation_label(self) -> str:
        if self.aggregation == "p" and self.percentile is not None:
            return percentile_label(self.percentile)
        return self.aggregation

    def validate(self, declared: Mapping[str, MetricKind]) -> None:
        """
        Check the metric exists and supports this aggregation.

        Raises:
            HarnessConfigError: unknown metric or aggregation not valid for
                the metric kind.
        """
        kind = declared.get(self.metric)
        if kind is None:
            raise HarnessConfigError(
                f"Threshold references unknown metric {self.metric!r}",
                code="unknown_metric",
                details={"metric": self.metric, "known": sorted(declared)},
            )
        if self.aggregation not in _ALLOWED[kind]:
            raise HarnessConfigError(
                f"{self.aggregation_label} is not defined for {kind.value} metric {self.metric!r}",
                code="invalid_aggregation",
                details={
                    "metric": self.metric,
                    "kind": kind.value,
                    "aggregation": self.aggregation_label,
                },
            )

    def observe(self, series: SeriesSnapshot, duration_seconds: Optional[float] = None) -> float:
        """Aggregate value of ``series`` this rule compares."""
        agg = self.aggregation
        if agg == "p":
            return series.percentile(self.percentile or 0.0)
        if series.kind is MetricKind.COUNTER:
            if agg == "rate":
                return series.total / duration_seconds if duration_seconds else 0.0
            return series.total
        if agg == "count":
            return float(series.count)
        if agg == "rate":
            return series.rate
        if agg == "sum":
            return series.total
        return float(getattr(series, agg))

    def evaluate(
        self,
        snapshot: MetricsSnapshot,
        duration_seconds: Optional[float] = None,
    ) -> "ThresholdVerdict":
        series = snapshot.get(self.metric, self.selector)
        if self.tags and series.count == 0:
            recorded = snapshot.get(self.metric).count
            if recorded:
                logger.warning(
                    "threshold %s matched no samples although %s has %d; check the tag filter",
                    self.key,
                    self.metric,
                    recorded,
                )
        observed = self.observe(series, duration_seconds)
        passed = _COMPARATORS[self.comparator](observed, self.literal)
        return ThresholdVerdict(rule=self, observed=observed, passed=passed)

    def __str__(self) -> str:
        return f"{self.key}: {self.expression}"


@dataclass(frozen=True)
class ThresholdVerdict:
    """Outcome of one rule: pass/fail plus the observed value."""

    rule: ThresholdRule
    observed: float
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.rule.key,
            "expression": self.rule.expression,
            "observed": self.observed,
            "passed": self.passed,
        }


def parse_thresholds(thresholds: ThresholdMapping) -> List[ThresholdRule]:
    """
    Parse a k6-style ``{selector: [expressions]}`` mapping.

    A bare string is accepted in place of a one-element list.
    """
    rules: List[ThresholdRule] = []
    for key, expressions in thresholds.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        for expression in expressions:
            rules.append(ThresholdRule.parse(key, expression))
    return rules


def validate_thresholds(rules: Iterable[ThresholdRule], declared: Mapping[str, MetricKind]) -> None:
    for rule in rules:
        rule.validate(declared)


def evaluate_thresholds(
    rules: Iterable[ThresholdRule],
    snapshot: MetricsSnapshot,
    duration_seconds: Optional[float] = None,
) -> List[ThresholdVerdict]:
    return [rule.evaluate(snapshot, duration_seconds) for rule in rules]


def all_passed(verdicts: Iterable[ThresholdVerdict]) -> bool:
    """A run passes iff every rule passes (vacuously true with no rules)."""
    return all(v.passed for v in verdicts)

