"""
Workloads: the function a scenario runs on every iteration.

A Workload bundles the iteration function with its think-time range and
the custom metrics it records. The executor resolves think-time through
the worker's own seeded ``random.Random`` so runs can be reproduced.
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from loadharness.checks import Predicate, check
from loadharness.metrics.point import MetricKind
from loadharness.metrics.registry import MetricsRegistry
from loadharness.probe import HttpProbe


@dataclass(frozen=True)
class ThinkTime:
    """
    Pause between a worker's iterations, uniform in [min_seconds, max_seconds].

    Example:
        ThinkTime(1.0, 3.0)   # 1-3 seconds
        ThinkTime(1.0, 1.0)   # fixed 1 second
    """

    min_seconds: float = 0.0
    max_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.min_seconds < 0 or self.max_seconds < self.min_seconds:
            raise ValueError(
                f"Invalid think-time range [{self.min_seconds}, {self.max_seconds}]"
            )

    def resolve(self, rng: random.Random) -> float:
        if self.max_seconds == self.min_seconds:
            return self.min_seconds
        return rng.uniform(self.min_seconds, self.max_seconds)


NO_THINK_TIME = ThinkTime()


class WorkloadContext:
    """
    Everything one iteration may touch.

    Attributes:
        scenario: Name of the running scenario.
        worker_id: Index of the worker running this iteration.
        iteration: Per-worker iteration counter (0-based).
        probe: HttpProbe tagged with the scenario tags.
        metrics: Shared MetricsRegistry.
        rng: Worker-local random source.
        tags: Scenario tags (always includes "scenario").
    """

    def __init__(
        self,
        *,
        scenario: str,
        worker_id: int,
        probe: HttpProbe,
        metrics: MetricsRegistry,
        rng: random.Random,
        tags: Mapping[str, str],
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.scenario = scenario
        self.worker_id = worker_id
        self.iteration = 0
        self.probe = probe
        self.metrics = metrics
        self.rng = rng
        self.tags: Dict[str, str] = dict(tags)
        self._stop_event = stop_event or threading.Event()

    @property
    def stopping(self) -> bool:
        """True once the worker has been told to stop after this iteration."""
        return self._stop_event.is_set()

    def _tags(self, extra: Optional[Mapping[str, str]]) -> Dict[str, str]:
        if not extra:
            return self.tags
        return {**self.tags, **extra}

    def add(self, name: str, value: float = 1.0, tags: Optional[Mapping[str, str]] = None) -> None:
        self.metrics.record(name, MetricKind.COUNTER, value, self._tags(tags))

    def rate(self, name: str, ok: bool, tags: Optional[Mapping[str, str]] = None) -> None:
        self.metrics.record(name, MetricKind.RATE, ok, self._tags(tags))

    def trend(self, name: str, value: float, tags: Optional[Mapping[str, str]] = None) -> None:
        self.metrics.record(name, MetricKind.TREND, value, self._tags(tags))

    def check(
        self,
        subject,
        predicates: Mapping[str, Predicate],
        tags: Optional[Mapping[str, str]] = None,
    ) -> bool:
        return check(subject, predicates, registry=self.metrics, tags=self._tags(tags))


WorkloadFn = Callable[[WorkloadContext], None]


@dataclass(frozen=True)
class Workload:
    """
    A named iteration function plus its pacing and metric declarations.

    Attributes:
        name: Workload name referenced by scenarios ("exec").
        fn: Called once per iteration with a WorkloadContext.
        think_time: Pause after each iteration. Closed-loop workers and
            open-loop pool workers both apply it before taking more work.
        metrics: Custom metric names and kinds this workload records.
    """

    name: str
    fn: WorkloadFn
    think_time: ThinkTime = NO_THINK_TIME
    metrics: Mapping[str, MetricKind] = field(default_factory=dict)

    def declare_metrics(self, registry: MetricsRegistry) -> None:
        for metric_name, kind in self.metrics.items():
            registry.declare(metric_name, kind)

    def with_think_time(self, think_time: ThinkTime) -> "Workload":
        return Workload(
            name=self.name, fn=self.fn, think_time=think_time, metrics=self.metrics
        )
