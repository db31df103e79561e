"""
Scheduler: run several scenarios concurrently inside one process.

Each scenario gets its own executor thread whose clock starts at
``global_start + scenario.start_offset``. A crash inside one executor is
caught, logged and counted in ``scenario_errors`` tagged with that
scenario; its siblings keep running. One cancel event is shared by every
executor, so ``cancel()`` (or Ctrl-C during ``run()``) stops new iterations
everywhere and lets in-flight ones drain.

Usage:
    scheduler = Scheduler(plan.scenarios, BUILTIN_WORKLOADS, probe=probe,
                          thresholds=plan.rules())
    result = scheduler.run()
    print(result.snapshot.get("http_reqs").total)
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from loadharness import telemetry
from loadharness.durations import format_duration
from loadharness.exceptions import HarnessConfigError, HarnessError
from loadharness.executors import (
    DEFAULT_TICK_SECONDS,
    Clock,
    ScenarioExecutor,
    ScenarioRun,
    build_executor,
)
from loadharness.metrics.point import MetricKind
from loadharness.metrics.registry import SCENARIO_ERRORS, MetricsRegistry, MetricsSnapshot
from loadharness.probe import HttpProbe
from loadharness.scenario import Scenario
from loadharness.thresholds import ThresholdRule, validate_thresholds
from loadharness.workload import Workload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunResult:
    """
    Outcome of one scheduler run.

    Attributes:
        snapshot: Frozen metrics at scheduler stop.
        duration_seconds: Wall-clock time from global start to last join.
        scenarios: Final ScenarioRun per scenario name.
        errors: Scenario name to crash description, for crashed executors.
        cancelled: True when the run was cancelled before its timelines ended.
    """

    snapshot: MetricsSnapshot
    duration_seconds: float
    scenarios: Dict[str, ScenarioRun] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False


def prepare(
    scenarios: Sequence[Scenario],
    workloads: Mapping[str, Workload],
    registry: MetricsRegistry,
    thresholds: Sequence[ThresholdRule] = (),
) -> None:
    """
    Validate a run before any traffic.

    Scenario names must be unique, every ``exec`` must name a known
    workload, and every threshold must reference a declared metric with an
    aggregation valid for its kind. Workload metrics are declared on
    ``registry`` as a side effect.

    Raises:
        HarnessConfigError: On the first problem found.
    """
    if not scenarios:
        raise HarnessConfigError("No scenarios to run", code="empty_plan")
    seen = set()
    for scenario in scenarios:
        if scenario.name in seen:
            raise HarnessConfigError(
                f"Duplicate scenario name {scenario.name!r}",
                code="duplicate_scenario",
                details={"scenario": scenario.name},
            )
        seen.add(scenario.name)
        workload = workloads.get(scenario.exec)
        if workload is None:
            raise HarnessConfigError(
                f"Scenario {scenario.name!r} runs unknown workload {scenario.exec!r}",
                code="unknown_workload",
                details={"scenario": scenario.name, "known": sorted(workloads)},
            )
        workload.declare_metrics(registry)
    validate_thresholds(thresholds, registry.declared())


class Scheduler:
    """
    Owns the scenarios of one run and their executors.

    A scheduler runs once. The registry is created here unless one is
    injected and is frozen when ``run()`` returns.
    """

    def __init__(
        self,
        scenarios: Sequence[Scenario],
        workloads: Mapping[str, Workload],
        *,
        probe: HttpProbe,
        registry: Optional[MetricsRegistry] = None,
        thresholds: Sequence[ThresholdRule] = (),
        seed: Optional[int] = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        self._scenarios = list(scenarios)
        self._workloads = dict(workloads)
        self._probe = probe
        self._registry = registry or MetricsRegistry()
        self._seed = seed
        self._tick = tick_seconds
        self._clock = clock
        self._cancel = threading.Event()
        self._executors: Dict[str, ScenarioExecutor] = {}
        self._runs: Dict[str, ScenarioRun] = {}
        self._errors: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._started = False
        prepare(self._scenarios, self._workloads, self._registry, thresholds)

    @property
    def registry(self) -> MetricsRegistry:
        return self._registry

    @property
    def scenarios(self) -> List[Scenario]:
        return list(self._scenarios)

    @property
    def lifetime(self) -> float:
        """Seconds from global start until the last timeline ends."""
        return max(s.end_offset for s in self._scenarios)

    def state(self, name: str) -> Optional[ScenarioRun]:
        """Live ScenarioRun copy for ``name`` while running, final state after."""
        with self._lock:
            if name in self._runs:
                return self._runs[name]
            executor = self._executors.get(name)
        return executor.state if executor is not None else None

    def cancel(self) -> None:
        """Stop starting iterations in every scenario; in-flight ones drain."""
        if not self._cancel.is_set():
            logger.warning("run cancelled; draining in-flight iterations")
        self._cancel.set()

    def run(self) -> RunResult:
        if self._started:
            raise HarnessError("Scheduler already ran", code="scheduler_reused")
        self._started = True

        names = [s.name for s in self._scenarios]
        telemetry.log(
            "info",
            "run started",
            scenarios=names,
            lifetime=format_duration(self.lifetime),
        )
        with telemetry.span("loadharness.run", scenarios=names, lifetime=self.lifetime):
            global_start = self._clock()
            threads: List[threading.Thread] = []
            for index, scenario in enumerate(self._scenarios):
                executor = build_executor(
                    scenario,
                    self._workloads[scenario.exec],
                    registry=self._registry,
                    probe=self._probe,
                    cancel_event=self._cancel,
                    start_at=global_start + scenario.start_offset,
                    seed=None if self._seed is None else self._seed + index * 10000,
                    tick_seconds=self._tick,
                    clock=self._clock,
                )
                with self._lock:
                    self._executors[scenario.name] = executor
                thread = threading.Thread(
                    target=self._run_slot,
                    args=(executor,),
                    name=f"scenario-{scenario.name}",
                    daemon=True,
                )
                threads.append(thread)
                thread.start()

            try:
                for thread in threads:
                    while thread.is_alive():
                        thread.join(0.2)
            except KeyboardInterrupt:
                self.cancel()
                for thread in threads:
                    thread.join()

            duration = self._clock() - global_start
            snapshot = self._registry.freeze()

        telemetry.log(
            "info",
            "run finished",
            duration=format_duration(duration),
            cancelled=self._cancel.is_set(),
        )
        with self._lock:
            return RunResult(
                snapshot=snapshot,
                duration_seconds=duration,
                scenarios=dict(self._runs),
                errors=dict(self._errors),
                cancelled=self._cancel.is_set(),
            )

    def _run_slot(self, executor: ScenarioExecutor) -> None:
        scenario = executor.scenario
        with telemetry.span(
            "loadharness.scenario",
            scenario=scenario.name,
            executor=scenario.executor.value,
        ):
            try:
                final = executor.run()
            except Exception as exc:  # noqa: BLE001
                logger.exception("scenario %s crashed", scenario.name)
                self._registry.record(
                    SCENARIO_ERRORS,
                    MetricKind.COUNTER,
                    1,
                    {**scenario.metric_tags(), "error": type(exc).__name__},
                )
                final = executor.state
                with self._lock:
                    self._errors[scenario.name] = repr(exc)
            with self._lock:
                self._runs[scenario.name] = final
