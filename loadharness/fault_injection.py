"""
Fault-injection controller for circuit-breaker experiments.

Sequential state machine:

    IDLE -> CONFIGURING -> PROBING -> RESTORING -> DONE
                 |                        ^
                 +---- (rejected) --------+

CONFIGURING posts the elevated FaultInjectionConfig to the SUT admin
endpoint; anything but a 2xx is fatal (ControllerError). PROBING runs a
closed-loop scenario against the fallback-sensitive endpoint. RESTORING
posts the baseline config and runs on every exit path once a configure
request has been sent, including a rejected configure, check failures and
exceptions from the probing body. It runs exactly once per experiment.

Only one controller may drive a given SUT at a time; a second controller
for the same base URL fails with ControllerError(code="controller_busy").

Usage:
    controller = FaultInjectionController(probe)
    with controller.elevated():
        result = scheduler.run()

    # or, end to end:
    report = controller.run_experiment(plan.scenarios, workloads)
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from loadharness import telemetry
from loadharness.exceptions import ControllerError
from loadharness.metrics.registry import MetricsRegistry
from loadharness.probe import HttpProbe, ProbeRequest, ProbeResult
from loadharness.scenario import Scenario
from loadharness.scheduler import RunResult, Scheduler
from loadharness.thresholds import ThresholdRule
from loadharness.workload import Workload

logger = logging.getLogger(__name__)

CONFIGURE_PATH = "/admin/mock/configure"


class FaultInjectionConfig(BaseModel):
    """Failure rate and added delay the SUT applies to its dependency calls."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    failure_rate: float = Field(
        ..., ge=0.0, le=1.0, validation_alias=AliasChoices("failure_rate", "failureRate")
    )
    delay_ms: int = Field(..., ge=0, validation_alias=AliasChoices("delay_ms", "delayMs"))

    def payload(self) -> Dict[str, Any]:
        """Wire body for the SUT admin endpoint."""
        return {"failureRate": self.failure_rate, "delayMs": self.delay_ms}


ELEVATED_CONFIG = FaultInjectionConfig(failure_rate=0.6, delay_ms=100)
BASELINE_CONFIG = FaultInjectionConfig(failure_rate=0.1, delay_ms=50)


class ControllerState(str, Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    PROBING = "probing"
    RESTORING = "restoring"
    DONE = "done"


_ACTIVE_TARGETS: Set[str] = set()
_ACTIVE_LOCK = threading.Lock()


@dataclass
class ExperimentReport:
    """
    What happened during one experiment.

    Attributes:
        elevated: Config sent in CONFIGURING.
        baseline: Config sent in RESTORING.
        states: Every state entered, in order.
        configured: True when the SUT acknowledged the elevated config.
        restore_calls: Restore requests sent (1 once a configure was attempted).
        restore_status: HTTP status of the restore request.
        result: Scheduler outcome of the probing stage, if it ran.
        error: Fatal controller error, if any.
    """

    elevated: FaultInjectionConfig
    baseline: FaultInjectionConfig
    states: List[ControllerState] = field(default_factory=list)
    configured: bool = False
    restore_calls: int = 0
    restore_status: Optional[int] = None
    result: Optional[RunResult] = None
    error: Optional[ControllerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "elevated": self.elevated.payload(),
            "baseline": self.baseline.payload(),
            "states": [s.value for s in self.states],
            "configured": self.configured,
            "restore_calls": self.restore_calls,
            "restore_status": self.restore_status,
            "error": self.error.to_dict() if self.error else None,
        }


class FaultInjectionController:
    """
    Drives one SUT through configure -> probe -> restore.

    Admin requests go through ``probe`` directly; give it no registry so
    they stay out of the run metrics.
    """

    def __init__(
        self,
        probe: HttpProbe,
        *,
        elevated: FaultInjectionConfig = ELEVATED_CONFIG,
        baseline: FaultInjectionConfig = BASELINE_CONFIG,
        configure_path: str = CONFIGURE_PATH,
        timeout: Optional[float] = None,
    ) -> None:
        self._probe = probe
        self._elevated = elevated
        self._baseline = baseline
        self._configure_path = configure_path
        self._timeout = timeout
        self._state = ControllerState.IDLE
        self._states: List[ControllerState] = []
        self._restore_calls = 0
        self._restore_status: Optional[int] = None
        self._configured = False

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def states(self) -> List[ControllerState]:
        return list(self._states)

    @property
    def restore_calls(self) -> int:
        return self._restore_calls

    @property
    def target(self) -> str:
        return self._probe.base_url

    def _transition(self, state: ControllerState) -> None:
        telemetry.log(
            "info",
            "fault controller transition",
            target=self.target,
            previous=self._state.value,
            state=state.value,
        )
        self._state = state
        self._states.append(state)

    def _acquire_target(self) -> None:
        with _ACTIVE_LOCK:
            if self.target in _ACTIVE_TARGETS:
                raise ControllerError(
                    f"Another fault experiment is already running against {self.target}",
                    phase=self._state.value,
                    code="controller_busy",
                    details={"target": self.target},
                )
            _ACTIVE_TARGETS.add(self.target)

    def _release_target(self) -> None:
        with _ACTIVE_LOCK:
            _ACTIVE_TARGETS.discard(self.target)

    def _send(self, config: FaultInjectionConfig) -> ProbeResult:
        return self._probe.probe(
            ProbeRequest(
                method="POST",
                path=self._configure_path,
                json_body=config.payload(),
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
                tags={"phase": self._state.value},
            )
        )

    def _configure(self) -> ProbeResult:
        with telemetry.span("loadharness.fault.configure", target=self.target):
            result = self._send(self._elevated)
        if not 200 <= result.status < 300:
            raise ControllerError(
                f"SUT did not acknowledge fault configuration (status {result.status})",
                phase=ControllerState.CONFIGURING.value,
                status_code=result.status,
                code="configure_rejected",
                details={"error": result.error} if result.error else None,
            )
        self._configured = True
        logger.info(
            "fault injection elevated: failureRate=%s delayMs=%s",
            self._elevated.failure_rate,
            self._elevated.delay_ms,
        )
        return result

    def _restore(self, *, strict: bool) -> None:
        if self._restore_calls:
            return
        self._transition(ControllerState.RESTORING)
        self._restore_calls += 1
        with telemetry.span("loadharness.fault.restore", target=self.target):
            result = self._send(self._baseline)
        self._restore_status = result.status
        if 200 <= result.status < 300:
            logger.info(
                "fault injection restored: failureRate=%s delayMs=%s",
                self._baseline.failure_rate,
                self._baseline.delay_ms,
            )
            return
        logger.error(
            "restore of %s failed with status %s; SUT may keep elevated faults",
            self.target,
            result.status,
        )
        if strict:
            raise ControllerError(
                f"SUT did not acknowledge baseline restore (status {result.status})",
                phase=ControllerState.RESTORING.value,
                status_code=result.status,
                code="restore_rejected",
            )

    @contextmanager
    def elevated(self) -> Iterator[ProbeResult]:
        """
        Hold the SUT in the elevated fault state for the ``with`` body.

        Yields the acknowledged configure response. Restore runs when the
        body exits for any reason, or right after a rejected configure.

        Raises:
            ControllerError: configure rejected, restore rejected (only when
                nothing else failed), or another controller holds the SUT.
        """
        self._acquire_target()
        self._state = ControllerState.IDLE
        self._states = []
        self._restore_calls = 0
        self._restore_status = None
        self._configured = False
        try:
            self._transition(ControllerState.CONFIGURING)
            try:
                ack = self._configure()
                self._transition(ControllerState.PROBING)
                yield ack
            except BaseException:
                self._restore(strict=False)
                raise
            self._restore(strict=True)
        finally:
            self._transition(ControllerState.DONE)
            self._release_target()

    def run_experiment(
        self,
        scenarios: Sequence[Scenario],
        workloads: Mapping[str, Workload],
        *,
        probe: Optional[HttpProbe] = None,
        registry: Optional[MetricsRegistry] = None,
        thresholds: Sequence[ThresholdRule] = (),
        seed: Optional[int] = None,
    ) -> ExperimentReport:
        """
        Configure, run ``scenarios`` as the probing stage, restore.

        Plan errors surface as HarnessConfigError before the SUT is touched.
        Controller failures are captured in the report, not raised.
        """
        scheduler = Scheduler(
            scenarios,
            workloads,
            probe=probe or self._probe,
            registry=registry,
            thresholds=thresholds,
            seed=seed,
        )
        report = ExperimentReport(elevated=self._elevated, baseline=self._baseline)
        try:
            with self.elevated():
                report.result = scheduler.run()
        except ControllerError as exc:
            logger.error("fault experiment aborted: %s", exc.message)
            report.error = exc
        report.states = self.states
        report.configured = self._configured
        report.restore_calls = self._restore_calls
        report.restore_status = self._restore_status
        return report
