"""
Load plans: scenarios, thresholds and an optional fault experiment.

A plan is declared in Python (``default_plan()``, ``circuit_breaker_plan()``)
or loaded from JSON shaped like k6 ``options``:

    {
      "scenarios": {
        "cpu_saturation": {
          "executor": "ramping-vus",
          "exec": "cpu_heavy",
          "stages": [{"duration": "30s", "target": 10}],
          "tags": {"scenario": "cpu"}
        }
      },
      "thresholds": {"http_req_duration": ["p(95)<5000"]}
    }

Threshold values are policy: the defaults below match the reference SUT
profile and can be replaced per plan.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from loadharness.config import DEFAULT_FALLBACK_MARKER
from loadharness.exceptions import HarnessConfigError
from loadharness.fault_injection import (
    BASELINE_CONFIG,
    CONFIGURE_PATH,
    ELEVATED_CONFIG,
    FaultInjectionConfig,
)
from loadharness.scenario import ExecutorKind, Scenario
from loadharness.stages import Stage
from loadharness.thresholds import ThresholdRule, parse_thresholds
from loadharness.workload import Workload
from loadharness.workloads import BUILTIN_WORKLOADS, make_external_probe


class FaultExperiment(BaseModel):
    """Elevated and baseline SUT configs for a circuit-breaker run."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    elevated: FaultInjectionConfig = ELEVATED_CONFIG
    baseline: FaultInjectionConfig = BASELINE_CONFIG
    configure_path: str = CONFIGURE_PATH
    fallback_marker: str = DEFAULT_FALLBACK_MARKER


class LoadPlan(BaseModel):
    """
    Everything a run needs besides the SUT address.

    ``scenarios`` may be given as a list or as a k6-style mapping of
    name -> scenario config.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = "load"
    scenarios: List[Scenario] = Field(..., min_length=1)
    thresholds: Dict[str, List[str]] = Field(default_factory=dict)
    fault: Optional[FaultExperiment] = None
    seed: Optional[int] = None

    @field_validator("scenarios", mode="before")
    @classmethod
    def _scenario_mapping(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            out = []
            for name, config in value.items():
                if isinstance(config, Mapping):
                    config = {"name": name, **config}
                out.append(config)
            return out
        return value

    @field_validator("thresholds", mode="before")
    @classmethod
    def _threshold_lists(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {k: [v] if isinstance(v, str) else v for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _check(self) -> "LoadPlan":
        names = [s.name for s in self.scenarios]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate scenario names: {', '.join(duplicates)}")
        # Surface malformed expressions as validation errors.
        try:
            parse_thresholds(self.thresholds)
        except HarnessConfigError as exc:
            raise ValueError(exc.message) from exc
        return self

    def rules(self) -> List[ThresholdRule]:
        return parse_thresholds(self.thresholds)

    @property
    def duration(self) -> float:
        """Seconds until the last scenario timeline ends."""
        return max(s.end_offset for s in self.scenarios)

    def workloads(self) -> Dict[str, Workload]:
        """Built-in workloads, with the external probe bound to this plan's marker."""
        workloads = dict(BUILTIN_WORKLOADS)
        if self.fault is not None:
            workloads["external_probe"] = make_external_probe(self.fault.fallback_marker)
        return workloads

    def select(self, names: Sequence[str]) -> "LoadPlan":
        """
        Keep only ``names``, shifting offsets so the earliest kept scenario
        starts immediately.

        Raises:
            HarnessConfigError: If a name is not in the plan.
        """
        known = {s.name for s in self.scenarios}
        missing = [n for n in names if n not in known]
        if missing:
            raise HarnessConfigError(
                f"Unknown scenario(s): {', '.join(missing)}",
                code="unknown_scenario",
                details={"known": sorted(known)},
            )
        kept = [s for s in self.scenarios if s.name in set(names)]
        shift = min(s.start_offset for s in kept)
        kept = [s.model_copy(update={"start_offset": s.start_offset - shift}) for s in kept]
        return self.model_copy(update={"scenarios": kept})

    def scaled(self, factor: float) -> "LoadPlan":
        """Multiply every duration by ``factor`` (e.g. 0.1 for a smoke run)."""
        if factor <= 0:
            raise HarnessConfigError("time scale must be positive", code="invalid_time_scale")
        return self.model_copy(update={"scenarios": [s.scaled(factor) for s in self.scenarios]})


def load_plan(path: Union[str, Path]) -> LoadPlan:
    """
    Read a JSON plan file.

    Raises:
        HarnessConfigError: If the file is missing, not JSON, or invalid.
    """
    plan_path = Path(path)
    try:
        raw = json.loads(plan_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise HarnessConfigError(
            f"Cannot read plan {plan_path}: {exc}",
            code="plan_unreadable",
            details={"path": str(plan_path)},
        ) from exc
    except ValueError as exc:
        raise HarnessConfigError(
            f"Plan {plan_path} is not valid JSON: {exc}",
            code="invalid_plan",
            details={"path": str(plan_path)},
        ) from exc
    return plan_from_dict(raw, source=str(plan_path))


def plan_from_dict(data: Any, *, source: str = "<plan>") -> LoadPlan:
    try:
        return LoadPlan.model_validate(data)
    except ValidationError as exc:
        raise HarnessConfigError(
            f"Invalid plan {source}: {exc.error_count()} error(s)",
            code="invalid_plan",
            details={
                "path": source,
                "errors": [
                    {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                    for err in exc.errors()
                ],
            },
        ) from exc


DEFAULT_THRESHOLDS: Dict[str, List[str]] = {
    "http_req_duration": ["p(95)<5000", "p(99)<10000"],
    "http_req_failed": ["rate<0.15"],
    "errors": ["rate<0.15"],
}


def _ramp(rise: str, hold: str, fall: str, target: int) -> List[Stage]:
    return [
        Stage(duration=rise, target=target),
        Stage(duration=hold, target=target),
        Stage(duration=fall, target=0),
    ]


def default_plan() -> LoadPlan:
    """CPU saturation, then DB saturation, then mixed open-loop traffic."""
    return LoadPlan(
        name="saturation",
        scenarios=[
            Scenario(
                name="cpu_saturation",
                executor=ExecutorKind.CLOSED_LOOP,
                exec="cpu_heavy",
                stages=_ramp("30s", "1m", "30s", 10),
                graceful_ramp_down=10,
                tags={"scenario": "cpu"},
            ),
            Scenario(
                name="db_saturation",
                executor=ExecutorKind.CLOSED_LOOP,
                exec="db_heavy",
                stages=_ramp("30s", "1m", "30s", 5),
                graceful_ramp_down=10,
                start_offset=150,
                tags={"scenario": "database"},
            ),
            Scenario(
                name="mixed_load",
                executor=ExecutorKind.OPEN_LOOP,
                exec="mixed_load",
                start_rate=10,
                pre_allocated_vus=50,
                max_vus=100,
                stages=[
                    Stage(duration="1m", target=50),
                    Stage(duration="2m", target=100),
                    Stage(duration="1m", target=100),
                    Stage(duration="30s", target=0),
                ],
                start_offset=300,
                tags={"scenario": "mixed"},
            ),
        ],
        thresholds=DEFAULT_THRESHOLDS,
    )


def circuit_breaker_plan(
    *,
    marker: str = DEFAULT_FALLBACK_MARKER,
    elevated: FaultInjectionConfig = ELEVATED_CONFIG,
    baseline: FaultInjectionConfig = BASELINE_CONFIG,
) -> LoadPlan:
    """Probe /api/external while the SUT's dependency fails 60% of calls."""
    return LoadPlan(
        name="circuit_breaker",
        scenarios=[
            Scenario(
                name="circuit_breaker",
                executor=ExecutorKind.CLOSED_LOOP,
                exec="external_probe",
                stages=[
                    Stage(duration="30s", target=5),
                    Stage(duration="1m", target=10),
                    Stage(duration="30s", target=0),
                ],
                tags={"scenario": "circuit_breaker"},
            )
        ],
        thresholds={"http_req_duration": ["p(95)<3000"]},
        fault=FaultExperiment(elevated=elevated, baseline=baseline, fallback_marker=marker),
    )
