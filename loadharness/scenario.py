"""
Scenario definitions: which workload runs, under which executor, on which
stage timeline.

Scenarios are immutable configuration. Field names follow Python style;
k6-style keys (startTime, startVUs, preAllocatedVUs, ...) are accepted when
loading a JSON plan.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from loadharness.durations import DurationLike, parse_duration
from loadharness.stages import Stage, StageTimeline, scale_stages


class ExecutorKind(str, Enum):
    """Concurrency discipline of a scenario."""

    CLOSED_LOOP = "closed-loop"  # ramping virtual users
    OPEN_LOOP = "open-loop"  # ramping arrival rate


_EXECUTOR_ALIASES = {
    "ramping-vus": ExecutorKind.CLOSED_LOOP,
    "ramping_vus": ExecutorKind.CLOSED_LOOP,
    "closed_loop": ExecutorKind.CLOSED_LOOP,
    "ramping-arrival-rate": ExecutorKind.OPEN_LOOP,
    "ramping_arrival_rate": ExecutorKind.OPEN_LOOP,
    "open_loop": ExecutorKind.OPEN_LOOP,
}


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class Scenario(BaseModel):
    """
    One independently timed load profile.

    Attributes:
        name: Unique scenario name; tagged on every metric it produces.
        executor: Closed-loop (worker count follows stages) or open-loop
            (arrival rate follows stages).
        exec: Name of the workload to run.
        stages: Ramp timeline; targets are workers (closed) or invocations
            per ``time_unit`` (open).
        start_offset: Seconds after the scheduler start before stage one.
        tags: Extra tags attached to every metric of this scenario.
        start_vus: Closed-loop worker count at t=0.
        graceful_ramp_down: Closed-loop grace for workers removed by a ramp.
        graceful_stop: Grace for in-flight iterations at scenario end.
        start_rate: Open-loop rate at t=0.
        time_unit: Open-loop rate unit in seconds.
        pre_allocated_vus: Open-loop workers started up front.
        max_vus: Open-loop pool ceiling (defaults to pre_allocated_vus).
        seed: Base seed for worker random sources.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1)
    executor: ExecutorKind = ExecutorKind.CLOSED_LOOP
    exec: str = Field(..., min_length=1)
    stages: List[Stage] = Field(..., min_length=1)
    start_offset: float = Field(
        default=0.0, ge=0, validation_alias=_alias("start_offset", "startTime")
    )
    tags: Dict[str, str] = Field(default_factory=dict)

    start_vus: int = Field(default=0, ge=0, validation_alias=_alias("start_vus", "startVUs"))
    graceful_ramp_down: float = Field(
        default=30.0, ge=0, validation_alias=_alias("graceful_ramp_down", "gracefulRampDown")
    )
    graceful_stop: float = Field(
        default=30.0, ge=0, validation_alias=_alias("graceful_stop", "gracefulStop")
    )

    start_rate: float = Field(default=0.0, ge=0, validation_alias=_alias("start_rate", "startRate"))
    time_unit: float = Field(default=1.0, gt=0, validation_alias=_alias("time_unit", "timeUnit"))
    pre_allocated_vus: int = Field(
        default=1, ge=1, validation_alias=_alias("pre_allocated_vus", "preAllocatedVUs")
    )
    max_vus: Optional[int] = Field(default=None, ge=1, validation_alias=_alias("max_vus", "maxVUs"))

    seed: Optional[int] = None

    @field_validator("executor", mode="before")
    @classmethod
    def _executor_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _EXECUTOR_ALIASES.get(value.strip().lower(), value)
        return value

    @field_validator(
        "start_offset", "graceful_ramp_down", "graceful_stop", "time_unit", mode="before"
    )
    @classmethod
    def _durations(cls, value: DurationLike) -> float:
        return parse_duration(value)

    @model_validator(mode="after")
    def _check_pool(self) -> "Scenario":
        if self.max_vus is not None and self.max_vus < self.pre_allocated_vus:
            raise ValueError(
                f"max_vus ({self.max_vus}) must be >= pre_allocated_vus ({self.pre_allocated_vus})"
            )
        if self.executor is ExecutorKind.CLOSED_LOOP:
            for stage in self.stages:
                if stage.target != int(stage.target):
                    raise ValueError("closed-loop stage targets must be whole worker counts")
        return self

    @property
    def pool_size(self) -> int:
        return self.max_vus if self.max_vus is not None else self.pre_allocated_vus

    @property
    def duration(self) -> float:
        """Length of the stage timeline in seconds."""
        return self.timeline().duration

    @property
    def end_offset(self) -> float:
        """Seconds after scheduler start when this scenario's timeline ends."""
        return self.start_offset + self.duration

    def timeline(self) -> StageTimeline:
        """
        Stage timeline in executor units: workers, or invocations per second.
        """
        if self.executor is ExecutorKind.OPEN_LOOP:
            per_second = [
                Stage(duration=s.duration, target=s.target / self.time_unit) for s in self.stages
            ]
            return StageTimeline(per_second, start=self.start_rate / self.time_unit)
        return StageTimeline(self.stages, start=float(self.start_vus))

    def metric_tags(self) -> Dict[str, str]:
        """Tags on every metric of this scenario; a "scenario" tag overrides the name."""
        return {"scenario": self.name, **self.tags}

    def scaled(self, factor: float) -> "Scenario":
        """Copy with every duration multiplied by ``factor`` (smoke runs)."""
        return self.model_copy(
            update={
                "stages": scale_stages(self.stages, factor),
                "start_offset": self.start_offset * factor,
                "graceful_ramp_down": self.graceful_ramp_down * factor,
                "graceful_stop": self.graceful_stop * factor,
            }
        )
