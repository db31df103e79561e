"""
Stage timelines: piecewise-linear ramps of a target level over time.

A timeline starts at ``start`` and moves linearly to each stage's target
over that stage's duration. Closed-loop executors read the level as a
worker count; open-loop executors read it as an arrival rate and use the
integral to decide when the n-th invocation is due.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from loadharness.durations import DurationLike, parse_duration


class Stage(BaseModel):
    """One ramp segment: reach ``target`` after ``duration`` seconds."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    duration: float = Field(..., ge=0)
    target: float = Field(..., ge=0)

    @field_validator("duration", mode="before")
    @classmethod
    def _parse_duration(cls, value: DurationLike) -> float:
        return parse_duration(value)

    def scaled(self, factor: float) -> "Stage":
        return Stage(duration=self.duration * factor, target=self.target)


@dataclass(frozen=True)
class _Segment:
    t0: float
    duration: float
    v0: float
    v1: float
    area_before: float

    @property
    def t1(self) -> float:
        return self.t0 + self.duration

    @property
    def area(self) -> float:
        return (self.v0 + self.v1) * self.duration / 2.0


class StageTimeline:
    """
    Piecewise-linear level over time.

    Zero-duration stages are dropped: they neither consume time nor move
    the level.

    Example:
        timeline = StageTimeline([Stage(duration=30, target=10)], start=0)
        timeline.value_at(15)      # 5.0
        timeline.integral(30)      # 150.0
    """

    def __init__(self, stages: Sequence[Stage], start: float = 0.0) -> None:
        if start < 0:
            raise ValueError("start level must be non-negative")
        self._start = float(start)
        self._segments: List[_Segment] = []
        t = 0.0
        level = self._start
        area = 0.0
        for stage in stages:
            if stage.duration <= 0:
                continue
            seg = _Segment(
                t0=t,
                duration=stage.duration,
                v0=level,
                v1=float(stage.target),
                area_before=area,
            )
            self._segments.append(seg)
            area += seg.area
            t = seg.t1
            level = seg.v1
        self._total = t
        self._total_area = area

    @property
    def start(self) -> float:
        return self._start

    @property
    def duration(self) -> float:
        """Total timeline length in seconds."""
        return self._total

    @property
    def boundaries(self) -> List[Tuple[float, float]]:
        """(end time, target) for each non-empty stage."""
        return [(seg.t1, seg.v1) for seg in self._segments]

    def stage_index_at(self, t: float) -> int:
        """Index of the segment active at ``t`` (last index once finished)."""
        for i, seg in enumerate(self._segments):
            if t < seg.t1:
                return i
        return max(0, len(self._segments) - 1)

    def value_at(self, t: float) -> float:
        """Interpolated level at ``t`` seconds from the timeline start."""
        if not self._segments:
            return 0.0
        if t <= 0:
            return self._start
        for seg in self._segments:
            if t < seg.t1:
                frac = (t - seg.t0) / seg.duration
                return seg.v0 + (seg.v1 - seg.v0) * frac
        return self._segments[-1].v1

    def integral(self, t: float) -> float:
        """Area under the level curve from 0 to ``t``."""
        if t <= 0:
            return 0.0
        for seg in self._segments:
            if t < seg.t1:
                x = t - seg.t0
                slope = (seg.v1 - seg.v0) / seg.duration
                return seg.area_before + seg.v0 * x + slope * x * x / 2.0
        return self._total_area

    def time_for_integral(self, area: float) -> Optional[float]:
        """
        Earliest time at which ``integral(t) >= area``.

        Returns None when the timeline never accumulates that much.
        """
        if area <= 0:
            return 0.0
        if area > self._total_area + 1e-9:
            return None
        for seg in self._segments:
            if area > seg.area_before + seg.area + 1e-9:
                continue
            remaining = area - seg.area_before
            slope = (seg.v1 - seg.v0) / seg.duration
            if abs(slope) < 1e-12:
                if seg.v0 <= 0:
                    continue
                return seg.t0 + min(remaining / seg.v0, seg.duration)
            # slope/2 * x^2 + v0 * x - remaining = 0
            disc = seg.v0 * seg.v0 + 2.0 * slope * remaining
            x = (-seg.v0 + math.sqrt(max(0.0, disc))) / slope
            return seg.t0 + min(max(x, 0.0), seg.duration)
        return None


def scale_stages(stages: Sequence[Stage], factor: float) -> List[Stage]:
    """Stretch or shrink every stage duration by ``factor``."""
    return [stage.scaled(factor) for stage in stages]
