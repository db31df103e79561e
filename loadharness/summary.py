"""
Run summary: the frozen outcome of a run plus its renderers.

RunSummary is built once from a RunResult and the threshold rules. Both
renderers read only the summary: rendering the same summary twice gives
byte-identical output.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from loadharness.executors import ScenarioRun
from loadharness.metrics.point import MetricKind
from loadharness.metrics.registry import (
    CHECKS,
    DROPPED_ITERATIONS,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    ITERATIONS,
    ITERATIONS_INTERRUPTED,
    MetricsSnapshot,
)
from loadharness.scheduler import RunResult
from loadharness.thresholds import ThresholdRule, ThresholdVerdict, all_passed, evaluate_thresholds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunSummary:
    """
    Immutable digest of a finished run.

    Attributes:
        snapshot: Frozen metrics.
        duration_seconds: Run wall-clock duration.
        verdicts: Threshold outcomes, in rule order.
        scenarios: Final ScenarioRun per scenario, ordered by name.
        errors: Scenario crash descriptions.
        extra: Additional JSON-safe sections (e.g. a fault experiment report).
    """

    snapshot: MetricsSnapshot
    duration_seconds: float
    verdicts: Tuple[ThresholdVerdict, ...] = ()
    scenarios: Tuple[ScenarioRun, ...] = ()
    errors: Tuple[Tuple[str, str], ...] = ()
    cancelled: bool = False
    extra: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @classmethod
    def from_result(
        cls,
        result: RunResult,
        rules: Sequence[ThresholdRule] = (),
        *,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> "RunSummary":
        verdicts = evaluate_thresholds(rules, result.snapshot, result.duration_seconds)
        return cls(
            snapshot=result.snapshot,
            duration_seconds=result.duration_seconds,
            verdicts=tuple(verdicts),
            scenarios=tuple(result.scenarios[name] for name in sorted(result.scenarios)),
            errors=tuple(sorted(result.errors.items())),
            cancelled=result.cancelled,
            extra=tuple(sorted((extra or {}).items())),
        )

    @property
    def passed(self) -> bool:
        return all_passed(self.verdicts)

    @property
    def failed_verdicts(self) -> List[ThresholdVerdict]:
        return [v for v in self.verdicts if not v.passed]

    def to_dict(self) -> Dict[str, Any]:
        """Nested, JSON-safe form of the summary."""
        out: Dict[str, Any] = {
            "state": {
                "testRunDurationMs": round(self.duration_seconds * 1000.0, 3),
                "cancelled": self.cancelled,
            },
            "metrics": self.snapshot.to_dict(self.duration_seconds),
            "thresholds": [v.to_dict() for v in self.verdicts],
            "scenarios": {run.scenario: _run_dict(run) for run in self.scenarios},
            "errors": dict(self.errors),
            "passed": self.passed,
        }
        for key, value in self.extra:
            out[key] = value
        return out


def _run_dict(run: ScenarioRun) -> Dict[str, Any]:
    data = asdict(run)
    data["executor"] = run.executor.value
    return data


def render_json(summary: RunSummary) -> str:
    """Deterministic JSON artifact (sorted keys, fixed indentation)."""
    return json.dumps(summary.to_dict(), sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def write_summary(summary: RunSummary, path: Union[str, Path]) -> Path:
    """Write the JSON artifact, creating parent directories."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_json(summary), encoding="utf-8")
    logger.info("summary written to %s", target)
    return target


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None:
        return "n/a"
    return f"{value:.{digits}f}"


def render_text(summary: RunSummary) -> str:
    """Human-readable digest for stdout."""
    snap = summary.snapshot
    duration = summary.duration_seconds
    reqs = snap.get(HTTP_REQS, kind=MetricKind.COUNTER)
    failed = snap.get(HTTP_REQ_FAILED, kind=MetricKind.RATE)
    latency = snap.get(HTTP_REQ_DURATION, kind=MetricKind.TREND)
    request_rate = reqs.total / duration if duration > 0 else 0.0

    lines: List[str] = []
    lines.append("=" * 60)
    lines.append("LOAD TEST SUMMARY")
    lines.append("=" * 60)
    lines.append(f"Duration: {_fmt(duration, 1)}s{' (cancelled)' if summary.cancelled else ''}")
    lines.append(f"Total requests: {int(reqs.total)}")
    lines.append(f"Request rate: {_fmt(request_rate)}/s")
    lines.append(f"Failed requests: {_fmt(failed.rate * 100)}%")
    lines.append("")
    lines.append("--- Response Times ---")
    lines.append(
        f"  p50={_fmt(latency.percentile(50))}ms "
        f"p95={_fmt(latency.percentile(95))}ms "
        f"p99={_fmt(latency.percentile(99))}ms"
    )

    checks = snap.get(CHECKS, kind=MetricKind.RATE)
    if checks.count:
        lines.append("")
        lines.append("--- Checks ---")
        names = sorted({dict(g.tags).get("check", "") for g in checks.groups})
        for name in names:
            sub = checks.filter({"check": name})
            mark = "✓" if sub.passes == sub.count else "✗"
            lines.append(f"  {mark} {name}: {sub.passes}/{sub.count} ({_fmt(sub.rate * 100, 1)}%)")

    if summary.scenarios:
        lines.append("")
        lines.append("--- Scenarios ---")
        for run in summary.scenarios:
            scenario_reqs = reqs.filter(run.tags)
            iterations = snap.get(ITERATIONS, run.tags, kind=MetricKind.COUNTER)
            lines.append(
                f"  {run.scenario} [{run.executor.value}]: "
                f"requests={int(scenario_reqs.total)} iterations={int(iterations.total)} "
                f"dropped={run.dropped_iterations} interrupted={run.interrupted_iterations} "
                f"errors={run.workload_errors}"
            )

    dropped = snap.get(DROPPED_ITERATIONS, kind=MetricKind.COUNTER).total
    interrupted = snap.get(ITERATIONS_INTERRUPTED, kind=MetricKind.COUNTER).total
    if dropped or interrupted:
        lines.append("")
        lines.append(f"Dropped iterations: {int(dropped)}")
        lines.append(f"Interrupted iterations: {int(interrupted)}")

    if summary.errors:
        lines.append("")
        lines.append("--- Scenario Errors ---")
        for name, error in summary.errors:
            lines.append(f"  {name}: {error}")

    if summary.verdicts:
        lines.append("")
        lines.append("--- Thresholds ---")
        for verdict in summary.verdicts:
            mark = "✓" if verdict.passed else "✗"
            lines.append(
                f"  {mark} {verdict.rule.key}: {verdict.rule.expression} "
                f"(observed {_fmt(verdict.observed, 4)})"
            )

    lines.append("")
    lines.append(f"Status: {'PASSED' if summary.passed else 'FAILED'}")
    return "\n".join(lines) + "\n"
