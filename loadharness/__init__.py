"""
loadharness - Shape HTTP load into scenarios, judge it with thresholds.

Run a plan:
    from loadharness import HttpProbe, RunSummary, Scheduler, default_plan, render_text

    plan = default_plan().scaled(0.1)
    with HttpProbe("http://localhost:8080") as probe:
        result = Scheduler(plan.scenarios, plan.workloads(), probe=probe,
                           thresholds=plan.rules()).run()
    summary = RunSummary.from_result(result, plan.rules())
    print(render_text(summary))

Circuit-breaker experiment:
    from loadharness import FaultInjectionController, circuit_breaker_plan

    plan = circuit_breaker_plan()
    with HttpProbe("http://localhost:8080") as probe:
        report = FaultInjectionController(probe).run_experiment(
            plan.scenarios, plan.workloads(), thresholds=plan.rules()
        )

Command line:
    loadharness run --time-scale 0.1
    loadharness fault-experiment --duration 60
    loadharness validate --plan plan.json
"""

# =============================================================================
# Core API
# =============================================================================
from loadharness.scheduler import RunResult, Scheduler  # noqa: F401
from loadharness.plan import (  # noqa: F401
    LoadPlan,
    circuit_breaker_plan,
    default_plan,
    load_plan,
)
from loadharness.summary import RunSummary, render_json, render_text, write_summary  # noqa: F401
from loadharness.fault_injection import (  # noqa: F401
    ControllerState,
    ExperimentReport,
    FaultInjectionConfig,
    FaultInjectionController,
)

# =============================================================================
# Building blocks
# =============================================================================
from loadharness.metrics import MetricKind, MetricsRegistry, MetricsSnapshot  # noqa: F401
from loadharness.probe import HttpProbe, ProbeRequest, ProbeResult  # noqa: F401
from loadharness.scenario import ExecutorKind, Scenario  # noqa: F401
from loadharness.stages import Stage, StageTimeline  # noqa: F401
from loadharness.executors import (  # noqa: F401
    ClosedLoopExecutor,
    OpenLoopExecutor,
    ScenarioRun,
)
from loadharness.thresholds import ThresholdRule, ThresholdVerdict, parse_thresholds  # noqa: F401
from loadharness.workload import ThinkTime, Workload, WorkloadContext  # noqa: F401
from loadharness.workloads import BUILTIN_WORKLOADS  # noqa: F401
from loadharness.checks import check  # noqa: F401

# Exceptions
from loadharness.exceptions import (  # noqa: F401
    ControllerError,
    HarnessConfigError,
    HarnessError,
    WorkloadError,
)

__version__ = "0.1.0"

__all__ = [
    # Run
    "Scheduler",
    "RunResult",
    "LoadPlan",
    "default_plan",
    "circuit_breaker_plan",
    "load_plan",
    "RunSummary",
    "render_text",
    "render_json",
    "write_summary",
    # Fault injection
    "FaultInjectionController",
    "FaultInjectionConfig",
    "ControllerState",
    "ExperimentReport",
    # Building blocks
    "MetricKind",
    "MetricsRegistry",
    "MetricsSnapshot",
    "HttpProbe",
    "ProbeRequest",
    "ProbeResult",
    "Scenario",
    "ExecutorKind",
    "Stage",
    "StageTimeline",
    "ScenarioRun",
    "ClosedLoopExecutor",
    "OpenLoopExecutor",
    "ThresholdRule",
    "ThresholdVerdict",
    "parse_thresholds",
    "Workload",
    "WorkloadContext",
    "ThinkTime",
    "BUILTIN_WORKLOADS",
    "check",
    # Exceptions
    "HarnessError",
    "HarnessConfigError",
    "ControllerError",
    "WorkloadError",
]
