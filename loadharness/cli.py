from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional, Sequence

from dotenv import load_dotenv

from loadharness import telemetry
from loadharness.config import Settings, get_settings
from loadharness.exceptions import ControllerError, HarnessConfigError, HarnessError
from loadharness.fault_injection import FaultInjectionController
from loadharness.metrics.registry import MetricsRegistry
from loadharness.plan import LoadPlan, circuit_breaker_plan, default_plan, load_plan
from loadharness.preflight import run_preflight
from loadharness.probe import HttpProbe
from loadharness.scheduler import RunResult, Scheduler
from loadharness.summary import RunSummary, render_text, write_summary

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="loadharness",
        description="Drive load profiles and fault experiments against an HTTP service.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a load plan and evaluate its thresholds.")
    run.add_argument("--plan", help="JSON plan file (default: built-in saturation plan).")
    run.add_argument("--base-url", help="SUT base URL (default: LOADHARNESS_BASE_URL).")
    run.add_argument("--summary", help="Summary JSON path (default: load/summary.json).")
    run.add_argument(
        "--scenario",
        action="append",
        default=[],
        metavar="NAME",
        help="Run only this scenario (repeatable).",
    )
    run.add_argument(
        "--time-scale",
        type=float,
        default=1.0,
        help="Multiply every duration (0.1 for a smoke run).",
    )
    run.add_argument("--seed", type=int, help="Seed for think-time and request mix.")
    run.add_argument(
        "--no-resolve", action="store_true", help="Skip the DNS check on the SUT host."
    )

    fault = sub.add_parser(
        "fault-experiment",
        help="Elevate SUT faults, probe the fallback endpoint, restore.",
    )
    fault.add_argument("--plan", help="JSON plan file with a 'fault' section.")
    fault.add_argument("--base-url", help="SUT base URL (default: LOADHARNESS_BASE_URL).")
    fault.add_argument("--summary", help="Summary JSON path (default: load/summary.json).")
    fault.add_argument(
        "--duration",
        type=float,
        help="Stretch or shrink the probing stage to this many seconds.",
    )
    fault.add_argument("--seed", type=int, help="Seed for think-time.")
    fault.add_argument(
        "--no-resolve", action="store_true", help="Skip the DNS check on the SUT host."
    )

    validate = sub.add_parser("validate", help="Validate a plan without sending traffic.")
    validate.add_argument("--plan", help="JSON plan file (default: built-in saturation plan).")
    validate.add_argument("--base-url", help="SUT base URL to check.")
    validate.add_argument(
        "--resolve", action="store_true", help="Also check the SUT host resolves."
    )
    return parser.parse_args(argv)


def _configure_logging(settings: Settings) -> None:
    # stdout carries the summary only.
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    telemetry.configure()


def _resolve_plan(args: argparse.Namespace, fallback: LoadPlan) -> LoadPlan:
    plan = load_plan(args.plan) if args.plan else fallback
    names: List[str] = getattr(args, "scenario", None) or []
    if names:
        plan = plan.select(names)
    scale = getattr(args, "time_scale", 1.0)
    if scale != 1.0:
        plan = plan.scaled(scale)
    return plan


def _preflight(base_url: str, plan: LoadPlan, *, resolve: bool) -> None:
    report = run_preflight(base_url, plan, resolve=resolve)
    report.raise_for_errors()


def _finish(summary: RunSummary, summary_path: str) -> None:
    sys.stdout.write(render_text(summary))
    sys.stdout.flush()
    write_summary(summary, summary_path)


def _cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    plan = _resolve_plan(args, default_plan())
    base_url = (args.base_url or settings.base_url).rstrip("/")
    _preflight(base_url, plan, resolve=not args.no_resolve)
    rules = plan.rules()
    seed = args.seed if args.seed is not None else plan.seed if plan.seed is not None else settings.seed

    with HttpProbe(base_url, timeout=settings.http_timeout_seconds) as probe:
        scheduler = Scheduler(
            plan.scenarios,
            plan.workloads(),
            probe=probe,
            thresholds=rules,
            seed=seed,
        )
        result = scheduler.run()

    summary = RunSummary.from_result(result, rules)
    _finish(summary, args.summary or settings.summary_path)
    return EXIT_OK if summary.passed else EXIT_FAILED


def _cmd_fault_experiment(args: argparse.Namespace, settings: Settings) -> int:
    plan = _resolve_plan(args, circuit_breaker_plan(marker=settings.fallback_marker))
    if plan.fault is None:
        raise HarnessConfigError(
            "Plan has no 'fault' section", code="missing_fault_config"
        )
    if args.duration is not None:
        if args.duration <= 0:
            raise HarnessConfigError("--duration must be positive", code="invalid_duration")
        if plan.duration <= 0:
            raise HarnessConfigError(
                "Cannot stretch a plan whose timeline is empty",
                code="empty_timeline",
                details={"plan": plan.name},
            )
        plan = plan.scaled(args.duration / plan.duration)
    base_url = (args.base_url or settings.base_url).rstrip("/")
    _preflight(base_url, plan, resolve=not args.no_resolve)
    rules = plan.rules()
    seed = args.seed if args.seed is not None else plan.seed if plan.seed is not None else settings.seed
    registry = MetricsRegistry()

    with HttpProbe(base_url, timeout=settings.http_timeout_seconds) as probe:
        controller = FaultInjectionController(
            probe,
            elevated=plan.fault.elevated,
            baseline=plan.fault.baseline,
            configure_path=plan.fault.configure_path,
        )
        report = controller.run_experiment(
            plan.scenarios,
            plan.workloads(),
            registry=registry,
            thresholds=rules,
            seed=seed,
        )

    result = report.result or RunResult(snapshot=registry.freeze(), duration_seconds=0.0)
    summary = RunSummary.from_result(
        result, rules, extra={"fault_experiment": report.to_dict()}
    )
    _finish(summary, args.summary or settings.summary_path)
    if report.error is not None:
        print(f"fault experiment failed: {report.error.message}", file=sys.stderr)
        return EXIT_FAILED
    return EXIT_OK if summary.passed else EXIT_FAILED


def _cmd_validate(args: argparse.Namespace, settings: Settings) -> int:
    plan = load_plan(args.plan) if args.plan else default_plan()
    base_url = (args.base_url or settings.base_url).rstrip("/")
    report = run_preflight(base_url, plan, resolve=args.resolve)
    print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    return EXIT_OK if report.passed else EXIT_CONFIG


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    try:
        settings = get_settings()
        _configure_logging(settings)
        if args.command == "run":
            return _cmd_run(args, settings)
        if args.command == "fault-experiment":
            return _cmd_fault_experiment(args, settings)
        return _cmd_validate(args, settings)
    except HarnessConfigError as exc:
        print(f"configuration error: {exc.message}", file=sys.stderr)
        if exc.details:
            print(json.dumps(exc.details, indent=2, default=str), file=sys.stderr)
        return EXIT_CONFIG
    except ControllerError as exc:
        print(f"controller error: {exc.message}", file=sys.stderr)
        return EXIT_FAILED
    except HarnessError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
