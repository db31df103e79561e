"""
Built-in workloads for the reference SUT.

    cpu_heavy       GET /api/cpu?ms=N with N from {50, 100, 200, 500}
    db_heavy        GET /api/db/search, expects a resultCount field
    mixed_load      40% cpu (50-249ms), 30% external, 30% db; status checks only
    external_probe  GET /api/external during a fault experiment

Every workload records the shared ``errors`` Rate (true when any check
failed) plus its endpoint latency Trend, and declares those metrics so
thresholds on them validate before traffic starts.
"""

from __future__ import annotations

from typing import Dict

from loadharness.config import DEFAULT_FALLBACK_MARKER
from loadharness.metrics.point import MetricKind
from loadharness.probe import ProbeResult
from loadharness.workload import ThinkTime, Workload, WorkloadContext

CPU_PATH = "/api/cpu"
DB_PATH = "/api/db/search"
EXTERNAL_PATH = "/api/external"

CPU_MS_CHOICES = (50, 100, 200, 500)
EXTERNAL_STATUSES = (200, 503)

# Custom metric names.
ERRORS = "errors"
CPU_LATENCY = "cpu_latency"
DB_LATENCY = "db_latency"
EXTERNAL_LATENCY = "external_latency"
DB_ERRORS = "db_errors"
EXTERNAL_ERRORS = "external_errors"
FALLBACK_RESPONSES = "fallback_responses"
FALLBACK_RATE = "fallback_rate"


def _cpu_request(ctx: WorkloadContext, ms: int) -> bool:
    res = ctx.probe.get(CPU_PATH, params={"ms": ms}, tags={"endpoint": "cpu"})
    ctx.trend(CPU_LATENCY, res.duration_ms)
    return ctx.check(
        res,
        {
            "cpu status is 200": lambda r: r.status == 200,
            "cpu response time < 10s": lambda r: r.duration_ms < 10000,
        },
    )


def _has_result_count(res: ProbeResult) -> bool:
    body = res.json()
    return isinstance(body, dict) and body.get("resultCount") is not None


def _db_request(ctx: WorkloadContext) -> bool:
    res = ctx.probe.get(DB_PATH, tags={"endpoint": "db"})
    ctx.trend(DB_LATENCY, res.duration_ms)
    ok = ctx.check(
        res,
        {
            "db status is 200": lambda r: r.status == 200,
            "db response time < 30s": lambda r: r.duration_ms < 30000,
            "db has results": _has_result_count,
        },
    )
    if not ok:
        ctx.add(DB_ERRORS)
    return ok


def _external_request(ctx: WorkloadContext) -> bool:
    res = ctx.probe.get(
        EXTERNAL_PATH,
        tags={"endpoint": "external"},
        expected_statuses=EXTERNAL_STATUSES,
    )
    ctx.trend(EXTERNAL_LATENCY, res.duration_ms)
    if res.status == 503:
        ctx.add(EXTERNAL_ERRORS)
    return ctx.check(
        res,
        {"external status is 200 or 503": lambda r: r.status in EXTERNAL_STATUSES},
    )


def cpu_heavy(ctx: WorkloadContext) -> None:
    ok = _cpu_request(ctx, ctx.rng.choice(CPU_MS_CHOICES))
    ctx.rate(ERRORS, not ok)


def db_heavy(ctx: WorkloadContext) -> None:
    ok = _db_request(ctx)
    ctx.rate(ERRORS, not ok)


def mixed_load(ctx: WorkloadContext) -> None:
    # Mixed traffic only checks status codes.
    roll = ctx.rng.random()
    if roll < 0.4:
        res = ctx.probe.get(
            CPU_PATH, params={"ms": ctx.rng.randint(50, 249)}, tags={"endpoint": "cpu"}
        )
        ctx.trend(CPU_LATENCY, res.duration_ms)
        ok = ctx.check(res, {"mixed cpu status is 200": lambda r: r.status == 200})
    elif roll < 0.7:
        ok = _external_request(ctx)
    else:
        res = ctx.probe.get(DB_PATH, tags={"endpoint": "db"})
        ctx.trend(DB_LATENCY, res.duration_ms)
        ok = ctx.check(res, {"mixed db status is 200": lambda r: r.status == 200})
        if not ok:
            ctx.add(DB_ERRORS)
    ctx.rate(ERRORS, not ok)


def make_external_probe(marker: str = DEFAULT_FALLBACK_MARKER) -> Workload:
    """
    Fault-experiment workload.

    A response passes when it is a 200 (normal or degraded) or a 503. A body
    carrying ``marker`` counts as a fallback response.
    """

    def external_probe(ctx: WorkloadContext) -> None:
        res = ctx.probe.get(
            EXTERNAL_PATH,
            tags={"endpoint": "external"},
            expected_statuses=EXTERNAL_STATUSES,
        )
        ctx.trend(EXTERNAL_LATENCY, res.duration_ms)
        fallback = res.contains(marker)
        if fallback:
            ctx.add(FALLBACK_RESPONSES)
        ctx.rate(FALLBACK_RATE, fallback)
        ok = ctx.check(
            res,
            {"status is 200 or 503": lambda r: r.status in EXTERNAL_STATUSES},
        )
        ctx.rate(ERRORS, not ok)

    return Workload(
        name="external_probe",
        fn=external_probe,
        think_time=ThinkTime(1.0, 1.0),
        metrics={
            ERRORS: MetricKind.RATE,
            EXTERNAL_LATENCY: MetricKind.TREND,
            FALLBACK_RESPONSES: MetricKind.COUNTER,
            FALLBACK_RATE: MetricKind.RATE,
        },
    )


BUILTIN_WORKLOADS: Dict[str, Workload] = {
    "cpu_heavy": Workload(
        name="cpu_heavy",
        fn=cpu_heavy,
        think_time=ThinkTime(1.0, 3.0),
        metrics={ERRORS: MetricKind.RATE, CPU_LATENCY: MetricKind.TREND},
    ),
    "db_heavy": Workload(
        name="db_heavy",
        fn=db_heavy,
        think_time=ThinkTime(0.5, 1.5),
        metrics={
            ERRORS: MetricKind.RATE,
            DB_LATENCY: MetricKind.TREND,
            DB_ERRORS: MetricKind.COUNTER,
        },
    ),
    "mixed_load": Workload(
        name="mixed_load",
        fn=mixed_load,
        think_time=ThinkTime(0.0, 0.5),
        metrics={
            ERRORS: MetricKind.RATE,
            CPU_LATENCY: MetricKind.TREND,
            DB_LATENCY: MetricKind.TREND,
            EXTERNAL_LATENCY: MetricKind.TREND,
            DB_ERRORS: MetricKind.COUNTER,
            EXTERNAL_ERRORS: MetricKind.COUNTER,
        },
    ),
    "external_probe": make_external_probe(),
}
