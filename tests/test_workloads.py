"""Tests for the built-in workloads against the mock SUT."""

import random

import httpx

from loadharness.metrics import MetricsRegistry
from loadharness.probe import HttpProbe
from loadharness.workload import WorkloadContext
from loadharness.workloads import (
    BUILTIN_WORKLOADS,
    CPU_MS_CHOICES,
    CPU_PATH,
    DB_ERRORS,
    DB_PATH,
    ERRORS,
    EXTERNAL_ERRORS,
    EXTERNAL_PATH,
    FALLBACK_RATE,
    FALLBACK_RESPONSES,
    cpu_heavy,
    db_heavy,
    make_external_probe,
    mixed_load,
)


def make_ctx(probe, registry, seed=0):
    return WorkloadContext(
        scenario="s",
        worker_id=0,
        probe=probe.with_tags({"scenario": "s"}, registry=registry),
        metrics=registry,
        rng=random.Random(seed),
        tags={"scenario": "s"},
    )


def static_probe(handler):
    return HttpProbe("http://sut.test", transport=httpx.MockTransport(handler))


class TestCpuHeavy:
    def test_requests_known_durations(self, sut):
        registry = MetricsRegistry()
        ctx = make_ctx(sut.probe(), registry)
        for _ in range(20):
            cpu_heavy(ctx)
        assert set(sut.paths) == {CPU_PATH}
        snap = registry.snapshot()
        assert snap.get("cpu_latency").count == 20
        assert snap.get(ERRORS).rate == 0.0
        assert snap.get("checks", {"check": "cpu status is 200"}).rate == 1.0

    def test_ms_choices(self):
        seen = []

        def handler(request):
            seen.append(int(request.url.params["ms"]))
            return httpx.Response(200)

        registry = MetricsRegistry()
        ctx = make_ctx(static_probe(handler), registry)
        for _ in range(40):
            cpu_heavy(ctx)
        assert set(seen) <= set(CPU_MS_CHOICES)
        assert len(set(seen)) > 1

    def test_error_status_counts_in_errors(self):
        registry = MetricsRegistry()
        ctx = make_ctx(static_probe(lambda r: httpx.Response(500)), registry)
        cpu_heavy(ctx)
        assert registry.snapshot().get(ERRORS).rate == 1.0


class TestDbHeavy:
    def test_success(self, sut):
        registry = MetricsRegistry()
        db_heavy(make_ctx(sut.probe(), registry))
        snap = registry.snapshot()
        assert sut.paths == [DB_PATH]
        assert snap.get(ERRORS).rate == 0.0
        assert snap.get(DB_ERRORS).total == 0

    def test_missing_result_count_is_db_error(self):
        registry = MetricsRegistry()
        ctx = make_ctx(static_probe(lambda r: httpx.Response(200, json={"results": []})), registry)
        db_heavy(ctx)
        snap = registry.snapshot()
        assert snap.get(DB_ERRORS, {"scenario": "s"}).total == 1
        assert snap.get(ERRORS).rate == 1.0
        assert snap.get("checks", {"check": "db has results"}).rate == 0.0
        assert snap.get("checks", {"check": "db status is 200"}).rate == 1.0

    def test_non_json_body_is_failed_check(self):
        registry = MetricsRegistry()
        db_heavy(make_ctx(static_probe(lambda r: httpx.Response(200, text="oops")), registry))
        assert registry.snapshot().get(DB_ERRORS).total == 1


class TestMixedLoad:
    def test_mix_proportions(self, sut):
        registry = MetricsRegistry()
        ctx = make_ctx(sut.probe(), registry, seed=42)
        for _ in range(1000):
            mixed_load(ctx)
        counts = {path: sut.paths.count(path) for path in (CPU_PATH, EXTERNAL_PATH, DB_PATH)}
        assert 330 <= counts[CPU_PATH] <= 470
        assert 230 <= counts[EXTERNAL_PATH] <= 370
        assert 230 <= counts[DB_PATH] <= 370
        assert registry.snapshot().get(ERRORS).rate == 0.0

    def test_external_503_is_not_an_error(self):
        registry = MetricsRegistry()
        ctx = make_ctx(static_probe(lambda r: httpx.Response(503)), registry)
        for _ in range(30):
            mixed_load(ctx)
        snap = registry.snapshot()
        external = snap.get("http_req_failed", {"endpoint": "external"})
        assert external.count > 0
        assert external.rate == 0.0
        assert snap.get(EXTERNAL_ERRORS).total == external.count

    def test_db_branch_checks_status_only(self):
        registry = MetricsRegistry()
        ctx = make_ctx(static_probe(lambda r: httpx.Response(200, json={"results": []})), registry, seed=3)
        for _ in range(60):
            mixed_load(ctx)
        snap = registry.snapshot()
        assert snap.get("http_req_failed", {"endpoint": "db"}).count > 0
        assert snap.get(ERRORS).rate == 0.0
        assert snap.get(DB_ERRORS).total == 0
        assert snap.get("checks", {"check": "mixed db status is 200"}).rate == 1.0

    def test_db_branch_error_status(self):
        registry = MetricsRegistry()

        def handler(request):
            return httpx.Response(500 if request.url.path == DB_PATH else 200)

        ctx = make_ctx(static_probe(handler), registry, seed=3)
        for _ in range(60):
            mixed_load(ctx)
        snap = registry.snapshot()
        db_calls = snap.get("http_req_failed", {"endpoint": "db"}).count
        assert db_calls > 0
        assert snap.get(DB_ERRORS).total == db_calls

    def test_cpu_ms_range(self):
        seen = []

        def handler(request):
            if request.url.path == CPU_PATH:
                seen.append(int(request.url.params["ms"]))
            return httpx.Response(200, json={"resultCount": 1})

        ctx = make_ctx(static_probe(handler), MetricsRegistry(), seed=5)
        for _ in range(200):
            mixed_load(ctx)
        assert seen
        assert all(50 <= ms <= 249 for ms in seen)


class TestExternalProbe:
    def test_fallback_counted(self):
        registry = MetricsRegistry()
        workload = make_external_probe("Graceful Degradation")
        bodies = iter(["Graceful Degradation: cached", '{"source": "live"}'])
        ctx = make_ctx(static_probe(lambda r: httpx.Response(200, text=next(bodies))), registry)
        workload.fn(ctx)
        workload.fn(ctx)
        snap = registry.snapshot()
        assert snap.get(FALLBACK_RESPONSES).total == 1
        assert snap.get(FALLBACK_RATE).rate == 0.5
        assert snap.get(ERRORS).rate == 0.0

    def test_503_passes_checks(self):
        registry = MetricsRegistry()
        make_external_probe().fn(make_ctx(static_probe(lambda r: httpx.Response(503)), registry))
        snap = registry.snapshot()
        assert snap.get("checks").rate == 1.0
        assert snap.get("http_req_failed").rate == 0.0

    def test_500_fails_checks(self):
        registry = MetricsRegistry()
        make_external_probe().fn(make_ctx(static_probe(lambda r: httpx.Response(500)), registry))
        assert registry.snapshot().get(ERRORS).rate == 1.0


def test_builtin_think_times():
    think = {name: w.think_time for name, w in BUILTIN_WORKLOADS.items()}
    assert (think["cpu_heavy"].min_seconds, think["cpu_heavy"].max_seconds) == (1.0, 3.0)
    assert (think["db_heavy"].min_seconds, think["db_heavy"].max_seconds) == (0.5, 1.5)
    assert (think["mixed_load"].min_seconds, think["mixed_load"].max_seconds) == (0.0, 0.5)
    assert (think["external_probe"].min_seconds, think["external_probe"].max_seconds) == (1.0, 1.0)
