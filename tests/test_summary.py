"""Tests for the run summary and its JSON and text renderers."""

import json

import pytest

from loadharness.executors import ScenarioRun
from loadharness.metrics import MetricsRegistry
from loadharness.scenario import ExecutorKind
from loadharness.scheduler import RunResult
from loadharness.summary import RunSummary, render_json, render_text, write_summary
from loadharness.thresholds import parse_thresholds


def make_result(latencies=(100.0, 200.0, 300.0), cancelled=False, errors=None):
    registry = MetricsRegistry()
    tags = {"scenario": "cpu", "method": "GET", "status": "200"}
    for value in latencies:
        registry.add("http_reqs", 1, tags)
        registry.trend("http_req_duration", value, tags)
        registry.rate("http_req_failed", False, tags)
        registry.rate("checks", True, {"scenario": "cpu", "check": "cpu status is 200"})
    registry.rate("checks", False, {"scenario": "cpu", "check": "cpu response time < 10s"})
    registry.add("iterations", len(latencies), {"scenario": "cpu"})
    registry.add("dropped_iterations", 2, {"scenario": "mixed"})
    runs = {
        "cpu_saturation": ScenarioRun(
            scenario="cpu_saturation",
            executor=ExecutorKind.CLOSED_LOOP,
            tags={"scenario": "cpu"},
            iterations_completed=len(latencies),
            started=True,
            finished=True,
        ),
        "mixed_load": ScenarioRun(
            scenario="mixed_load",
            executor=ExecutorKind.OPEN_LOOP,
            tags={"scenario": "mixed"},
            dropped_iterations=2,
            started=True,
            finished=True,
        ),
    }
    return RunResult(
        snapshot=registry.freeze(),
        duration_seconds=10.0,
        scenarios=runs,
        errors=errors or {},
        cancelled=cancelled,
    )


RULES = parse_thresholds(
    {
        "http_req_duration": ["p(95)<5000"],
        "http_req_failed": ["rate<0.15"],
    }
)


class TestRunSummary:
    def test_passed(self):
        summary = RunSummary.from_result(make_result(), RULES)
        assert summary.passed
        assert summary.failed_verdicts == []

    def test_failed(self):
        summary = RunSummary.from_result(make_result(latencies=(6000.0,)), RULES)
        assert not summary.passed
        assert [str(v.rule) for v in summary.failed_verdicts] == ["http_req_duration: p(95)<5000"]

    def test_no_rules_passes(self):
        assert RunSummary.from_result(make_result()).passed

    def test_to_dict(self):
        data = RunSummary.from_result(make_result(), RULES, extra={"fault_experiment": {"ok": True}}).to_dict()
        assert data["state"] == {"testRunDurationMs": 10000.0, "cancelled": False}
        assert data["metrics"]["http_reqs"]["values"] == {"count": 3.0, "rate": pytest.approx(0.3)}
        assert data["metrics"]["http_req_duration"]["type"] == "trend"
        assert data["thresholds"][0] == {
            "metric": "http_req_duration",
            "expression": "p(95)<5000",
            "observed": pytest.approx(290.0),
            "passed": True,
        }
        assert data["scenarios"]["mixed_load"]["executor"] == "open-loop"
        assert data["scenarios"]["mixed_load"]["dropped_iterations"] == 2
        assert data["fault_experiment"] == {"ok": True}
        assert data["passed"] is True


class TestRenderJson:
    def test_idempotent(self):
        summary = RunSummary.from_result(make_result(), RULES)
        assert render_json(summary) == render_json(summary)

    def test_deterministic_across_equal_runs(self):
        first = RunSummary.from_result(make_result(), RULES)
        second = RunSummary.from_result(make_result(), RULES)
        assert render_json(first) == render_json(second)

    def test_valid_json_with_sorted_keys(self):
        text = render_json(RunSummary.from_result(make_result(), RULES))
        assert text.endswith("\n")
        data = json.loads(text)
        assert list(data) == sorted(data)

    def test_write_summary_creates_parent(self, tmp_path):
        summary = RunSummary.from_result(make_result(), RULES)
        target = write_summary(summary, tmp_path / "load" / "summary.json")
        assert target.read_text(encoding="utf-8") == render_json(summary)


class TestRenderText:
    def test_headline_numbers(self):
        text = render_text(RunSummary.from_result(make_result(), RULES))
        assert "LOAD TEST SUMMARY" in text
        assert "Total requests: 3" in text
        assert "Request rate: 0.30/s" in text
        assert "Failed requests: 0.00%" in text
        assert "p50=200.00ms" in text
        assert text.rstrip().endswith("Status: PASSED")

    def test_checks_and_thresholds(self):
        text = render_text(RunSummary.from_result(make_result(latencies=(6000.0,)), RULES))
        assert "✓ cpu status is 200: 1/1 (100.0%)" in text
        assert "✗ cpu response time < 10s: 0/1 (0.0%)" in text
        assert "✗ http_req_duration: p(95)<5000" in text
        assert "Status: FAILED" in text

    def test_scenarios_use_scenario_tags(self):
        text = render_text(RunSummary.from_result(make_result(), RULES))
        assert "cpu_saturation [closed-loop]: requests=3 iterations=3" in text
        assert "mixed_load [open-loop]: requests=0 iterations=0 dropped=2" in text
        assert "Dropped iterations: 2" in text

    def test_errors_and_cancelled(self):
        result = make_result(cancelled=True, errors={"mixed_load": "RuntimeError('bug')"})
        text = render_text(RunSummary.from_result(result))
        assert "Duration: 10.0s (cancelled)" in text
        assert "mixed_load: RuntimeError('bug')" in text
