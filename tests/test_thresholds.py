"""Tests for threshold parsing, validation and evaluation."""

import logging

import pytest

from loadharness.exceptions import HarnessConfigError
from loadharness.metrics import MetricKind, MetricsRegistry
from loadharness.thresholds import (
    ThresholdRule,
    all_passed,
    evaluate_thresholds,
    parse_selector,
    parse_thresholds,
    validate_thresholds,
)


def latency_snapshot(values, tags=None):
    registry = MetricsRegistry()
    for v in values:
        registry.trend("http_req_duration", float(v), tags)
    return registry.snapshot()


class TestParse:
    def test_percentile(self):
        rule = ThresholdRule.parse("http_req_duration", "p(95)<5000")
        assert rule.metric == "http_req_duration"
        assert rule.aggregation == "p"
        assert rule.percentile == 95.0
        assert rule.comparator == "<"
        assert rule.literal == 5000.0
        assert rule.aggregation_label == "p(95)"
        assert rule.window == "overall"

    @pytest.mark.parametrize(
        "expression,agg,op,literal",
        [
            ("rate<0.15", "rate", "<", 0.15),
            ("count >= 100", "count", ">=", 100.0),
            ("avg<=800", "avg", "<=", 800.0),
            ("max!=0", "max", "!=", 0.0),
            ("med==1.5", "med", "==", 1.5),
            ("p(99.9)>1e3", "p", ">", 1000.0),
        ],
    )
    def test_expressions(self, expression, agg, op, literal):
        rule = ThresholdRule.parse("m", expression)
        assert (rule.aggregation, rule.comparator, rule.literal) == (agg, op, literal)

    @pytest.mark.parametrize("expression", ["p95<5000", "rate", "<0.1", "rate<<0.1", "p(101)<1", "avg<abc"])
    def test_invalid_expression(self, expression):
        with pytest.raises(HarnessConfigError) as exc_info:
            ThresholdRule.parse("m", expression)
        assert exc_info.value.code == "invalid_threshold"

    def test_tag_selector(self):
        name, tags = parse_selector("http_req_duration{scenario:cpu, endpoint:cpu}")
        assert name == "http_req_duration"
        assert dict(tags) == {"scenario": "cpu", "endpoint": "cpu"}

    @pytest.mark.parametrize("key", ["", "bad name", "m{scenario}", "m{:cpu}"])
    def test_invalid_selector(self, key):
        with pytest.raises(HarnessConfigError):
            parse_selector(key)

    def test_key_round_trips_selector(self):
        rule = ThresholdRule.parse("http_req_duration{scenario:cpu}", "p(95)<1")
        assert rule.key == "http_req_duration{scenario:cpu}"

    def test_parse_mapping(self):
        rules = parse_thresholds(
            {
                "http_req_duration": ["p(95)<5000", "p(99)<10000"],
                "errors": "rate<0.15",
            }
        )
        assert [str(r) for r in rules] == [
            "http_req_duration: p(95)<5000",
            "http_req_duration: p(99)<10000",
            "errors: rate<0.15",
        ]


class TestValidate:
    def test_unknown_metric_fails_fast(self):
        rules = parse_thresholds({"db_latncy": ["p(95)<100"]})
        with pytest.raises(HarnessConfigError) as exc_info:
            validate_thresholds(rules, MetricsRegistry().declared())
        assert exc_info.value.code == "unknown_metric"
        assert exc_info.value.details["metric"] == "db_latncy"

    def test_declared_custom_metric_is_valid(self):
        registry = MetricsRegistry()
        registry.declare("db_latency", MetricKind.TREND)
        validate_thresholds(parse_thresholds({"db_latency": "p(95)<100"}), registry.declared())

    @pytest.mark.parametrize(
        "key,expression",
        [
            ("http_req_failed", "p(95)<1"),
            ("http_reqs", "avg<1"),
            ("http_req_duration", "rate<1"),
        ],
    )
    def test_aggregation_must_match_kind(self, key, expression):
        rule = ThresholdRule.parse(key, expression)
        with pytest.raises(HarnessConfigError) as exc_info:
            rule.validate(MetricsRegistry().declared())
        assert exc_info.value.code == "invalid_aggregation"


class TestEvaluate:
    def test_percentile_pass_and_fail(self):
        snap = latency_snapshot(range(1, 101))
        passing = ThresholdRule.parse("http_req_duration", "p(95)<5000").evaluate(snap)
        failing = ThresholdRule.parse("http_req_duration", "p(95)<50").evaluate(snap)
        assert passing.passed
        assert not failing.passed
        assert failing.observed == pytest.approx(95.05)

    def test_monotone_in_latency(self):
        rule = ThresholdRule.parse("http_req_duration", "p(95)<5000")
        slow = latency_snapshot([6000] * 20)
        faster = latency_snapshot([4000] * 20)
        assert not rule.evaluate(slow).passed
        assert rule.evaluate(faster).passed

    def test_rate(self):
        registry = MetricsRegistry()
        for failed in [True] + [False] * 9:
            registry.rate("http_req_failed", failed)
        verdict = ThresholdRule.parse("http_req_failed", "rate<0.15").evaluate(registry.snapshot())
        assert verdict.passed
        assert verdict.observed == pytest.approx(0.1)

    def test_counter_count_and_rate(self):
        registry = MetricsRegistry()
        registry.add("http_reqs", 30)
        snap = registry.snapshot()
        assert ThresholdRule.parse("http_reqs", "count==30").evaluate(snap).passed
        per_second = ThresholdRule.parse("http_reqs", "rate>=2").evaluate(snap, duration_seconds=10)
        assert per_second.observed == pytest.approx(3.0)
        assert per_second.passed

    def test_tag_filtered(self):
        registry = MetricsRegistry()
        registry.trend("http_req_duration", 100.0, {"scenario": "cpu"})
        registry.trend("http_req_duration", 9000.0, {"scenario": "database"})
        snap = registry.snapshot()
        cpu = ThresholdRule.parse("http_req_duration{scenario:cpu}", "max<1000").evaluate(snap)
        overall = ThresholdRule.parse("http_req_duration", "max<1000").evaluate(snap)
        assert cpu.passed
        assert not overall.passed

    def test_empty_series_uses_zero_sentinel(self):
        snap = MetricsRegistry().snapshot()
        verdict = ThresholdRule.parse("http_req_duration", "p(95)<5000").evaluate(snap)
        assert verdict.observed == 0.0
        assert verdict.passed

    def test_unmatched_tag_filter_warns(self, caplog):
        snap = latency_snapshot([100, 200], {"scenario": "cpu"})
        rule = ThresholdRule.parse("http_req_duration{scenario:cpuu}", "p(95)<5000")
        with caplog.at_level(logging.WARNING, logger="loadharness.thresholds"):
            verdict = rule.evaluate(snap)
        assert verdict.observed == 0.0
        assert "http_req_duration{scenario:cpuu} matched no samples" in caplog.text

    def test_matched_tag_filter_is_quiet(self, caplog):
        snap = latency_snapshot([100], {"scenario": "cpu"})
        with caplog.at_level(logging.WARNING, logger="loadharness.thresholds"):
            ThresholdRule.parse("http_req_duration{scenario:cpu}", "p(95)<5000").evaluate(snap)
        assert caplog.text == ""

    def test_all_passed(self):
        snap = latency_snapshot([10, 20])
        rules = parse_thresholds({"http_req_duration": ["max<100", "min>15"]})
        verdicts = evaluate_thresholds(rules, snap)
        assert [v.passed for v in verdicts] == [True, False]
        assert not all_passed(verdicts)
        assert all_passed([])

    def test_verdict_to_dict(self):
        verdict = ThresholdRule.parse("http_req_duration", "avg<100").evaluate(latency_snapshot([50]))
        assert verdict.to_dict() == {
            "metric": "http_req_duration",
            "expression": "avg<100",
            "observed": 50.0,
            "passed": True,
        }
