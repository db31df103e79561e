"""Tests for startup preflight checks."""

import socket

import pytest

from loadharness import preflight
from loadharness.exceptions import HarnessConfigError
from loadharness.plan import default_plan, plan_from_dict
from loadharness.preflight import check_base_url, check_host_resolves, check_plan, run_preflight


class TestBaseUrl:
    @pytest.mark.parametrize(
        "url",
        ["http://localhost:8080", "https://sut.example.com", "http://10.0.0.5"],
    )
    def test_valid(self, url):
        assert check_base_url(url).passed

    @pytest.mark.parametrize(
        "url",
        ["localhost:8080", "ftp://sut", "http://", "http://host:notaport", ""],
    )
    def test_invalid(self, url):
        result = check_base_url(url)
        assert not result.passed
        assert result.code == "invalid_base_url"


class TestHostResolves:
    def test_resolves(self, monkeypatch):
        def fake_getaddrinfo(host, port, proto=0):
            assert (host, port) == ("sut.internal", 8080)
            return [(socket.AF_INET, socket.SOCK_STREAM, proto, "", ("10.1.2.3", port))]

        monkeypatch.setattr(preflight.socket, "getaddrinfo", fake_getaddrinfo)
        result = check_host_resolves("http://sut.internal:8080")
        assert result.passed
        assert result.details["addresses"] == ["10.1.2.3"]

    def test_unresolvable(self, monkeypatch):
        def fake_getaddrinfo(host, port, proto=0):
            raise socket.gaierror(-2, "Name or service not known")

        monkeypatch.setattr(preflight.socket, "getaddrinfo", fake_getaddrinfo)
        result = check_host_resolves("https://no-such-host.invalid")
        assert not result.passed
        assert result.code == "unresolvable_host"


class TestPlanCheck:
    def test_default_plan_is_runnable(self):
        assert check_plan(default_plan()).passed

    def test_threshold_typo(self):
        plan = default_plan().model_copy(update={"thresholds": {"db_latncy": ["p(95)<100"]}})
        result = check_plan(plan)
        assert not result.passed
        assert result.code == "unknown_metric"

    def test_unknown_workload(self):
        plan = plan_from_dict(
            {"scenarios": [{"name": "a", "exec": "nope", "stages": [{"duration": "1s", "target": 1}]}]}
        )
        assert check_plan(plan).code == "unknown_workload"


class TestRunPreflight:
    def test_all_pass_without_resolution(self):
        report = run_preflight("http://sut.test", default_plan(), resolve=False)
        assert report.passed
        assert [c.name for c in report.checks] == ["base_url", "plan"]
        report.raise_for_errors()

    def test_bad_url_skips_resolution(self):
        report = run_preflight("not a url", default_plan())
        assert not report.passed
        assert [c.name for c in report.checks] == ["base_url", "plan"]
        with pytest.raises(HarnessConfigError) as exc_info:
            report.raise_for_errors()
        assert exc_info.value.code == "invalid_base_url"

    def test_to_dict(self):
        data = run_preflight("http://sut.test", resolve=False).to_dict()
        assert data["passed"] is True
        assert data["checks"][0]["name"] == "base_url"
