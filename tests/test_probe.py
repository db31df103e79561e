"""Tests for the HTTP probe: timing, status sentinel and metric recording."""

import json

import httpx
import pytest

from loadharness.metrics import MetricsRegistry
from loadharness.probe import NETWORK_FAILURE_STATUS, HttpProbe, ProbeRequest

BASE_URL = "http://sut.test"


def make_probe(handler, registry=None, **kwargs):
    return HttpProbe(
        BASE_URL,
        registry=registry,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestProbeRequest:
    def test_default_expected_statuses(self):
        req = ProbeRequest()
        assert req.is_expected(200)
        assert req.is_expected(302)
        assert not req.is_expected(404)
        assert not req.is_expected(NETWORK_FAILURE_STATUS)

    def test_custom_expected_statuses(self):
        req = ProbeRequest(expected_statuses=(200, 503))
        assert req.is_expected(503)
        assert not req.is_expected(500)


class TestHttpProbe:
    def test_success(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"resultCount": 3})

        with make_probe(handler) as probe:
            result = probe.get("/api/db/search")
        assert result.status == 200
        assert result.duration_ms >= 0.0
        assert result.json() == {"resultCount": 3}
        assert result.expected
        assert not result.failed
        assert seen["url"] == f"{BASE_URL}/api/db/search"

    def test_query_params(self):
        seen = {}

        def handler(request):
            seen["ms"] = request.url.params.get("ms")
            return httpx.Response(200, text="done")

        with make_probe(handler) as probe:
            probe.get("/api/cpu", params={"ms": 100})
        assert seen["ms"] == "100"

    def test_non_2xx_does_not_raise(self):
        with make_probe(lambda r: httpx.Response(500, text="boom")) as probe:
            result = probe.get("/api/cpu")
        assert result.status == 500
        assert result.body == "boom"
        assert not result.expected

    def test_network_failure_returns_sentinel(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with make_probe(handler) as probe:
            result = probe.get("/api/cpu")
        assert result.status == NETWORK_FAILURE_STATUS
        assert result.failed
        assert not result.timed_out
        assert "connection refused" in result.error
        assert result.duration_ms >= 0.0

    def test_timeout_returns_sentinel(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with make_probe(handler) as probe:
            result = probe.get("/api/cpu", timeout=0.01)
        assert result.status == NETWORK_FAILURE_STATUS
        assert result.timed_out

    def test_post_json(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["content_type"] = request.headers["content-type"]
            return httpx.Response(200)

        with make_probe(handler) as probe:
            result = probe.post_json("/admin/mock/configure", {"failureRate": 0.6, "delayMs": 100})
        assert result.status == 200
        assert seen["body"] == {"failureRate": 0.6, "delayMs": 100}
        assert seen["content_type"] == "application/json"

    def test_invalid_json_body(self):
        with make_probe(lambda r: httpx.Response(200, text="not json")) as probe:
            result = probe.get("/")
        assert result.json() is None

    def test_contains_marker(self):
        with make_probe(lambda r: httpx.Response(200, text="Graceful Degradation: cached")) as probe:
            result = probe.get("/api/external")
        assert result.contains("Graceful Degradation")
        assert not result.contains("Other")


class TestProbeMetrics:
    def test_records_builtin_metrics(self):
        registry = MetricsRegistry()
        with make_probe(lambda r: httpx.Response(200), registry=registry) as probe:
            probe.get("/api/cpu", tags={"endpoint": "cpu"})
            probe.get("/api/cpu", tags={"endpoint": "cpu"})
        snap = registry.snapshot()
        assert snap.get("http_reqs").total == 2
        assert snap.get("http_req_duration", {"endpoint": "cpu"}).count == 2
        assert snap.get("http_req_failed").rate == 0.0
        assert snap.get("http_reqs", {"status": "200", "method": "GET"}).total == 2

    def test_failures_counted_in_http_req_failed(self):
        registry = MetricsRegistry()

        def handler(request):
            raise httpx.ConnectError("down", request=request)

        with make_probe(handler, registry=registry) as probe:
            probe.get("/api/cpu")
        snap = registry.snapshot()
        assert snap.get("http_req_failed").rate == 1.0
        assert snap.get("http_reqs", {"status": "0"}).total == 1

    def test_expected_503_is_not_failed(self):
        registry = MetricsRegistry()
        with make_probe(lambda r: httpx.Response(503), registry=registry) as probe:
            probe.get("/api/external", expected_statuses=(200, 503))
        assert registry.snapshot().get("http_req_failed").rate == 0.0

    def test_with_tags_view_shares_client_and_merges_tags(self):
        registry = MetricsRegistry()
        other = MetricsRegistry()
        with make_probe(lambda r: httpx.Response(200), registry=registry, default_tags={"run": "a"}) as probe:
            view = probe.with_tags({"scenario": "cpu"}, registry=other)
            view.get("/api/cpu")
            view.close()
            # Closing a view leaves the shared client usable.
            probe.get("/api/cpu")
        assert other.snapshot().get("http_reqs", {"run": "a", "scenario": "cpu"}).total == 1
        assert registry.snapshot().get("http_reqs").total == 1

    def test_no_registry_records_nothing(self):
        with make_probe(lambda r: httpx.Response(200)) as probe:
            assert probe.registry is None
            assert probe.get("/").status == 200

    @pytest.mark.parametrize("status", [200, 404])
    def test_status_tag(self, status):
        registry = MetricsRegistry()
        with make_probe(lambda r: httpx.Response(status), registry=registry) as probe:
            probe.get("/")
        assert registry.snapshot().get("http_reqs", {"status": str(status)}).total == 1
