"""Pytest configuration and an in-process stand-in for the reference SUT."""

import json
import sys
import threading
from pathlib import Path

import httpx
import pytest

# Ensure the project root is in sys.path when running from a checkout
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from loadharness import fault_injection  # noqa: E402
from loadharness.config import reset_settings  # noqa: E402
from loadharness.probe import HttpProbe  # noqa: E402


class MockSUT:
    """
    Answers the reference SUT routes through httpx.MockTransport.

    /api/external returns the fallback body while the configured failure
    rate is 0.5 or more. ``configure_statuses`` queues the statuses the
    admin endpoint answers with; unqueued calls get 200. Setting
    ``external_status`` forces that status on /api/external.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.failure_rate = 0.1
        self.delay_ms = 50
        self.configure_calls = []
        self.configure_statuses = []
        self.paths = []
        self.external_status = None

    def handler(self, request):
        path = request.url.path
        with self.lock:
            self.paths.append(path)
        if path == "/api/cpu":
            return httpx.Response(200, text=f"burned {request.url.params.get('ms')}ms")
        if path == "/api/db/search":
            return httpx.Response(200, json={"resultCount": 3, "results": ["a", "b", "c"]})
        if path == "/api/external":
            if self.external_status is not None:
                return httpx.Response(self.external_status)
            if self.failure_rate >= 0.5:
                return httpx.Response(200, text="Graceful Degradation: cached response")
            return httpx.Response(200, json={"source": "live"})
        if path == fault_injection.CONFIGURE_PATH:
            body = json.loads(request.content)
            with self.lock:
                self.configure_calls.append(body)
                status = self.configure_statuses.pop(0) if self.configure_statuses else 200
            if 200 <= status < 300:
                self.failure_rate = body["failureRate"]
                self.delay_ms = body["delayMs"]
            return httpx.Response(status)
        return httpx.Response(404)

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    def probe(self, **kwargs):
        return HttpProbe("http://sut.test", transport=self.transport, **kwargs)


@pytest.fixture
def sut():
    return MockSUT()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Each test sees default settings and no held fault-injection targets."""
    for key in (
        "LOADHARNESS_BASE_URL",
        "BASE_URL",
        "LOADHARNESS_SUMMARY_PATH",
        "LOADHARNESS_SEED",
        "LOADHARNESS_HTTP_TIMEOUT",
        "LOADHARNESS_LOGFIRE",
    ):
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()
    fault_injection._ACTIVE_TARGETS.clear()
