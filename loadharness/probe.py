"""
HTTP probe: one timed request, always returning a result.

Network failures and timeouts never raise. They come back as a
ProbeResult with ``status == 0`` and the time spent before the failure,
so workloads can feed latency and error metrics without exception
handling.

Usage:
    probe = HttpProbe("http://localhost:8080", registry=registry)
    result = probe.get("/api/cpu", params={"ms": 100}, tags={"endpoint": "cpu"})
    if result.status == 200:
        ...
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, Mapping, Optional

import httpx

from loadharness.metrics.point import MetricKind
from loadharness.metrics.registry import (
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    MetricsRegistry,
)

logger = logging.getLogger(__name__)

NETWORK_FAILURE_STATUS = 0
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_CONNECTIONS = 1000


@dataclass(frozen=True)
class ProbeRequest:
    """
    A single HTTP call to issue.

    Attributes:
        method: HTTP method.
        path: Path relative to the probe's base URL (or an absolute URL).
        params: Query parameters.
        json_body: JSON payload; sets the content type.
        headers: Extra request headers.
        timeout: Per-call timeout in seconds (probe default when None).
        tags: Metric tags for this call (e.g. {"endpoint": "cpu"}).
        expected_statuses: Statuses counted as success in http_req_failed.
            Defaults to 200-399.
    """

    method: str = "GET"
    path: str = "/"
    params: Optional[Mapping[str, Any]] = None
    json_body: Any = None
    headers: Optional[Mapping[str, str]] = None
    timeout: Optional[float] = None
    tags: Mapping[str, str] = field(default_factory=dict)
    expected_statuses: Optional[Collection[int]] = None

    def is_expected(self, status: int) -> bool:
        if status == NETWORK_FAILURE_STATUS:
            return False
        if self.expected_statuses is not None:
            return status in self.expected_statuses
        return 200 <= status < 400


@dataclass(frozen=True)
class ProbeResult:
    """
    Outcome of one probe.

    Attributes:
        status: HTTP status, or 0 on network failure / timeout.
        duration_ms: Wall-clock time until response or failure.
        body: Response text ("" on failure).
        error: Failure description when status is 0.
        timed_out: True when the failure was a timeout.
        expected: Whether the status counts as success for http_req_failed.
    """

    status: int
    duration_ms: float
    body: str = ""
    error: Optional[str] = None
    timed_out: bool = False
    expected: bool = False
    method: str = "GET"
    url: str = ""

    @property
    def failed(self) -> bool:
        return self.status == NETWORK_FAILURE_STATUS

    def json(self) -> Optional[Any]:
        """Decoded JSON body, or None when the body is not valid JSON."""
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError:
            return None

    def contains(self, marker: str) -> bool:
        return bool(self.body) and marker in self.body


class HttpProbe:
    """
    Issues timed HTTP calls through a shared httpx.Client.

    One probe is shared by every worker of a run; httpx.Client is safe for
    concurrent use from threads. When a registry is given, each call records
    http_reqs, http_req_duration and http_req_failed tagged with the probe's
    default tags plus the request tags.
    """

    def __init__(
        self,
        base_url: str,
        *,
        registry: Optional[MetricsRegistry] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        default_tags: Optional[Mapping[str, str]] = None,
        client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._registry = registry
        self._timeout = timeout
        self._default_tags: Dict[str, str] = dict(default_tags or {})
        self._owns_client = client is None
        if client is None:
            self._client = httpx.Client(
                base_url=self._base_url,
                timeout=timeout,
                transport=transport,
                limits=httpx.Limits(
                    max_connections=max_connections,
                    max_keepalive_connections=max_connections,
                ),
            )
        else:
            self._client = client

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def registry(self) -> Optional[MetricsRegistry]:
        return self._registry

    def with_tags(
        self,
        tags: Mapping[str, str],
        *,
        registry: Optional[MetricsRegistry] = None,
    ) -> "HttpProbe":
        """
        A view sharing this probe's client with extra default tags.

        ``registry`` replaces the recording target for the view; the view
        never closes the shared client.
        """
        return HttpProbe(
            self._base_url,
            registry=registry if registry is not None else self._registry,
            timeout=self._timeout,
            default_tags={**self._default_tags, **tags},
            client=self._client,
        )

    def probe(self, request: ProbeRequest) -> ProbeResult:
        """Issue ``request``; never raises on network failure or bad status."""
        timeout = request.timeout if request.timeout is not None else self._timeout
        url = request.path
        started = time.perf_counter()
        try:
            response = self._client.request(
                request.method,
                url,
                params=dict(request.params) if request.params else None,
                json=request.json_body,
                headers=dict(request.headers) if request.headers else None,
                timeout=timeout,
            )
            duration_ms = (time.perf_counter() - started) * 1000.0
            result = ProbeResult(
                status=response.status_code,
                duration_ms=duration_ms,
                body=response.text,
                expected=request.is_expected(response.status_code),
                method=request.method,
                url=str(response.request.url),
            )
        except httpx.TimeoutException as exc:
            result = self._failure(request, started, f"timeout: {exc!r}", timed_out=True)
        except Exception as exc:  # noqa: BLE001
            result = self._failure(request, started, repr(exc))
        self._record(request, result)
        return result

    def get(
        self,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        tags: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        expected_statuses: Optional[Collection[int]] = None,
    ) -> ProbeResult:
        return self.probe(
            ProbeRequest(
                method="GET",
                path=path,
                params=params,
                timeout=timeout,
                tags=dict(tags or {}),
                expected_statuses=expected_statuses,
            )
        )

    def post_json(
        self,
        path: str,
        payload: Any,
        *,
        tags: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ProbeResult:
        return self.probe(
            ProbeRequest(
                method="POST",
                path=path,
                json_body=payload,
                headers={"Content-Type": "application/json"},
                timeout=timeout,
                tags=dict(tags or {}),
            )
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpProbe":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _failure(
        self,
        request: ProbeRequest,
        started: float,
        error: str,
        *,
        timed_out: bool = False,
    ) -> ProbeResult:
        duration_ms = (time.perf_counter() - started) * 1000.0
        logger.debug("probe %s %s failed after %.1fms: %s", request.method, request.path, duration_ms, error)
        return ProbeResult(
            status=NETWORK_FAILURE_STATUS,
            duration_ms=duration_ms,
            error=error,
            timed_out=timed_out,
            expected=False,
            method=request.method,
            url=f"{self._base_url}{request.path}",
        )

    def _record(self, request: ProbeRequest, result: ProbeResult) -> None:
        if self._registry is None:
            return
        tags = {**self._default_tags, **request.tags}
        tags.setdefault("method", request.method)
        tags["status"] = str(result.status)
        self._registry.record(HTTP_REQS, MetricKind.COUNTER, 1, tags)
        self._registry.record(HTTP_REQ_DURATION, MetricKind.TREND, result.duration_ms, tags)
        self._registry.record(HTTP_REQ_FAILED, MetricKind.RATE, not result.expected, tags)
