"""
Preflight: startup validation before any traffic.

Checks:
1. Base URL is http(s) with a host
2. Host resolves
3. Plan is runnable (workloads exist, thresholds reference known metrics)

Any failed check aborts the run with HarnessConfigError.

Usage:
    report = run_preflight(settings.base_url, plan)
    report.raise_for_errors()
"""
from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from loadharness.exceptions import HarnessConfigError
from loadharness.metrics.registry import MetricsRegistry
from loadharness.plan import LoadPlan
from loadharness.scheduler import prepare

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    """Result of a single preflight check."""
    name: str
    passed: bool
    message: str
    details: Optional[Dict[str, Any]] = None
    code: Optional[str] = None


@dataclass
class PreflightReport:
    """All preflight checks, in the order they ran."""
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    def add_check(self, check: CheckResult) -> None:
        self.checks.append(check)
        if not check.passed:
            logger.error("preflight %s failed: %s", check.name, check.message)

    def raise_for_errors(self) -> None:
        for check in self.checks:
            if not check.passed:
                raise HarnessConfigError(
                    check.message, code=check.code or check.name, details=check.details
                )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "checks": [
                {"name": c.name, "passed": c.passed, "message": c.message, "details": c.details}
                for c in self.checks
            ],
        }


def check_base_url(base_url: str) -> CheckResult:
    """Check the base URL is absolute http(s) with a host."""
    parts = urlsplit(base_url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return CheckResult(
            name="base_url",
            passed=False,
            message=f"Base URL must be http(s)://host[:port], got {base_url!r}",
            details={"base_url": base_url},
            code="invalid_base_url",
        )
    try:
        parts.port
    except ValueError:
        return CheckResult(
            name="base_url",
            passed=False,
            message=f"Base URL has an invalid port: {base_url!r}",
            details={"base_url": base_url},
            code="invalid_base_url",
        )
    return CheckResult(name="base_url", passed=True, message=base_url)


def check_host_resolves(base_url: str) -> CheckResult:
    """Check the base URL host resolves to at least one address."""
    parts = urlsplit(base_url)
    host = parts.hostname or ""
    port = parts.port or (443 if parts.scheme == "https" else 80)
    try:
        infos = socket.getaddrinfo(host, port, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as exc:
        return CheckResult(
            name="host_resolves",
            passed=False,
            message=f"Cannot resolve SUT host {host!r}: {exc}",
            details={"host": host},
            code="unresolvable_host",
        )
    addresses = sorted({info[4][0] for info in infos})
    return CheckResult(
        name="host_resolves",
        passed=True,
        message=f"{host} -> {', '.join(addresses)}",
        details={"host": host, "addresses": addresses},
    )


def check_plan(plan: LoadPlan) -> CheckResult:
    """Check every scenario's workload exists and every threshold is valid."""
    try:
        prepare(plan.scenarios, plan.workloads(), MetricsRegistry(), plan.rules())
    except HarnessConfigError as exc:
        return CheckResult(
            name="plan",
            passed=False,
            message=exc.message,
            details=exc.details,
            code=exc.code,
        )
    return CheckResult(
        name="plan",
        passed=True,
        message=f"{len(plan.scenarios)} scenario(s), {len(plan.rules())} threshold(s)",
    )


def run_preflight(
    base_url: str,
    plan: Optional[LoadPlan] = None,
    *,
    resolve: bool = True,
) -> PreflightReport:
    report = PreflightReport()
    url_check = check_base_url(base_url)
    report.add_check(url_check)
    if url_check.passed and resolve:
        report.add_check(check_host_resolves(base_url))
    if plan is not None:
        report.add_check(check_plan(plan))
    return report
