"""
Typed exceptions for loadharness.

Provides structured error handling with:
- HarnessError: Base exception for all loadharness errors
- HarnessConfigError: Plan, scenario, threshold and address errors
- ControllerError: Fatal fault-injection controller failures
- WorkloadError: Deliberate failure raised from inside a workload

Probe failures (network errors, timeouts, unexpected statuses) and check
failures are recorded as metrics, never raised.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class HarnessError(Exception):
    """Base exception for all loadharness errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or the summary artifact."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class HarnessConfigError(HarnessError):
    """Configuration or validation error.

    Raised before any traffic is generated when:
    - A scenario, stage or plan definition is malformed
    - A threshold expression cannot be parsed
    - A threshold references a metric nothing records
    - The base URL is malformed or its host does not resolve

    Examples:
        HarnessConfigError("Unknown metric", code="unknown_metric",
                           details={"metric": "db_latncy"})
    """

    pass


class ControllerError(HarnessError):
    """Fatal fault-injection controller failure.

    Raised when:
    - The SUT does not acknowledge a fault-injection configuration
    - Another controller already holds the same SUT

    Attributes:
        phase: Controller state when the failure happened
        status_code: HTTP status of the rejected request, if any
    """

    def __init__(
        self,
        message: str,
        *,
        phase: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if phase:
            details["phase"] = phase
        if status_code is not None:
            details["status_code"] = status_code

        self.phase = phase
        self.status_code = status_code

        super().__init__(message, code=code, details=details)


class WorkloadError(HarnessError):
    """Raised by a workload to abandon the current iteration.

    The executor counts it in ``workload_errors`` like any other exception
    escaping a workload; the worker keeps iterating.
    """

    pass


__all__ = [
    "HarnessError",
    "HarnessConfigError",
    "ControllerError",
    "WorkloadError",
]
