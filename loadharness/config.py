"""
Harness configuration from environment variables.

Usage:
    from loadharness.config import get_settings

    settings = get_settings()
    print(settings.base_url, settings.summary_path)
"""

from functools import lru_cache
from typing import Optional
import os

from loadharness.exceptions import HarnessConfigError

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_SUMMARY_PATH = "load/summary.json"
DEFAULT_FALLBACK_MARKER = "Graceful Degradation"


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise HarnessConfigError(
            f"{name} must be an integer, got {value!r}",
            code="invalid_setting",
            details={"name": name, "value": value},
        ) from exc


def _positive_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        parsed = float(value)
    except ValueError as exc:
        raise HarnessConfigError(
            f"{name} must be a number, got {value!r}",
            code="invalid_setting",
            details={"name": name, "value": value},
        ) from exc
    if parsed <= 0:
        raise HarnessConfigError(
            f"{name} must be positive, got {value!r}",
            code="invalid_setting",
            details={"name": name, "value": value},
        )
    return parsed


class Settings:
    """Harness configuration loaded from environment variables."""

    def __init__(self) -> None:
        # System under test
        self.base_url: str = (
            os.getenv("LOADHARNESS_BASE_URL") or os.getenv("BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")

        # HTTP
        self.http_timeout_seconds: float = _positive_float(
            "LOADHARNESS_HTTP_TIMEOUT", "60"
        )

        # Outputs
        self.summary_path: str = os.getenv(
            "LOADHARNESS_SUMMARY_PATH", DEFAULT_SUMMARY_PATH
        )

        # Reproducibility of think-time and request mix
        self.seed: Optional[int] = _optional_int("LOADHARNESS_SEED")

        # Logging
        self.log_level: str = os.getenv("LOADHARNESS_LOG_LEVEL", "INFO").upper()

        # Fault experiment
        self.fallback_marker: str = os.getenv(
            "LOADHARNESS_FAULT_MARKER", DEFAULT_FALLBACK_MARKER
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()
