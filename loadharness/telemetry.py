"""Optional Logfire integration for tracing and logs."""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator, Optional

logger = logging.getLogger("loadharness")

_logfire = None
_configured = False


def _load_logfire():
    global _logfire
    if _logfire is not None:
        return _logfire
    try:
        import logfire
    except Exception:
        _logfire = False
        return _logfire
    _logfire = logfire
    return _logfire


def _env_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _console_setting():
    # Logfire console output would interleave with the text summary on stdout.
    env_console = os.getenv("LOADHARNESS_LOGFIRE_CONSOLE")
    if env_console is not None and _env_truthy(env_console):
        return None
    return False


def enabled() -> bool:
    logfire = _load_logfire()
    if not logfire:
        return False
    return _env_truthy(os.getenv("LOADHARNESS_LOGFIRE"))


def configure() -> bool:
    logfire = _load_logfire()
    if not logfire or not enabled():
        return False
    global _configured
    if not _configured:
        try:
            logfire.configure(console=_console_setting())
            _configured = True
        except Exception:
            logger.warning("Logfire configuration failed; spans disabled", exc_info=True)
            return False
        _instrument_logfire(logfire)
    return True


def _instrument_logfire(logfire: Any) -> None:
    # Probe requests show as spans under their scenario span.
    flag = os.getenv("LOADHARNESS_LOGFIRE_INSTRUMENT_HTTPX")
    if flag is not None and _env_truthy(flag):
        try:
            logfire.instrument_httpx()
        except Exception:
            logger.warning("httpx instrumentation unavailable", exc_info=True)


@contextmanager
def span(name: str, **attrs: Any) -> Iterator[None]:
    if not configure():
        yield
        return
    with _load_logfire().span(name, **attrs):
        yield



def log(level: str, message: str, **attrs: Any) -> None:
    if configure():
        logfire = _load_logfire()
        fn = getattr(logfire, level, None) or logfire.info
        fn(message, **attrs)
    log_fn = getattr(logger, level, None) or logger.info
    if attrs:
        log_fn("%s %s", message, attrs)
    else:
        log_fn(message)
