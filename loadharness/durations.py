"""
Duration parsing for stage timelines and offsets.

Accepts plain numbers (seconds) or k6-style strings such as "30s", "1m",
"2m30s", "500ms" and "1h".
"""

from __future__ import annotations

import re
from typing import Union

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")

DurationLike = Union[str, int, float]


def parse_duration(value: DurationLike) -> float:
    """
    Convert a duration to seconds.

    Raises:
        ValueError: If the value is negative or not a recognized format.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().replace(" ", "")
        if not text:
            raise ValueError("Duration must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _PART_RE.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ValueError(f"Invalid duration: {value!r}") from None
    if seconds < 0:
        raise ValueError(f"Duration must be non-negative: {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    """Render seconds as a compact "1m30s" string for logs and reports."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    whole = int(seconds)
    minutes, secs = divmod(whole, 60)
    hours, minutes = divmod(minutes, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    frac = seconds - whole
    if secs or frac or not out:
        out += f"{secs + frac:g}s"
    return out
