"""
Checks: named boolean expectations over a probe result.

Each check records one sample into the ``checks`` Rate tagged with the
check name. A predicate that raises (malformed body, missing field) counts
as a failed check; checks never abort the iteration.
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional, TypeVar

from loadharness.metrics.point import MetricKind
from loadharness.metrics.registry import CHECKS, MetricsRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

Predicate = Callable[[T], bool]


def check(
    subject: T,
    predicates: Mapping[str, Predicate],
    *,
    registry: Optional[MetricsRegistry] = None,
    tags: Optional[Mapping[str, str]] = None,
) -> bool:
    """
    Evaluate every predicate against ``subject``.

    Returns:
        True only if all predicates passed.
    """
    all_passed = True
    for name, predicate in predicates.items():
        try:
            passed = bool(predicate(subject))
        except Exception as exc:  # noqa: BLE001
            logger.debug("check %r raised %r; counted as failed", name, exc)
            passed = False
        if registry is not None:
            registry.record(CHECKS, MetricKind.RATE, passed, {**(tags or {}), "check": name})
        all_passed = all_passed and passed
    return all_passed
