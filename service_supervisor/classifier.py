from __future__ import annotations

from typing import Iterable

from .models import HealthClassification, ProbeResult


def score(results: Iterable[ProbeResult]) -> tuple[int, int, int]:
    """
    Returns (passed, total, percent) with percent rounded down.
    """
    items = list(results)
    total = len(items)
    passed = sum(1 for r in items if r.ok)
    percent = (passed * 100) // total if total else 0
    return passed, total, percent


def critical_threshold(total: int) -> int:
    """Highest passed count that is still critical: floor(2/3 of total)."""
    return (2 * int(total)) // 3


def classify(results: Iterable[ProbeResult]) -> HealthClassification:
    """
    healthy: every probe passed.
    critical: passed/total <= 2/3 (a ratio exactly on the boundary is critical).
    degraded: anything in between.

    An empty result set carries no evidence of health and is critical.
    """
    passed, total, _ = score(results)
    if total == 0:
        return HealthClassification.CRITICAL
    if passed == total:
        return HealthClassification.HEALTHY
    if passed <= critical_threshold(total):
        return HealthClassification.CRITICAL
    return HealthClassification.DEGRADED


def failing(results: Iterable[ProbeResult]) -> list[ProbeResult]:
    return [r for r in results if not r.ok]
