from __future__ import annotations

from typing import Iterable

from codehealth.models import Issue

WARNING_MEDIUM_THRESHOLD = 5


def determine_status(critical_count: int, medium_count: int) -> str:
    """Application status from its critical-or-high and medium issue counts."""
    if critical_count > 0:
        return "critical"
    if medium_count > WARNING_MEDIUM_THRESHOLD:
        return "warning"
    return "healthy"


def classify(issues: Iterable[Issue]) -> str:
    critical_count = 0
    medium_count = 0
    for issue in issues:
        if issue.severity in {"critical", "high"}:
            critical_count += 1
        elif issue.severity == "medium":
            medium_count += 1
    return determine_status(critical_count, medium_count)
