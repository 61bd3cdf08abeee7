from __future__ import annotations

from typing import Any, Mapping

# tool vocabulary -> canonical severity
LINT_SEVERITY_MAP = {
    "error": "high",
    "fatal": "high",
    "warning": "medium",
}

CONFIDENCE_SEVERITY_MAP = {
    "high": "critical",
    "medium": "high",
    "weak": "medium",
}

SMELL_SEVERITY = "medium"
DUPLICATION_SEVERITY = "low"
INFO_SEVERITY = "info"

COMPLEXITY_HIGH_THRESHOLD = 40.0
COMPLEXITY_MEDIUM_THRESHOLD = 20.0

COVERAGE_TARGET_PCT = 80.0
COVERAGE_HIGH_THRESHOLD_PCT = 50.0


def map_severity(table: Mapping[str, str], token: Any, default: str = "low") -> str:
    if token is None:
        return default
    return table.get(str(token).strip().lower(), default)


def lint_severity(token: Any) -> str:
    return map_severity(LINT_SEVERITY_MAP, token)


def security_severity(confidence: Any) -> str:
    return map_severity(CONFIDENCE_SEVERITY_MAP, confidence)


def smell_severity(token: Any = None) -> str:
    # reek reports carry no per-smell severity
    return SMELL_SEVERITY


def complexity_severity(score: Any) -> str:
    try:
        value = float(score)
    except (TypeError, ValueError):
        return "low"
    if value > COMPLEXITY_HIGH_THRESHOLD:
        return "high"
    if value > COMPLEXITY_MEDIUM_THRESHOLD:
        return "medium"
    return "low"


def coverage_severity(percentage: float) -> str:
    if percentage < COVERAGE_HIGH_THRESHOLD_PCT:
        return "high"
    return "medium"
