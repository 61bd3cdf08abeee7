import pytest

from codehealth.severity import (
    complexity_severity,
    coverage_severity,
    lint_severity,
    security_severity,
    smell_severity,
)


@pytest.mark.parametrize(
    "token,expected",
    [("error", "high"), ("fatal", "high"), ("warning", "medium"), ("WARNING", "medium"),
     ("convention", "low"), ("refactor", "low"), (None, "low"), ("", "low")],
)
def test_lint_severity(token, expected):
    assert lint_severity(token) == expected


@pytest.mark.parametrize(
    "confidence,expected",
    [("High", "critical"), ("Medium", "high"), ("Weak", "medium"), ("unknown", "low"), (None, "low")],
)
def test_security_severity(confidence, expected):
    assert security_severity(confidence) == expected


def test_smell_severity_is_fixed():
    assert smell_severity() == "medium"
    assert smell_severity("anything") == "medium"


@pytest.mark.parametrize(
    "score,expected",
    [(45.2, "high"), (40.0, "medium"), (20.1, "medium"), (20.0, "low"), (0, "low"), ("n/a", "low"), (None, "low")],
)
def test_complexity_severity(score, expected):
    assert complexity_severity(score) == expected


def test_coverage_severity():
    assert coverage_severity(49.99) == "high"
    assert coverage_severity(50.0) == "medium"
    assert coverage_severity(62.5) == "medium"
