import pytest

from codehealth.health import classify, determine_status
from codehealth.models import Issue


@pytest.mark.parametrize(
    "critical,medium,expected",
    [(2, 0, "critical"), (1, 10, "critical"), (0, 6, "warning"), (0, 5, "healthy"), (0, 0, "healthy")],
)
def test_determine_status(critical, medium, expected):
    assert determine_status(critical, medium) == expected


def _issues(*severities):
    return [Issue(scan_type="rubocop", severity=severity, message="x") for severity in severities]


def test_classify_high_counts_as_critical():
    assert classify(_issues("high", "high")) == "critical"


def test_classify_ignores_low_and_info():
    assert classify(_issues("low", "low", "info", None)) == "healthy"
    assert classify(_issues(*["medium"] * 6)) == "warning"
    assert classify(_issues(*["medium"] * 5, "low")) == "healthy"
    assert classify([]) == "healthy"
