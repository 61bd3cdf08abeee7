import sqlite3

import pytest

from codehealth.models import RUN_COMPLETED, RUN_COMPLETED_WITH_ERRORS, Issue
from codehealth.storage import (
    complete_scan_run,
    count_issues,
    create_scan_run,
    delete_application,
    get_summary,
    list_applications,
    list_issues,
    list_scan_runs,
    list_stale_applications,
    replace_issues,
    session,
    update_application_status,
    upsert_application,
)
from codehealth.summary import aggregate


def _flog_issue(score, file_path="app/models/a.rb"):
    return Issue(scan_type="flog", severity="high" if score > 40 else "medium", message=f"Complexity ({score:.1f}): X#y",
                 file_path=file_path, metric_value=score)


def test_upsert_application_is_keyed_by_name(db_path):
    first = upsert_application(db_path, "billing", "/srv/billing")
    second = upsert_application(db_path, "billing", "/srv/billing-v2")
    assert first.id == second.id
    assert second.path == "/srv/billing-v2"
    assert second.status == "pending"
    assert [app.name for app in list_applications(db_path)] == ["billing"]


def test_replace_issues_is_idempotent(db_path, app):
    issues = [_flog_issue(45.2), _flog_issue(25.0)]
    replace_issues(db_path, app.id, {"flog": issues})
    replace_issues(db_path, app.id, {"flog": issues})
    assert len(list_issues(db_path, app.id, "flog")) == 2
    summary = get_summary(db_path, app.id, "flog")
    assert summary.total_issues == 2
    assert summary.average_score == 35.1


def test_replace_issues_leaves_other_scan_types(db_path, app):
    replace_issues(db_path, app.id, {
        "flog": [_flog_issue(45.2)],
        "reek": [Issue(scan_type="reek", severity="medium", message="TooManyStatements: x")],
    })
    replace_issues(db_path, app.id, {"flog": []})
    assert list_issues(db_path, app.id, "flog") == []
    assert len(list_issues(db_path, app.id, "reek")) == 1
    assert get_summary(db_path, app.id, "flog").total_issues == 0
    assert get_summary(db_path, app.id, "flog").average_score is None
    assert get_summary(db_path, app.id, "reek").medium_severity == 1


def test_one_summary_row_per_scan_type(db_path, app):
    for _ in range(3):
        replace_issues(db_path, app.id, {"flog": [_flog_issue(12.0)]})
    with session(db_path) as conn:
        rows = conn.execute("SELECT COUNT(*) AS value FROM summaries WHERE app_id = ?", (app.id,)).fetchone()
    assert rows["value"] == 1


def test_info_issue_excluded_from_counts(db_path, app):
    issues = [
        Issue(scan_type="test_coverage", severity="medium", message="Low test coverage: 62.5% (5/8 lines)",
              file_path="app/models/user.rb", metric_value=62.5),
        Issue(scan_type="test_coverage", severity="info", message="Overall test coverage: 62.5% across 1 files",
              metric_value=62.5),
    ]
    summaries = replace_issues(db_path, app.id, {"test_coverage": issues}, {"test_coverage": {"overall_coverage": 62.5}})
    summary = summaries["test_coverage"]
    assert summary.total_issues == 1
    assert summary.medium_severity == 1
    assert summary.metadata == {"overall_coverage": 62.5}
    assert get_summary(db_path, app.id, "test_coverage").metadata == {"overall_coverage": 62.5}
    assert len(list_issues(db_path, app.id, "test_coverage")) == 2
    assert count_issues(db_path, app.id) == 1
    assert count_issues(db_path, app.id, include_info=True) == 2


def test_aggregate_buckets():
    counts = aggregate([
        Issue(scan_type="security", severity="critical", message="a"),
        Issue(scan_type="security", severity="high", message="b"),
        Issue(scan_type="security", severity="medium", message="c"),
        Issue(scan_type="security", severity="low", message="d"),
        Issue(scan_type="security", severity=None, message="e"),
    ])
    assert counts == {
        "total_issues": 5,
        "high_severity": 2,
        "medium_severity": 1,
        "low_severity": 1,
        "average_score": None,
    }


def test_delete_application_cascades(db_path, app):
    replace_issues(db_path, app.id, {"flog": [_flog_issue(45.2)]})
    create_scan_run(db_path, app.id, ["flog"])
    delete_application(db_path, app.id)
    with session(db_path) as conn:
        for table in ("issues", "summaries", "scan_runs"):
            assert conn.execute(f"SELECT COUNT(*) AS value FROM {table}").fetchone()["value"] == 0


def test_scan_run_lifecycle(db_path, app):
    run = create_scan_run(db_path, app.id, ["rubocop", "security"])
    assert run.status == "running"
    complete_scan_run(db_path, run, RUN_COMPLETED, 7)
    # a completed run is not rewritten
    complete_scan_run(db_path, run, RUN_COMPLETED_WITH_ERRORS, 99)

    stored = list_scan_runs(db_path, app.id)[0]
    assert stored.status == RUN_COMPLETED
    assert stored.total_issues == 7
    assert stored.scan_types == ["rubocop", "security"]
    assert stored.duration_seconds is not None and stored.duration_seconds >= 0


def test_list_stale_applications(db_path):
    fresh = upsert_application(db_path, "fresh", "/srv/fresh")
    old = upsert_application(db_path, "old", "/srv/old")
    upsert_application(db_path, "never", "/srv/never")
    update_application_status(db_path, fresh.id, "healthy")
    update_application_status(db_path, old.id, "healthy", "2000-01-01T00:00:00+00:00")
    assert [app.name for app in list_stale_applications(db_path)] == ["never", "old"]


def test_foreign_keys_enforced(db_path):
    with pytest.raises(sqlite3.IntegrityError):
        with session(db_path) as conn:
            conn.execute(
                "INSERT INTO issues (app_id, scan_type, message, scanned_at) VALUES (999, 'flog', 'x', 'now')"
            )
