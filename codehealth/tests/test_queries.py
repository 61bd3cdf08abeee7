from codehealth import queries
from codehealth.models import RUN_COMPLETED, Issue
from codehealth.storage import (
    complete_scan_run,
    create_scan_run,
    replace_issues,
    update_application_status,
    upsert_application,
)


def test_list_applications_records(db_path, app):
    update_application_status(db_path, app.id, "warning")
    upsert_application(db_path, "Admin", "/srv/admin")
    records = queries.list_applications(db_path)
    assert [record.name for record in records] == ["Admin", "billing"]
    assert queries.list_applications(db_path, status="warning")[0].name == "billing"


def test_recent_issues_newest_first(db_path, app):
    replace_issues(db_path, app.id, {
        "rubocop": [Issue(scan_type="rubocop", severity="high", message="older", scanned_at="2024-01-01T00:00:00+00:00")],
        "reek": [Issue(scan_type="reek", severity="medium", message="newer", scanned_at="2024-02-01T00:00:00+00:00")],
    })
    records = queries.recent_issues(db_path, app.id)
    assert [record.message for record in records] == ["newer", "older"]
    assert [record.message for record in queries.recent_issues(db_path, app.id, severity="high")] == ["older"]


def test_latest_summaries_keyed_by_scan_type(db_path, app):
    replace_issues(
        db_path,
        app.id,
        {"test_coverage": [Issue(scan_type="test_coverage", severity="info", message="Overall test coverage: 91.0% across 3 files",
                                 metric_value=91.0)]},
        {"test_coverage": {"overall_coverage": 91.0}},
    )
    summaries = queries.latest_summaries(db_path, app.id)
    assert list(summaries) == ["test_coverage"]
    assert summaries["test_coverage"].total_issues == 0
    assert summaries["test_coverage"].average_score == 91.0
    assert summaries["test_coverage"].metadata == {"overall_coverage": 91.0}


def test_recent_scan_runs(db_path, app):
    run = create_scan_run(db_path, app.id, ["rubocop"])
    complete_scan_run(db_path, run, RUN_COMPLETED, 3)
    records = queries.recent_scan_runs(db_path, app.id)
    assert len(records) == 1
    assert records[0].scan_types == ["rubocop"]
    assert records[0].total_issues == 3
    assert records[0].status == RUN_COMPLETED


def test_fleet_overview(db_path, app):
    other = upsert_application(db_path, "storefront", "/srv/storefront")
    update_application_status(db_path, app.id, "critical")
    replace_issues(db_path, app.id, {"security": [
        Issue(scan_type="security", severity="critical", message="SQL Injection: x"),
        Issue(scan_type="security", severity="medium", message="Redirect: y"),
    ]})
    replace_issues(db_path, other.id, {"test_coverage": [
        Issue(scan_type="test_coverage", severity="info", message="Overall test coverage: 0.0% across 0 files", metric_value=0.0),
    ]})

    overview = queries.fleet_overview(db_path)
    assert overview.total_applications == 2
    assert overview.applications_by_status == {"critical": 1, "pending": 1}
    assert overview.total_issues == 2
    assert overview.critical_or_high_issues == 1
