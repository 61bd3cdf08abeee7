from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

from codehealth.storage import session


class ApplicationRecord(BaseModel):
    id: int
    name: str
    path: str
    status: str
    last_scanned_at: str | None = None
    created_at: str | None = None


class IssueRecord(BaseModel):
    id: int
    app_id: int
    scan_type: str
    severity: str | None = None
    message: str
    file_path: str | None = None
    line_number: int | None = None
    metric_value: float | None = None
    scanned_at: str


class SummaryRecord(BaseModel):
    app_id: int
    scan_type: str
    total_issues: int
    high_severity: int
    medium_severity: int
    low_severity: int
    average_score: float | None = None
    metadata: dict[str, Any] = {}
    scanned_at: str


class ScanRunRecord(BaseModel):
    id: int
    app_id: int
    started_at: str
    completed_at: str | None = None
    scan_types: list[str] = []
    status: str
    total_issues: int


class FleetOverview(BaseModel):
    total_applications: int
    applications_by_status: dict[str, int]
    total_issues: int
    critical_or_high_issues: int
    last_scanned_at: str | None = None


def list_applications(db_path: str, status: str | None = None) -> list[ApplicationRecord]:
    query = "SELECT * FROM applications WHERE 1=1"
    params: list[Any] = []
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY name COLLATE NOCASE ASC"
    with session(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [ApplicationRecord(**dict(row)) for row in rows]


def recent_issues(
    db_path: str,
    app_id: int,
    limit: int = 100,
    scan_type: str | None = None,
    severity: str | None = None,
) -> list[IssueRecord]:
    """Newest issues first, optionally narrowed to one scan type or severity."""
    query = "SELECT * FROM issues WHERE app_id = ?"
    params: list[Any] = [app_id]
    if scan_type:
        query += " AND scan_type = ?"
        params.append(scan_type)
    if severity:
        query += " AND severity = ?"
        params.append(severity)
    query += " ORDER BY scanned_at DESC, id DESC LIMIT ?"
    params.append(limit)
    with session(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [IssueRecord(**dict(row)) for row in rows]


def latest_summaries(db_path: str, app_id: int) -> dict[str, SummaryRecord]:
    with session(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM summaries WHERE app_id = ? ORDER BY scan_type ASC",
            (app_id,),
        ).fetchall()
    summaries: dict[str, SummaryRecord] = {}
    for row in rows:
        payload = dict(row)
        payload.pop("id", None)
        payload["metadata"] = json.loads(payload.pop("metadata_json") or "{}")
        summaries[row["scan_type"]] = SummaryRecord(**payload)
    return summaries


def recent_scan_runs(db_path: str, app_id: int | None = None, limit: int = 20) -> list[ScanRunRecord]:
    query = "SELECT * FROM scan_runs WHERE 1=1"
    params: list[Any] = []
    if app_id is not None:
        query += " AND app_id = ?"
        params.append(app_id)
    query += " ORDER BY started_at DESC, id DESC LIMIT ?"
    params.append(limit)
    with session(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    records = []
    for row in rows:
        payload = dict(row)
        payload["scan_types"] = json.loads(payload.pop("scan_types_json") or "[]")
        records.append(ScanRunRecord(**payload))
    return records


def fleet_overview(db_path: str) -> FleetOverview:
    with session(db_path) as conn:
        status_rows = conn.execute(
            "SELECT status, COUNT(*) AS total FROM applications GROUP BY status"
        ).fetchall()
        total_issues = conn.execute(
            "SELECT COUNT(*) AS value FROM issues WHERE severity IS NULL OR severity != 'info'"
        ).fetchone()["value"]
        critical_or_high = conn.execute(
            "SELECT COUNT(*) AS value FROM issues WHERE severity IN ('critical', 'high')"
        ).fetchone()["value"]
        last_scanned_at = conn.execute(
            "SELECT MAX(last_scanned_at) AS value FROM applications"
        ).fetchone()["value"]
    by_status = {row["status"]: row["total"] for row in status_rows}
    return FleetOverview(
        total_applications=sum(by_status.values()),
        applications_by_status=by_status,
        total_issues=total_issues,
        critical_or_high_issues=critical_or_high,
        last_scanned_at=last_scanned_at,
    )
