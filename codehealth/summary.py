from __future__ import annotations

import json
import sqlite3
from typing import Any, Iterable

from codehealth.models import Issue, Summary, utc_now_iso


def aggregate(issues: Iterable[Issue]) -> dict[str, Any]:
    """Roll an issue set up into summary counts.

    Informational issues (the coverage aggregate) stay out of every count but
    their metric still feeds the average.
    """
    total = high = medium = low = 0
    metrics: list[float] = []
    for issue in issues:
        if issue.metric_value is not None:
            metrics.append(float(issue.metric_value))
        if issue.severity == "info":
            continue
        total += 1
        if issue.severity in {"critical", "high"}:
            high += 1
        elif issue.severity == "medium":
            medium += 1
        elif issue.severity == "low":
            low += 1
    return {
        "total_issues": total,
        "high_severity": high,
        "medium_severity": medium,
        "low_severity": low,
        "average_score": round(sum(metrics) / len(metrics), 2) if metrics else None,
    }


def recompute_summary(
    conn: sqlite3.Connection,
    app_id: int,
    scan_type: str,
    metadata: dict[str, Any] | None = None,
    scanned_at: str | None = None,
) -> Summary:
    """Rebuild the single summary row for (app_id, scan_type) from current issues.

    Runs on the caller's connection so it lands in the same transaction as the
    issue replacement. ``metadata=None`` keeps whatever metadata is stored.
    """
    rows = conn.execute(
        "SELECT * FROM issues WHERE app_id = ? AND scan_type = ?",
        (app_id, scan_type),
    ).fetchall()
    counts = aggregate(Issue.from_row(row) for row in rows)

    if metadata is None:
        existing = conn.execute(
            "SELECT metadata_json FROM summaries WHERE app_id = ? AND scan_type = ?",
            (app_id, scan_type),
        ).fetchone()
        metadata = json.loads(existing["metadata_json"] or "{}") if existing else {}

    summary = Summary(app_id=app_id, scan_type=scan_type, metadata=metadata, scanned_at=scanned_at or utc_now_iso(), **counts)
    conn.execute(
        """
        INSERT INTO summaries (
            app_id, scan_type, total_issues, high_severity, medium_severity,
            low_severity, average_score, metadata_json, scanned_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(app_id, scan_type) DO UPDATE SET
            total_issues = excluded.total_issues,
            high_severity = excluded.high_severity,
            medium_severity = excluded.medium_severity,
            low_severity = excluded.low_severity,
            average_score = excluded.average_score,
            metadata_json = excluded.metadata_json,
            scanned_at = excluded.scanned_at
        """,
        (
            summary.app_id,
            summary.scan_type,
            summary.total_issues,
            summary.high_severity,
            summary.medium_severity,
            summary.low_severity,
            summary.average_score,
            json.dumps(summary.metadata, ensure_ascii=False),
            summary.scanned_at,
        ),
    )
    return summary
