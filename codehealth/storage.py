from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from codehealth.models import (
    RUN_RUNNING,
    Application,
    Issue,
    ScanRun,
    Summary,
    utc_now_iso,
)
from codehealth.summary import recompute_summary

LOGGER = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS applications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    path TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    last_scanned_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS issues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id INTEGER NOT NULL,
    scan_type TEXT NOT NULL,
    severity TEXT,
    message TEXT NOT NULL,
    file_path TEXT,
    line_number INTEGER,
    metric_value REAL,
    scanned_at TEXT NOT NULL,
    FOREIGN KEY (app_id) REFERENCES applications(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id INTEGER NOT NULL,
    scan_type TEXT NOT NULL,
    total_issues INTEGER NOT NULL DEFAULT 0,
    high_severity INTEGER NOT NULL DEFAULT 0,
    medium_severity INTEGER NOT NULL DEFAULT 0,
    low_severity INTEGER NOT NULL DEFAULT 0,
    average_score REAL,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    scanned_at TEXT NOT NULL,
    UNIQUE (app_id, scan_type),
    FOREIGN KEY (app_id) REFERENCES applications(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS scan_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id INTEGER NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    scan_types_json TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL,
    total_issues INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (app_id) REFERENCES applications(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_issues_app_scan_type ON issues(app_id, scan_type);
CREATE INDEX IF NOT EXISTS idx_issues_severity ON issues(severity);
CREATE INDEX IF NOT EXISTS idx_issues_scanned_at ON issues(scanned_at);
CREATE INDEX IF NOT EXISTS idx_summaries_scanned_at ON summaries(scanned_at);
CREATE INDEX IF NOT EXISTS idx_scan_runs_app_id ON scan_runs(app_id);
CREATE INDEX IF NOT EXISTS idx_applications_last_scanned_at ON applications(last_scanned_at);
"""


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def session(db_path: str) -> Iterator[sqlite3.Connection]:
    """One connection, one transaction: commit on success, roll back on error."""
    conn = connect(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    with session(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
    LOGGER.info("SQLite initialized at %s", db_path)


# -- applications ------------------------------------------------------------

def upsert_application(db_path: str, name: str, path: str) -> Application:
    with session(db_path) as conn:
        conn.execute(
            """
            INSERT INTO applications (name, path, status, created_at)
            VALUES (?, ?, 'pending', ?)
            ON CONFLICT(name) DO UPDATE SET path = excluded.path
            """,
            (name, str(path), utc_now_iso()),
        )
        row = conn.execute("SELECT * FROM applications WHERE name = ?", (name,)).fetchone()
    return Application.from_row(row)


def get_application(db_path: str, app_id: int) -> Application | None:
    with session(db_path) as conn:
        row = conn.execute("SELECT * FROM applications WHERE id = ?", (app_id,)).fetchone()
    return Application.from_row(row) if row else None


def get_application_by_name(db_path: str, name: str) -> Application | None:
    with session(db_path) as conn:
        row = conn.execute("SELECT * FROM applications WHERE name = ?", (name,)).fetchone()
    return Application.from_row(row) if row else None


def list_applications(db_path: str) -> list[Application]:
    with session(db_path) as conn:
        rows = conn.execute("SELECT * FROM applications ORDER BY name COLLATE NOCASE ASC").fetchall()
    return [Application.from_row(row) for row in rows]


def list_stale_applications(db_path: str, max_age_hours: float = 24) -> list[Application]:
    cutoff = (datetime.now(timezone.utc) - timedelta(hours=max_age_hours)).replace(microsecond=0).isoformat()
    with session(db_path) as conn:
        rows = conn.execute(
            """
            SELECT * FROM applications
            WHERE last_scanned_at IS NULL OR last_scanned_at < ?
            ORDER BY name COLLATE NOCASE ASC
            """,
            (cutoff,),
        ).fetchall()
    return [Application.from_row(row) for row in rows]


def update_application_status(db_path: str, app_id: int, status: str, last_scanned_at: str | None = None) -> None:
    with session(db_path) as conn:
        conn.execute(
            "UPDATE applications SET status = ?, last_scanned_at = ? WHERE id = ?",
            (status, last_scanned_at or utc_now_iso(), app_id),
        )


def delete_application(db_path: str, app_id: int) -> None:
    with session(db_path) as conn:
        conn.execute("DELETE FROM applications WHERE id = ?", (app_id,))


# -- issues & summaries ------------------------------------------------------

def replace_issues(
    db_path: str,
    app_id: int,
    results: dict[str, list[Issue]],
    metadata: dict[str, dict[str, Any]] | None = None,
) -> dict[str, Summary]:
    """Swap in the latest issues for each scan type and rebuild its summary.

    Each scan type is replaced in its own transaction, so a reader never sees
    a scan type half cleared.
    """
    metadata = metadata or {}
    summaries: dict[str, Summary] = {}
    for scan_type, issues in results.items():
        with session(db_path) as conn:
            conn.execute("DELETE FROM issues WHERE app_id = ? AND scan_type = ?", (app_id, scan_type))
            conn.executemany(
                """
                INSERT INTO issues (
                    app_id, scan_type, severity, message, file_path,
                    line_number, metric_value, scanned_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        app_id,
                        scan_type,
                        issue.severity,
                        issue.message,
                        issue.file_path,
                        issue.line_number,
                        issue.metric_value,
                        issue.scanned_at,
                    )
                    for issue in issues
                ],
            )
            summaries[scan_type] = recompute_summary(conn, app_id, scan_type, metadata.get(scan_type, {}))
        LOGGER.info("Persisted %s %s issues for app %s", len(issues), scan_type, app_id)
    return summaries


def list_issues(db_path: str, app_id: int, scan_type: str | None = None) -> list[Issue]:
    query = "SELECT * FROM issues WHERE app_id = ?"
    params: list[Any] = [app_id]
    if scan_type:
        query += " AND scan_type = ?"
        params.append(scan_type)
    query += " ORDER BY id ASC"
    with session(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [Issue.from_row(row) for row in rows]


def get_summary(db_path: str, app_id: int, scan_type: str) -> Summary | None:
    with session(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM summaries WHERE app_id = ? AND scan_type = ?",
            (app_id, scan_type),
        ).fetchone()
    return Summary.from_row(row) if row else None


def count_issues(db_path: str, app_id: int, include_info: bool = False) -> int:
    query = "SELECT COUNT(*) AS value FROM issues WHERE app_id = ?"
    if not include_info:
        query += " AND (severity IS NULL OR severity != 'info')"
    with session(db_path) as conn:
        return conn.execute(query, (app_id,)).fetchone()["value"]


# -- scan runs ---------------------------------------------------------------

def create_scan_run(db_path: str, app_id: int, scan_types: list[str]) -> ScanRun:
    started_at = utc_now_iso()
    with session(db_path) as conn:
        cursor = conn.execute(
            "INSERT INTO scan_runs (app_id, started_at, scan_types_json, status) VALUES (?, ?, ?, ?)",
            (app_id, started_at, json.dumps(scan_types), RUN_RUNNING),
        )
        run_id = cursor.lastrowid
    return ScanRun(id=run_id, app_id=app_id, started_at=started_at, scan_types=list(scan_types))


def complete_scan_run(db_path: str, run: ScanRun, status: str, total_issues: int) -> ScanRun:
    completed_at = utc_now_iso()
    with session(db_path) as conn:
        # completed runs are immutable
        conn.execute(
            """
            UPDATE scan_runs SET status = ?, completed_at = ?, total_issues = ?
            WHERE id = ? AND completed_at IS NULL
            """,
            (status, completed_at, total_issues, run.id),
        )
    run.status = status
    run.completed_at = completed_at
    run.total_issues = total_issues
    return run


def list_scan_runs(db_path: str, app_id: int, limit: int = 10) -> list[ScanRun]:
    with session(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM scan_runs WHERE app_id = ? ORDER BY started_at DESC, id DESC LIMIT ?",
            (app_id, limit),
        ).fetchall()
    return [ScanRun.from_row(row) for row in rows]


def write_json_file(path: str | Path, payload: dict | list) -> None:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
