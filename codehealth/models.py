from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_COMPLETED_WITH_ERRORS = "completed_with_errors"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class Application:
    id: int
    name: str
    path: str
    status: str = "pending"
    last_scanned_at: str | None = None
    created_at: str | None = None

    @property
    def is_accessible(self) -> bool:
        path = Path(self.path)
        return path.is_dir() and os.access(path, os.R_OK | os.X_OK)

    @classmethod
    def from_row(cls, row: Any) -> "Application":
        return cls(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            status=row["status"] or "pending",
            last_scanned_at=row["last_scanned_at"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Issue:
    scan_type: str
    message: str
    severity: str | None = None
    file_path: str | None = None
    line_number: int | None = None
    metric_value: float | None = None
    scanned_at: str = field(default_factory=utc_now_iso)
    app_id: int | None = None
    id: int | None = None

    @property
    def is_informational(self) -> bool:
        return self.severity == "info"

    @classmethod
    def from_row(cls, row: Any) -> "Issue":
        return cls(
            id=row["id"],
            app_id=row["app_id"],
            scan_type=row["scan_type"],
            severity=row["severity"],
            message=row["message"],
            file_path=row["file_path"],
            line_number=row["line_number"],
            metric_value=row["metric_value"],
            scanned_at=row["scanned_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Summary:
    app_id: int
    scan_type: str
    total_issues: int = 0
    high_severity: int = 0
    medium_severity: int = 0
    low_severity: int = 0
    average_score: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    scanned_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "Summary":
        return cls(
            app_id=row["app_id"],
            scan_type=row["scan_type"],
            total_issues=row["total_issues"],
            high_severity=row["high_severity"],
            medium_severity=row["medium_severity"],
            low_severity=row["low_severity"],
            average_score=row["average_score"],
            metadata=json.loads(row["metadata_json"] or "{}"),
            scanned_at=row["scanned_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ScanRun:
    id: int
    app_id: int
    started_at: str
    scan_types: list[str]
    status: str = RUN_RUNNING
    completed_at: str | None = None
    total_issues: int = 0

    @property
    def duration_seconds(self) -> float | None:
        started = parse_iso(self.started_at)
        completed = parse_iso(self.completed_at)
        if not started or not completed:
            return None
        return (completed - started).total_seconds()

    @classmethod
    def from_row(cls, row: Any) -> "ScanRun":
        return cls(
            id=row["id"],
            app_id=row["app_id"],
            started_at=row["started_at"],
            scan_types=json.loads(row["scan_types_json"] or "[]"),
            status=row["status"],
            completed_at=row["completed_at"],
            total_issues=row["total_issues"] or 0,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["duration_seconds"] = self.duration_seconds
        return payload


@dataclass
class ScanOutcome:
    """What one adapter invocation did for one application."""

    scanner: str
    status: str
    scan_types: list[str] = field(default_factory=list)
    issue_count: int = 0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status in {"failed", "partial"}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
