from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codehealth.models import Issue, utc_now_iso
from codehealth.severity import (
    COVERAGE_TARGET_PCT,
    DUPLICATION_SEVERITY,
    INFO_SEVERITY,
    complexity_severity,
    coverage_severity,
    lint_severity,
    security_severity,
    smell_severity,
)

TEST_DIRECTORY_NAMES = {"test", "spec"}


def _rel_path(base_path: str | None, file_path: str | None) -> str | None:
    if not file_path:
        return None
    if base_path and Path(file_path).is_absolute():
        try:
            return str(Path(file_path).resolve().relative_to(Path(base_path).resolve()))
        except ValueError:
            pass
    return file_path


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_rubocop(raw: dict[str, Any], base_path: str | None = None, scan_type: str = "rubocop", scanned_at: str | None = None) -> list[Issue]:
    scanned_at = scanned_at or utc_now_iso()
    issues: list[Issue] = []
    for file_data in raw.get("files", []) or []:
        offenses = file_data.get("offenses")
        if not isinstance(offenses, list):
            continue
        file_path = _rel_path(base_path, file_data.get("path"))
        for offense in offenses:
            location = offense.get("location", {}) or {}
            issues.append(
                Issue(
                    scan_type=scan_type,
                    severity=lint_severity(offense.get("severity")),
                    message=f"{offense.get('cop_name')}: {offense.get('message')}",
                    file_path=file_path,
                    line_number=_int_or_none(location.get("start_line", location.get("line"))),
                    scanned_at=scanned_at,
                )
            )
    return issues


def normalize_brakeman(raw: dict[str, Any], base_path: str | None = None, scan_type: str = "security", scanned_at: str | None = None) -> list[Issue]:
    scanned_at = scanned_at or utc_now_iso()
    issues: list[Issue] = []
    for warning in raw.get("warnings", []) or []:
        issues.append(
            Issue(
                scan_type=scan_type,
                severity=security_severity(warning.get("confidence")),
                message=f"{warning.get('warning_type')}: {warning.get('message')}",
                file_path=_rel_path(base_path, warning.get("file")),
                line_number=_int_or_none(warning.get("line")),
                scanned_at=scanned_at,
            )
        )
    return issues


def normalize_reek(raw: list[dict[str, Any]], base_path: str | None = None, scan_type: str = "reek", scanned_at: str | None = None) -> list[Issue]:
    """Normalize reek JSON.

    Older reek releases group smells per file (``[{"source", "smells": [...]}]``),
    reek 6 emits one flat object per smell with ``source`` on each. Both are
    accepted.
    """
    scanned_at = scanned_at or utc_now_iso()
    issues: list[Issue] = []
    if not isinstance(raw, list):
        return issues

    for file_data in raw:
        if not isinstance(file_data, dict):
            continue
        if "smell_type" in file_data:
            smells = [file_data]
        elif isinstance(file_data.get("smells"), list):
            smells = file_data["smells"]
        else:
            continue
        for smell in smells:
            lines = smell.get("lines") or []
            issues.append(
                Issue(
                    scan_type=scan_type,
                    severity=smell_severity(),
                    message=f"{smell.get('smell_type')}: {smell.get('message')}",
                    file_path=_rel_path(base_path, smell.get("source") or file_data.get("source")),
                    line_number=_int_or_none(lines[0]) if lines else None,
                    scanned_at=scanned_at,
                )
            )
    return issues


class FlogReportParser:
    """Two-state scanner over ``flog`` text output.

    A header line (``app/models/user.rb: (45.2)``) sets the current file; each
    following score line (``   45.2:  User#complex_method``) becomes an issue
    attributed to that file until the next header.
    """

    HEADER_RE = re.compile(r"^(.+):\s+\(")
    SCORE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?):\s+(.+?)\s*$")
    TOTALS_RE = re.compile(r"^flog[ /]")

    def __init__(self, scan_type: str = "flog", scanned_at: str | None = None) -> None:
        self.scan_type = scan_type
        self.scanned_at = scanned_at
        self.reset()

    def reset(self) -> None:
        self.current_file: str | None = None
        self.issues: list[Issue] = []

    def feed(self, line: str) -> None:
        score_match = self.SCORE_RE.match(line)
        if score_match:
            location = score_match.group(2)
            if self.TOTALS_RE.match(location):
                return
            score = float(score_match.group(1))
            self.issues.append(
                Issue(
                    scan_type=self.scan_type,
                    severity=complexity_severity(score),
                    message=f"Complexity ({score:.1f}): {location}",
                    file_path=self.current_file,
                    metric_value=score,
                    scanned_at=self.scanned_at or utc_now_iso(),
                )
            )
            return
        header_match = self.HEADER_RE.match(line)
        if header_match:
            self.current_file = header_match.group(1).strip()

    def parse(self, text: str) -> list[Issue]:
        self.reset()
        for line in text.splitlines():
            self.feed(line)
        return self.issues


class FlayReportParser:
    """Groups ``flay`` output into one issue per similarity finding.

    Location lines attach to the most recently started finding; the first
    location wins.
    """

    FINDING_RE = re.compile(r"(?:Similar|IDENTICAL) code found")
    LOCATION_RE = re.compile(r"^\s*(\S.*?):(\d+)\s*$")

    def __init__(self, scan_type: str = "flay", scanned_at: str | None = None) -> None:
        self.scan_type = scan_type
        self.scanned_at = scanned_at
        self.reset()

    def reset(self) -> None:
        self.current: Issue | None = None
        self.issues: list[Issue] = []

    def feed(self, line: str) -> None:
        if self.FINDING_RE.search(line):
            self.current = Issue(
                scan_type=self.scan_type,
                severity=DUPLICATION_SEVERITY,
                message=line.strip(),
                scanned_at=self.scanned_at or utc_now_iso(),
            )
            self.issues.append(self.current)
            return
        location_match = self.LOCATION_RE.match(line)
        if location_match and self.current is not None:
            if self.current.file_path is None:
                self.current.file_path = location_match.group(1)
            if self.current.line_number is None:
                self.current.line_number = int(location_match.group(2))

    def parse(self, text: str) -> list[Issue]:
        self.reset()
        for line in text.splitlines():
            self.feed(line)
        return self.issues


def normalize_flog(text: str, scan_type: str = "flog", scanned_at: str | None = None) -> list[Issue]:
    return FlogReportParser(scan_type=scan_type, scanned_at=scanned_at).parse(text or "")


def normalize_flay(text: str, scan_type: str = "flay", scanned_at: str | None = None) -> list[Issue]:
    return FlayReportParser(scan_type=scan_type, scanned_at=scanned_at).parse(text or "")


@dataclass
class CoverageReport:
    issues: list[Issue] = field(default_factory=list)
    overall_coverage: float = 0.0
    covered_lines: int = 0
    executable_lines: int = 0
    files_considered: int = 0


def coverage_from_resultset(payload: dict[str, Any]) -> dict[str, Any]:
    """Merge the per-suite ``coverage`` maps of a SimpleCov ``.resultset.json``."""
    merged: dict[str, Any] = {}
    if not isinstance(payload, dict):
        raise ValueError("coverage resultset must be a JSON object")
    for suite in payload.values():
        if not isinstance(suite, dict):
            continue
        coverage = suite.get("coverage") or {}
        if isinstance(coverage, dict):
            merged.update(coverage)
    return merged


def _line_hits(entry: Any) -> list[Any]:
    # simplecov >= 0.18 nests the array under "lines"
    if isinstance(entry, dict):
        entry = entry.get("lines")
    return entry if isinstance(entry, list) else []


def _is_test_path(relative: str) -> bool:
    directories = Path(relative).parts[:-1]
    return any(part in TEST_DIRECTORY_NAMES for part in directories)


def _relative_to_root(app_root: str, file_path: str) -> str | None:
    try:
        return Path(file_path).resolve().relative_to(Path(app_root).resolve()).as_posix()
    except ValueError:
        return None


def normalize_coverage(coverage: dict[str, Any], app_root: str, scan_type: str = "test_coverage", scanned_at: str | None = None) -> CoverageReport:
    scanned_at = scanned_at or utc_now_iso()
    report = CoverageReport()

    for file_path, entry in sorted(coverage.items()):
        relative = _relative_to_root(app_root, file_path)
        if relative is None or _is_test_path(relative):
            continue
        hits = _line_hits(entry)
        executable = [hit for hit in hits if isinstance(hit, (int, float))]
        if not executable:
            continue
        covered = sum(1 for hit in executable if hit > 0)
        ratio = covered / len(executable) * 100
        percentage = round(ratio, 2)

        report.files_considered += 1
        report.covered_lines += covered
        report.executable_lines += len(executable)

        # thresholds apply to the exact ratio, rounding is for display only
        if ratio < COVERAGE_TARGET_PCT:
            report.issues.append(
                Issue(
                    scan_type=scan_type,
                    severity=coverage_severity(ratio),
                    message=f"Low test coverage: {percentage}% ({covered}/{len(executable)} lines)",
                    file_path=relative,
                    metric_value=percentage,
                    scanned_at=scanned_at,
                )
            )

    if report.executable_lines:
        report.overall_coverage = round(report.covered_lines / report.executable_lines * 100, 2)
    report.issues.append(
        Issue(
            scan_type=scan_type,
            severity=INFO_SEVERITY,
            message=f"Overall test coverage: {report.overall_coverage}% across {report.files_considered} files",
            metric_value=report.overall_coverage,
            scanned_at=scanned_at,
        )
    )
    return report
