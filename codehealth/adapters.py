from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from codehealth.drift import run_drift_checks
from codehealth.models import Application, Issue, ScanOutcome
from codehealth.normalizer import (
    coverage_from_resultset,
    normalize_brakeman,
    normalize_coverage,
    normalize_flay,
    normalize_flog,
    normalize_reek,
    normalize_rubocop,
)
from codehealth.scanners import (
    DEFAULT_TIMEOUT,
    HIGH_VALUE_COPS,
    ScannerError,
    load_json,
    run_brakeman,
    run_flay,
    run_flog,
    run_reek,
    run_rubocop,
    run_test_suite,
    temp_output_file,
)
from codehealth.storage import replace_issues

LOGGER = logging.getLogger(__name__)

ScanResults = dict[str, list[Issue]]


class Scanner(ABC):
    """One external tool family wrapped for the scan cycle.

    Subclasses declare ``name``, ``label`` and the ``scan_types`` they own and
    implement ``collect``. Saving and summarizing are shared: ``collect``
    returns issues keyed by scan type and ``scan`` persists exactly those keys,
    so a scan type whose tool failed keeps its previous issues.
    """

    name = ""
    label = ""
    scan_types: tuple[str, ...] = ()

    def __init__(self, db_path: str, settings: dict[str, Any] | None = None) -> None:
        self.db_path = db_path
        self.settings = settings or {}

    @property
    def config(self) -> dict[str, Any]:
        return self.settings.get("scanners", {}).get(self.name, {}) or {}

    @property
    def command_prefix(self) -> list[str]:
        return list(self.settings.get("execution", {}).get("command_prefix", []) or [])

    @property
    def timeout(self) -> int:
        return int(self.settings.get("execution", {}).get("tool_timeout_seconds", DEFAULT_TIMEOUT))

    @property
    def tmp_dir(self) -> str | None:
        return self.settings.get("paths", {}).get("tmp_dir")

    def source_path(self, app: Application) -> Path | None:
        subdir = self.config.get("source_subdir", "app")
        target = Path(app.path, subdir) if subdir else Path(app.path)
        return target if target.is_dir() else None

    def scan(self, app: Application) -> ScanOutcome:
        if not app.is_accessible:
            LOGGER.debug("Skipping %s for %s: %s is not an accessible directory", self.name, app.name, app.path)
            return ScanOutcome(scanner=self.name, status="skipped")

        try:
            results = self.collect(app)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("%s scan failed for %s: %s", self.label, app.name, exc)
            return ScanOutcome(scanner=self.name, status="failed", error=str(exc))

        if results is None:
            return ScanOutcome(scanner=self.name, status="skipped")

        owned = {scan_type: results[scan_type] for scan_type in self.scan_types if scan_type in results}
        try:
            self.save_results(app, owned)
        except sqlite3.Error as exc:
            LOGGER.exception("Saving %s results failed for %s: %s", self.label, app.name, exc)
            return ScanOutcome(scanner=self.name, status="failed", error=str(exc))

        missing = [scan_type for scan_type in self.scan_types if scan_type not in owned]
        if not missing:
            status = "ok"
        elif owned:
            status = "partial"
        else:
            status = "failed"
        return ScanOutcome(
            scanner=self.name,
            status=status,
            scan_types=list(owned),
            issue_count=sum(len(issues) for issues in owned.values()),
            error=f"no results for {', '.join(missing)}" if missing else None,
        )

    @abstractmethod
    def collect(self, app: Application) -> ScanResults | None:
        """Run the tool and return normalized issues per scan type, or None to skip."""

    def summary_metadata(self, scan_type: str, issues: list[Issue]) -> dict[str, Any]:
        return {}

    def save_results(self, app: Application, results: ScanResults) -> None:
        metadata = {scan_type: self.summary_metadata(scan_type, issues) for scan_type, issues in results.items()}
        replace_issues(self.db_path, app.id, results, metadata)


class RubocopScanner(Scanner):
    name = "rubocop"
    label = "RuboCop"
    scan_types = ("rubocop",)

    def collect(self, app: Application) -> ScanResults:
        target = self.source_path(app)
        if target is None:
            return {"rubocop": []}
        with temp_output_file("rubocop", app.name, self.tmp_dir) as output:
            run_rubocop(
                str(target),
                str(output),
                cops=self.config.get("cops") or HIGH_VALUE_COPS,
                command_prefix=self.command_prefix,
                timeout=self.timeout,
            )
            raw = load_json(output)
        if not isinstance(raw, dict):
            raise ScannerError("unexpected rubocop output: expected a JSON object")
        return {"rubocop": normalize_rubocop(raw, base_path=app.path)}


class SecurityScanner(Scanner):
    name = "security"
    label = "Brakeman"
    scan_types = ("security",)

    def collect(self, app: Application) -> ScanResults:
        with temp_output_file("brakeman", app.name, self.tmp_dir) as output:
            run_brakeman(app.path, str(output), command_prefix=self.command_prefix, timeout=self.timeout)
            raw = load_json(output)
        if not isinstance(raw, dict):
            raise ScannerError("unexpected brakeman output: expected a JSON object")
        return {"security": normalize_brakeman(raw, base_path=app.path)}


class StaticAnalysisScanner(Scanner):
    """reek, flog and flay; each sub-tool owns its own scan type."""

    name = "static_analysis"
    label = "Static analysis"
    scan_types = ("reek", "flog", "flay")

    def collect(self, app: Application) -> ScanResults:
        target = self.source_path(app)
        if target is None:
            return {scan_type: [] for scan_type in self.scan_types}

        runners = {
            "reek": self._run_reek,
            "flog": self._run_flog,
            "flay": self._run_flay,
        }
        results: ScanResults = {}
        for scan_type, runner in runners.items():
            try:
                results[scan_type] = runner(app, str(target))
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("%s scan failed for %s: %s", scan_type.capitalize(), app.name, exc)
        return results

    def _run_reek(self, app: Application, target: str) -> list[Issue]:
        stdout = run_reek(target, command_prefix=self.command_prefix, timeout=self.timeout)
        return normalize_reek(json.loads(stdout or "[]"), base_path=app.path)

    def _run_flog(self, app: Application, target: str) -> list[Issue]:
        return normalize_flog(run_flog(target, command_prefix=self.command_prefix, timeout=self.timeout))

    def _run_flay(self, app: Application, target: str) -> list[Issue]:
        return normalize_flay(run_flay(target, command_prefix=self.command_prefix, timeout=self.timeout))


class TestCoverageScanner(Scanner):
    name = "test_coverage"
    label = "Test coverage"
    scan_types = ("test_coverage",)

    __test__ = False  # not a pytest class

    def collect(self, app: Application) -> ScanResults | None:
        resultset = Path(app.path, self.config.get("resultset", "coverage/.resultset.json"))
        if not resultset.exists():
            if not self.config.get("run_tests", True) or not self._has_test_suite(app):
                LOGGER.info("No coverage data or test suite for %s", app.name)
                return None
            run_test_suite(
                app.path,
                self.config.get("test_command") or ["bin/rails", "test"],
                timeout=int(self.config.get("timeout_seconds", 60)),
            )
            if not resultset.exists():
                raise ScannerError(f"test suite did not produce {resultset}")

        coverage = coverage_from_resultset(load_json(resultset))
        report = normalize_coverage(coverage, app.path)
        return {"test_coverage": report.issues}

    def _has_test_suite(self, app: Application) -> bool:
        return any(Path(app.path, name).is_dir() for name in self.config.get("test_dirs", ["test", "spec"]))

    def summary_metadata(self, scan_type: str, issues: list[Issue]) -> dict[str, Any]:
        for issue in issues:
            if issue.is_informational:
                return {"overall_coverage": issue.metric_value}
        return {}


class DriftScanner(Scanner):
    name = "drift"
    label = "Drift"
    scan_types = ("drift",)

    @property
    def golden_path(self) -> Path:
        return Path(self.config.get("golden_path", "~/apps/golden_deployment")).expanduser()

    def collect(self, app: Application) -> ScanResults | None:
        golden = self.golden_path
        if app.name == golden.name or Path(app.path).resolve() == golden.resolve():
            return None
        return {"drift": run_drift_checks(app.name, app.path, str(golden))}


SCANNER_CLASSES: dict[str, type[Scanner]] = {
    cls.name: cls
    for cls in (RubocopScanner, SecurityScanner, StaticAnalysisScanner, TestCoverageScanner, DriftScanner)
}


def build_scanners(settings: dict[str, Any], selected: list[str] | None = None) -> list[Scanner]:
    db_path = settings["paths"]["db_path"]
    scanners: list[Scanner] = []
    for name, cls in SCANNER_CLASSES.items():
        if selected and name not in selected:
            continue
        if not settings.get("scanners", {}).get(name, {}).get("enabled", True):
            continue
        scanners.append(cls(db_path, settings))
    return scanners
