from __future__ import annotations

import argparse
import copy
import json
import logging
import os
import sqlite3
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any

import yaml

from codehealth import queries
from codehealth.adapters import SCANNER_CLASSES, Scanner, build_scanners
from codehealth.health import classify
from codehealth.models import (
    RUN_COMPLETED,
    RUN_COMPLETED_WITH_ERRORS,
    Application,
    ScanOutcome,
    ScanRun,
    utc_now_iso,
)
from codehealth.scanners import HIGH_VALUE_COPS
from codehealth.storage import (
    complete_scan_run,
    count_issues,
    create_scan_run,
    get_application,
    get_application_by_name,
    init_db,
    list_applications,
    list_issues,
    list_stale_applications,
    update_application_status,
    upsert_application,
    write_json_file,
)

LOGGER = logging.getLogger(__name__)

_APP_LOCKS: dict[int, threading.Lock] = {}
_APP_LOCKS_GUARD = threading.Lock()


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def load_yaml(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def resolve_settings(path: str | None = None) -> dict[str, Any]:
    settings = load_yaml(path) if path and Path(path).exists() else {}
    settings.setdefault("paths", {})
    settings.setdefault("execution", {})
    settings.setdefault("scanners", {})
    settings["paths"].setdefault("db_path", os.getenv("CODEHEALTH_DB_PATH", "/data/codehealth.db"))
    settings["paths"].setdefault("tmp_dir", os.getenv("CODEHEALTH_TMP_DIR") or None)
    settings["execution"].setdefault("command_prefix", ["bundle", "exec"])
    settings["execution"].setdefault("tool_timeout_seconds", 600)
    settings["execution"].setdefault("max_concurrent_apps", int(os.getenv("CODEHEALTH_MAX_CONCURRENT_APPS", "2")))
    settings["execution"].setdefault("parallel_scanners", False)
    settings["scanners"].setdefault("rubocop", {"enabled": True, "source_subdir": "app", "cops": list(HIGH_VALUE_COPS)})
    settings["scanners"].setdefault("security", {"enabled": True})
    settings["scanners"].setdefault("static_analysis", {"enabled": True, "source_subdir": "app"})
    settings["scanners"].setdefault(
        "test_coverage",
        {
            "enabled": True,
            "resultset": "coverage/.resultset.json",
            "test_command": ["bin/rails", "test"],
            "timeout_seconds": 60,
        },
    )
    settings["scanners"].setdefault("drift", {"enabled": True, "golden_path": "~/apps/golden_deployment"})
    return settings


def application_lock(app_id: int) -> threading.Lock:
    with _APP_LOCKS_GUARD:
        return _APP_LOCKS.setdefault(app_id, threading.Lock())


def run_scanners(app: Application, scanners: list[Scanner], parallel: bool = False) -> list[ScanOutcome]:
    if not parallel or len(scanners) < 2:
        return [scanner.scan(app) for scanner in scanners]
    with ThreadPoolExecutor(max_workers=len(scanners), thread_name_prefix="scanner") as executor:
        return list(executor.map(lambda scanner: scanner.scan(app), scanners))


def scan_application(
    app_id: int,
    settings: dict[str, Any],
    scanners: list[Scanner] | None = None,
) -> ScanRun | None:
    """Run one full scan cycle for an application and return its closed ScanRun.

    Adapter failures are isolated and only downgrade the run to
    ``completed_with_errors``; this function does not raise.
    """
    db_path = settings["paths"]["db_path"]
    try:
        app = get_application(db_path, app_id)
    except sqlite3.Error as exc:
        LOGGER.error("Could not load application %s: %s", app_id, exc)
        return None
    if app is None:
        LOGGER.warning("Application %s not found; nothing to scan", app_id)
        return None

    if scanners is None:
        scanners = build_scanners(settings)
    parallel = bool(settings.get("execution", {}).get("parallel_scanners", False))

    with application_lock(app.id):
        LOGGER.info("Starting scan cycle for %s (%s)", app.name, app.path)
        run = None
        try:
            run = create_scan_run(db_path, app.id, [scan_type for scanner in scanners for scan_type in scanner.scan_types])
            outcomes = run_scanners(app, scanners, parallel=parallel)
            for outcome in outcomes:
                LOGGER.debug("%s for %s: %s", outcome.scanner, app.name, outcome.status)

            app_status = classify(list_issues(db_path, app.id))
            update_application_status(db_path, app.id, app_status, utc_now_iso())
            status = RUN_COMPLETED_WITH_ERRORS if any(outcome.failed for outcome in outcomes) else RUN_COMPLETED
            run = complete_scan_run(db_path, run, status, count_issues(db_path, app.id))
            LOGGER.info(
                "Finished scan cycle for %s: status=%s health=%s issues=%s",
                app.name,
                run.status,
                app_status,
                run.total_issues,
            )
            return run
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Scan cycle failed for %s: %s", app.name, exc)
            if run is None:
                return None
            try:
                return complete_scan_run(db_path, run, RUN_COMPLETED_WITH_ERRORS, run.total_issues)
            except sqlite3.Error:
                LOGGER.exception("Could not close scan run %s for %s", run.id, app.name)
                run.status = RUN_COMPLETED_WITH_ERRORS
                return run


def scan_applications_concurrently(
    app_ids: list[int],
    settings: dict[str, Any],
    scanner_names: list[str] | None = None,
) -> list[ScanRun]:
    max_workers = max(1, int(settings.get("execution", {}).get("max_concurrent_apps", 1)))
    runs: list[ScanRun] = []

    def _scan_app(app_id: int) -> ScanRun | None:
        app_settings = copy.deepcopy(settings)
        try:
            return scan_application(app_id, app_settings, build_scanners(app_settings, scanner_names))
        except Exception:  # noqa: BLE001
            LOGGER.exception("Scan failed for application %s", app_id)
            return None

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="app-scan") as executor:
        futures = [executor.submit(_scan_app, app_id) for app_id in app_ids]
        for future in as_completed(futures):
            run = future.result()
            if run is not None:
                runs.append(run)

    return sorted(runs, key=lambda run: run.app_id)


def load_applications_file(path: str) -> list[tuple[str, str]]:
    data = load_yaml(path)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a mapping with an 'applications' list")
    applications: list[tuple[str, str]] = []
    for item in data.get("applications", []) or []:
        if not isinstance(item, dict) or not item.get("name") or not item.get("path"):
            raise ValueError(f"Each application in {path} needs a name and a path: {item!r}")
        if item.get("enabled", True):
            applications.append((str(item["name"]), str(Path(item["path"]).expanduser())))
    return applications


def parse_scanner_names(value: str | None) -> list[str] | None:
    if not value:
        return None
    names = [name.strip() for name in value.split(",") if name.strip()]
    unknown = sorted(set(names) - set(SCANNER_CLASSES))
    if unknown:
        raise ValueError(f"Unknown scanners: {', '.join(unknown)} (choose from {', '.join(SCANNER_CLASSES)})")
    return names


def resolve_applications(args: argparse.Namespace, db_path: str) -> list[Application]:
    registered: list[Application] = []
    if args.apps_file:
        for name, path in load_applications_file(args.apps_file):
            registered.append(upsert_application(db_path, name, path))
    for name, path in args.register or []:
        registered.append(upsert_application(db_path, name, str(Path(path).expanduser())))

    if args.app:
        applications = []
        for name in args.app:
            app = get_application_by_name(db_path, name)
            if app is None:
                raise ValueError(f"Unknown application: {name}")
            applications.append(app)
    elif registered:
        applications = registered
    else:
        applications = list_applications(db_path)

    if args.stale_only:
        stale_ids = {app.id for app in list_stale_applications(db_path, args.max_age_hours)}
        applications = [app for app in applications if app.id in stale_ids]
    return applications


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Code-quality scan orchestrator for Rails applications")
    parser.add_argument("--settings", default=os.getenv("CODEHEALTH_SETTINGS", "config/settings.yaml"), help="Path to settings YAML")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    parser.add_argument("--apps-file", help="YAML file listing applications to register")
    parser.add_argument("--register", nargs=2, action="append", metavar=("NAME", "PATH"), help="Register an application")
    parser.add_argument("--app", action="append", help="Only scan the named application (repeatable)")
    parser.add_argument("--stale-only", action="store_true", help="Only scan applications not scanned recently")
    parser.add_argument("--max-age-hours", type=float, default=24, help="Staleness window for --stale-only")
    parser.add_argument("--scanners", help="Comma-separated scanners to run (default: all enabled)")
    parser.add_argument("--json-output", help="Optional path for aggregate JSON output")
    return parser


def build_payload(db_path: str, applications: list[Application], runs: list[ScanRun]) -> dict[str, Any]:
    scanned_ids = {app.id for app in applications}
    records = [record for record in queries.list_applications(db_path) if record.id in scanned_ids]
    return {
        "applications": [
            {
                **record.model_dump(),
                "summaries": {
                    scan_type: summary.model_dump()
                    for scan_type, summary in queries.latest_summaries(db_path, record.id).items()
                },
            }
            for record in records
        ],
        "scan_runs": [run.to_dict() for run in runs],
        "generated_at": utc_now_iso(),
    }


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        settings = resolve_settings(args.settings)
        db_path = settings["paths"]["db_path"]
        init_db(db_path)
        scanner_names = parse_scanner_names(args.scanners)
        applications = resolve_applications(args, db_path)
    except (ValueError, OSError, yaml.YAMLError, sqlite3.Error) as exc:
        LOGGER.error("Invalid arguments: %s", exc)
        return 2

    runs = scan_applications_concurrently([app.id for app in applications], settings, scanner_names)
    overall_exit = 4 if any(run.status == RUN_COMPLETED_WITH_ERRORS for run in runs) else 0

    payload = build_payload(db_path, applications, runs)
    if args.json_output:
        write_json_file(args.json_output, payload)
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return overall_exit


if __name__ == "__main__":
    sys.exit(main())
