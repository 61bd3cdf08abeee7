from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable

from codehealth.models import Issue, utc_now_iso

LOGGER = logging.getLogger(__name__)

SCAN_TYPE = "drift"

DEPLOY_CONFIG = "config/deploy.rb"
PRODUCTION_CONFIG = "config/environments/production.rb"
LOCKFILE = "Gemfile.lock"

GEM_SPEC_RE = re.compile(r"^\s{4}([\w-]+)\s+\(([^)]+)\)", re.MULTILINE)


def _issue(severity: str, message: str, file_path: str) -> Issue:
    return Issue(scan_type=SCAN_TYPE, severity=severity, message=message, file_path=file_path, scanned_at=utc_now_iso())


def parse_gemfile_lock(path: Path) -> dict[str, str]:
    return {name: version for name, version in GEM_SPEC_RE.findall(path.read_text(encoding="utf-8"))}


def check_deployment_config(app_path: Path, golden_path: Path) -> list[Issue]:
    deploy_file = app_path / DEPLOY_CONFIG
    if not deploy_file.exists():
        return [_issue("critical", "Missing config/deploy.rb - deployment not configured", DEPLOY_CONFIG)]
    if "set :application" not in deploy_file.read_text(encoding="utf-8"):
        return [_issue("high", "Deployment config missing :application setting", DEPLOY_CONFIG)]
    return []


def check_gem_versions(app_path: Path, golden_path: Path) -> list[Issue]:
    app_lock = app_path / LOCKFILE
    golden_lock = golden_path / LOCKFILE
    if not app_lock.exists() or not golden_lock.exists():
        return []
    app_gems = parse_gemfile_lock(app_lock)
    golden_gems = parse_gemfile_lock(golden_lock)
    app_rails = app_gems.get("rails")
    golden_rails = golden_gems.get("rails")
    if app_rails and golden_rails and app_rails != golden_rails:
        return [
            _issue(
                "medium",
                f"Rails version ({app_rails}) differs from golden deployment ({golden_rails})",
                LOCKFILE,
            )
        ]
    return []


def check_tailwind_setup(app_path: Path, golden_path: Path) -> list[Issue]:
    production = app_path / PRODUCTION_CONFIG
    if not production.exists():
        return []
    if "tailwindcss:build" not in production.read_text(encoding="utf-8"):
        return [_issue("medium", "Tailwind CSS build task may not be configured for deployment", PRODUCTION_CONFIG)]
    return []


def check_path_based_routing(app_path: Path, golden_path: Path) -> list[Issue]:
    production = app_path / PRODUCTION_CONFIG
    if not production.exists():
        return []
    if "relative_url_root" not in production.read_text(encoding="utf-8"):
        return [
            _issue(
                "high",
                "Path-based routing (relative_url_root) not configured - app may not work in production",
                PRODUCTION_CONFIG,
            )
        ]
    return []


DRIFT_CHECKS: list[tuple[str, Callable[[Path, Path], list[Issue]]]] = [
    ("deployment config", check_deployment_config),
    ("gem version", check_gem_versions),
    ("tailwind", check_tailwind_setup),
    ("path-based routing", check_path_based_routing),
]


def run_drift_checks(app_name: str, app_path: str, golden_path: str) -> list[Issue]:
    issues: list[Issue] = []
    for label, check in DRIFT_CHECKS:
        try:
            issues.extend(check(Path(app_path), Path(golden_path)))
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.error("Drift check (%s) failed for %s: %s", label, app_name, exc)
    return issues
