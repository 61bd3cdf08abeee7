from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import tempfile
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600

# only high-value cops, no style nitpicking
HIGH_VALUE_COPS = [
    "Lint/Debugger",
    "Lint/UnusedMethodArgument",
    "Lint/UnusedBlockArgument",
    "Lint/UselessAssignment",
    "Lint/ShadowingOuterLocalVariable",
    "Lint/AmbiguousOperator",
    "Lint/Void",
    "Security/Eval",
    "Security/Open",
    "Security/MarshalLoad",
    "Performance/RegexpMatch",
    "Performance/StringReplacement",
    "Performance/RedundantMerge",
    "Rails/OutputSafety",
    "Rails/UniqBeforePluck",
    "Rails/FindEach",
    "Rails/HasManyOrHasOneDependent",
]


class ScannerError(RuntimeError):
    pass


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def run_command(command: list[str], cwd: str | None = None, timeout: int = 3600, env: dict[str, str] | None = None) -> tuple[int, str, str]:
    LOGGER.info("Executing command: %s", " ".join(command))
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            env=env or os.environ.copy(),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise ScannerError(f"{command[0]} timed out after {timeout}s") from exc
    return process.returncode, process.stdout, process.stderr


def safe_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)


@contextmanager
def temp_output_file(tool: str, app_name: str, tmp_dir: str | None = None) -> Iterator[Path]:
    """Reserve a per-application output path and remove it on every exit path."""
    directory = Path(tmp_dir or tempfile.gettempdir())
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{tool}_{safe_name(app_name)}_{uuid.uuid4().hex[:8]}.json"
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


def build_command(tool: str, args: Sequence[str], command_prefix: Sequence[str] | None = None) -> list[str]:
    command = [*(command_prefix or []), tool, *args]
    if not command_exists(command[0]):
        raise ScannerError(f"{command[0]} not found in PATH")
    return command


def _failure_detail(stdout: str, stderr: str) -> str:
    return (stderr or stdout or "no output").strip()[-2000:]


def run_rubocop(
    target_path: str,
    output_path: str,
    cops: Sequence[str] | None = None,
    command_prefix: Sequence[str] | None = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> dict[str, Any]:
    args: list[str] = []
    selected = list(cops if cops is not None else HIGH_VALUE_COPS)
    if selected:
        # --only takes a single comma-separated list
        args.extend(["--only", ",".join(selected)])
    args.extend(["--format", "json", "--out", output_path, target_path])
    command = build_command("rubocop", args, command_prefix)
    code, stdout, stderr = run_command(command, timeout=timeout)
    # rubocop exits 1 when offenses are found
    if code not in (0, 1) or not Path(output_path).exists():
        raise ScannerError(f"rubocop failed (exit {code}): {_failure_detail(stdout, stderr)}")
    return {"exit_code": code, "stdout_path": output_path, "stderr": stderr}


def run_brakeman(
    app_path: str,
    output_path: str,
    command_prefix: Sequence[str] | None = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> dict[str, Any]:
    command = build_command(
        "brakeman",
        [app_path, "-q", "-f", "json", "-o", output_path, "--no-exit-on-warn", "--no-exit-on-error"],
        command_prefix,
    )
    code, stdout, stderr = run_command(command, timeout=timeout)
    if not Path(output_path).exists():
        raise ScannerError(f"brakeman failed (exit {code}): {_failure_detail(stdout, stderr)}")
    return {"exit_code": code, "stdout_path": output_path, "stderr": stderr}


def run_reek(target_path: str, command_prefix: Sequence[str] | None = None, timeout: int = DEFAULT_TIMEOUT) -> str:
    command = build_command("reek", [target_path, "--format", "json"], command_prefix)
    code, stdout, stderr = run_command(command, timeout=timeout)
    # reek exits 2 when smells are found
    if code not in (0, 2):
        raise ScannerError(f"reek failed (exit {code}): {_failure_detail(stdout, stderr)}")
    return stdout


def run_flog(target_path: str, command_prefix: Sequence[str] | None = None, timeout: int = DEFAULT_TIMEOUT) -> str:
    command = build_command("flog", [target_path], command_prefix)
    code, stdout, stderr = run_command(command, timeout=timeout)
    if code != 0:
        raise ScannerError(f"flog failed (exit {code}): {_failure_detail(stdout, stderr)}")
    return stdout


def run_flay(target_path: str, command_prefix: Sequence[str] | None = None, timeout: int = DEFAULT_TIMEOUT) -> str:
    command = build_command("flay", [target_path], command_prefix)
    code, stdout, stderr = run_command(command, timeout=timeout)
    if code != 0:
        raise ScannerError(f"flay failed (exit {code}): {_failure_detail(stdout, stderr)}")
    return stdout


def run_test_suite(app_path: str, test_command: Sequence[str], timeout: int = 60) -> dict[str, Any]:
    """Run the application's own test suite so it writes a coverage resultset.

    Test failures are not scan failures: a red suite still produces coverage.
    """
    if not test_command:
        raise ScannerError("no test command configured")
    executable = Path(app_path, test_command[0])
    if not executable.exists() and not command_exists(test_command[0]):
        raise ScannerError(f"{test_command[0]} not found for {app_path}")
    env = os.environ.copy()
    env["COVERAGE"] = "true"
    code, stdout, stderr = run_command(list(test_command), cwd=app_path, timeout=timeout, env=env)
    return {"exit_code": code, "stderr": stderr}


def load_json(path: str | Path) -> dict[str, Any] | list[Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)
