"""Setup diagnostics for srtd (`srtd doctor`).

Each check is read-only apart from a scratch file written to and removed from
the migration directory. Checks never raise; a failure is a CheckResult with
passed=False and a message saying what is wrong.
"""

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from runner.orchestrator import Orchestrator
from srtd.config import CONFIG_FILENAME

logger = logging.getLogger(__name__)

SCRATCH_FILE = ".srtd-doctor-test"


@dataclass
class CheckResult:
    name: str
    passed: bool
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "passed": self.passed}
        if self.message is not None:
            data["message"] = self.message
        return data


def check_config_exists(orchestrator: Orchestrator) -> CheckResult:
    exists = (orchestrator.project_root / CONFIG_FILENAME).is_file()
    return CheckResult(
        "Config file exists",
        exists,
        None if exists else f"{CONFIG_FILENAME} not found in {orchestrator.project_root}",
    )


def check_config_schema(orchestrator: Orchestrator) -> CheckResult:
    messages = [w.message for w in orchestrator.warnings if w.source == "config"]
    return CheckResult("Config schema valid", not messages, "; ".join(messages) or None)


def _check_dir(orchestrator: Orchestrator, key: str, label: str) -> CheckResult:
    exists = (orchestrator.project_root / orchestrator.config[key]).is_dir()
    return CheckResult(
        f"{label} directory exists",
        exists,
        None if exists else f"{label} directory not found: {orchestrator.config[key]}",
    )


def check_template_dir_exists(orchestrator: Orchestrator) -> CheckResult:
    return _check_dir(orchestrator, "template_dir", "Template")


def check_migration_dir_exists(orchestrator: Orchestrator) -> CheckResult:
    return _check_dir(orchestrator, "migration_dir", "Migration")


def check_template_dir_readable(orchestrator: Orchestrator) -> CheckResult:
    try:
        os.listdir(orchestrator.template_dir)
    except OSError as e:
        return CheckResult("Template directory readable", False, str(e))
    return CheckResult("Template directory readable", True)


def check_migration_dir_writable(orchestrator: Orchestrator) -> CheckResult:
    scratch = orchestrator.project_root / orchestrator.config["migration_dir"] / SCRATCH_FILE
    try:
        scratch.write_text("test", encoding="utf-8")
    except OSError as e:
        return CheckResult("Migration directory writable", False, str(e))
    try:
        scratch.unlink()
    except OSError as e:
        logger.warning("Could not remove %s: %s", scratch, e)
    return CheckResult("Migration directory writable", True)


def _check_log(orchestrator: Orchestrator, source: str, label: str) -> CheckResult:
    messages = [w.message for w in orchestrator.warnings if w.source == source]
    if messages:
        return CheckResult(f"{label} valid", False, f"Invalid {label.lower()}: {'; '.join(messages)}")
    return CheckResult(f"{label} valid", True)


def check_build_log(orchestrator: Orchestrator) -> CheckResult:
    return _check_log(orchestrator, "buildLog", "Build log")


def check_local_build_log(orchestrator: Orchestrator) -> CheckResult:
    return _check_log(orchestrator, "localBuildLog", "Local build log")


def check_database(orchestrator: Orchestrator) -> CheckResult:
    gateway = orchestrator.gateway
    if not gateway.test_connection():
        return CheckResult(
            "Database connection", False, "Connection failed. Check database server is running."
        )
    stats = gateway.stats()
    return CheckResult(
        "Database connection", True, f"pool: {stats.total} open, {stats.idle} idle"
    )


def check_template_count(orchestrator: Orchestrator) -> CheckResult:
    if not orchestrator.discover():
        return CheckResult(
            "Template count",
            False,
            f"No SQL templates found in {orchestrator.config['template_dir']}",
        )
    return CheckResult("Template count", True)


CHECKS: list[Callable[[Orchestrator], CheckResult]] = [
    check_config_exists,
    check_config_schema,
    check_template_dir_exists,
    check_migration_dir_exists,
    check_template_dir_readable,
    check_migration_dir_writable,
    check_build_log,
    check_local_build_log,
    check_database,
    check_template_count,
]


def run_checks(orchestrator: Orchestrator) -> list[CheckResult]:
    """Run every check in order."""
    results = []
    for check in CHECKS:
        result = check(orchestrator)
        logger.debug("%s: %s", result.name, "ok" if result.passed else result.message)
        results.append(result)
    return results
