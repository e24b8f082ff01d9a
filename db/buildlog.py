"""Build log persistence for srtd.

Two logs share one schema:
    shared: build state (lastBuildHash, lastMigrationFile, ...), committed to git
    local:  apply state (lastAppliedHash, ...), private to each developer

Logs are read in full, mutated in memory and written back in full through a
temp file + os.replace, so an interrupted write never leaves a truncated log.
A missing log is an empty log; an unreadable one is an empty log plus a
ValidationWarning. Loading never raises.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError

from srtd.models import (
    APPLY_FIELDS,
    BUILD_FIELDS,
    BuildLog,
    TemplateBuildState,
    ValidationWarning,
    empty_build_log,
)

logger = logging.getLogger(__name__)

LogKind = Literal["shared", "local"]

_WARNING_SOURCE: dict[str, Literal["buildLog", "localBuildLog"]] = {
    "shared": "buildLog",
    "local": "localBuildLog",
}


def log_key(path: Path, project_root: Path) -> str:
    """Build log key for a template: its POSIX path relative to the project root.

    Templates reached through a symlink or a template_dir outside the root get
    a "../" key rather than an error.
    """
    return Path(os.path.relpath(path.resolve(), project_root.resolve())).as_posix()


def load_build_log(
    path: Path, kind: LogKind = "shared"
) -> tuple[BuildLog, ValidationWarning | None]:
    """Read a build log from disk.

    Returns:
        (log, warning). warning is None unless the file existed but could not
        be used, in which case log is a fresh empty log.
    """
    source = _WARNING_SOURCE[kind]
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return empty_build_log(), None
    except OSError as e:
        logger.warning("Could not read build log %s: %s", path, e)
        return empty_build_log(), ValidationWarning(
            source=source, type="parse", message=f"Could not read file: {e}", path=str(path)
        )

    if not raw.strip():
        return empty_build_log(), ValidationWarning(
            source=source, type="parse", message="Empty content", path=str(path)
        )

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Build log %s is not valid JSON: %s", path, e)
        return empty_build_log(), ValidationWarning(
            source=source, type="parse", message=f"Invalid JSON: {e}", path=str(path)
        )

    try:
        log = BuildLog.model_validate(data)
    except ValidationError as e:
        message = _format_validation_error(e)
        logger.warning("Build log %s failed validation: %s", path, message)
        return empty_build_log(), ValidationWarning(
            source=source, type="validation", message=message, path=str(path)
        )

    return log, None


def save_build_log(path: Path, log: BuildLog) -> None:
    """Atomically replace the log at path with the given content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(log.to_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for issue in error.errors():
        loc = ".".join(str(p) for p in issue["loc"])
        parts.append(f"{loc}: {issue['msg']}" if loc else issue["msg"])
    return "; ".join(parts)


class BuildLogStore:
    """In-memory view over the shared and local build logs of one project.

    Keys are template paths relative to the project root, POSIX separators.
    """

    def __init__(self, project_root: Path, shared_path: Path, local_path: Path) -> None:
        self.project_root = project_root
        self.paths: dict[LogKind, Path] = {"shared": shared_path, "local": local_path}
        self.logs: dict[LogKind, BuildLog] = {
            "shared": empty_build_log(),
            "local": empty_build_log(),
        }
        self.warnings: list[ValidationWarning] = []
        self._dirty: set[LogKind] = set()

    @classmethod
    def from_config(cls, project_root: Path, config: dict[str, Any]) -> "BuildLogStore":
        return cls(
            project_root,
            project_root / config["build_log"],
            project_root / config["local_build_log"],
        )

    # ── load / save ─────────────────────────────────────

    def load(self, kind: LogKind) -> BuildLog:
        """Reload one log from disk, discarding unsaved changes to it."""
        log, warning = load_build_log(self.paths[kind], kind)
        self.warnings = [w for w in self.warnings if w.source != _WARNING_SOURCE[kind]]
        if warning is not None:
            self.warnings.append(warning)
        self.logs[kind] = log
        self._dirty.discard(kind)
        return log

    def load_all(self) -> list[ValidationWarning]:
        self.load("shared")
        self.load("local")
        return list(self.warnings)

    def save(self, kind: LogKind, log: BuildLog | None = None) -> None:
        if log is not None:
            self.logs[kind] = log
        save_build_log(self.paths[kind], self.logs[kind])
        self._dirty.discard(kind)
        logger.debug("Saved %s build log to %s", kind, self.paths[kind])

    def save_dirty(self) -> None:
        """Write every log that changed since it was loaded."""
        for kind in ("shared", "local"):
            if kind in self._dirty:
                self.save(kind)

    # ── per-template state ──────────────────────────────

    def key_for(self, template_path: Path | str) -> str:
        path = Path(template_path)
        if path.is_absolute():
            return log_key(path, self.project_root)
        return path.as_posix()

    def get_state(self, template_path: Path | str) -> TemplateBuildState:
        """Merged view: build fields from the shared log, apply fields from the local log."""
        key = self.key_for(template_path)
        shared = self.logs["shared"].templates.get(key)
        local = self.logs["local"].templates.get(key)
        merged: dict[str, Any] = {}
        if shared is not None:
            merged.update({f: getattr(shared, f) for f in BUILD_FIELDS})
        if local is not None:
            merged.update({f: getattr(local, f) for f in APPLY_FIELDS})
        return TemplateBuildState(**merged)

    def has_entry(self, template_path: Path | str) -> bool:
        key = self.key_for(template_path)
        return any(key in self.logs[kind].templates for kind in self.logs)

    def set_state(self, template_path: Path | str, **changes: str | None) -> None:
        """Update fields of one template, routing each to the log that owns it.

        A value of None removes the field.
        """
        unknown = set(changes) - set(BUILD_FIELDS) - set(APPLY_FIELDS)
        if unknown:
            raise ValueError(f"Unknown build state fields: {sorted(unknown)}")

        key = self.key_for(template_path)
        for kind, owned in (("shared", BUILD_FIELDS), ("local", APPLY_FIELDS)):
            updates = {k: v for k, v in changes.items() if k in owned}
            if not updates:
                continue
            templates = self.logs[kind].templates
            current = templates.get(key, TemplateBuildState())
            templates[key] = current.model_copy(update=updates)
            self._dirty.add(kind)

    def rename(self, old_path: Path | str, new_path: Path | str) -> None:
        """Move a template's entries to a new key in both logs."""
        old_key = self.key_for(old_path)
        new_key = self.key_for(new_path)
        for kind in ("shared", "local"):
            templates = self.logs[kind].templates
            if old_key in templates:
                templates[new_key] = templates.pop(old_key)
                self._dirty.add(kind)

    # ── timestamps ──────────────────────────────────────

    @property
    def last_timestamp(self) -> str:
        """The most recent migration timestamp seen by either log."""
        values = [self.logs[k].last_timestamp for k in ("shared", "local")]
        values = [v for v in values if v.isdigit()]
        return max(values, key=int) if values else ""

    def update_timestamp(self, timestamp: str) -> None:
        for kind in ("shared", "local"):
            self.logs[kind].last_timestamp = timestamp
            self._dirty.add(kind)

    # ── maintenance ─────────────────────────────────────

    def clear(self, kind: LogKind | Literal["both"]) -> None:
        """Delete log files from disk and reset them in memory."""
        kinds: tuple[LogKind, ...] = ("shared", "local") if kind == "both" else (kind,)
        for k in kinds:
            self.paths[k].unlink(missing_ok=True)
            self.logs[k] = empty_build_log()
            self._dirty.discard(k)
            logger.info("Cleared %s build log %s", k, self.paths[k])

    def recent_activity(self, limit: int = 10) -> list[dict[str, Any]]:
        """Latest builds and applies across both logs, newest first."""
        activity: list[dict[str, Any]] = []
        for key, state in self.logs["shared"].templates.items():
            if state.last_build_date and state.last_migration_file:
                activity.append(
                    {
                        "template": key,
                        "action": "built",
                        "timestamp": state.last_build_date,
                        "target": state.last_migration_file,
                    }
                )
        for key, state in self.logs["local"].templates.items():
            if state.last_applied_date:
                activity.append(
                    {"template": key, "action": "applied", "timestamp": state.last_applied_date}
                )

        activity.sort(key=lambda a: _parse_date(a["timestamp"]), reverse=True)
        return activity[:limit]


def _parse_date(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
