"""Template orchestration for srtd.

Coordinates discovery, classification, dependency ordering, migration
building, database application and build-log bookkeeping.

Batch process (build and apply alike):
    1. Reload both build logs
    2. Read and hash every requested template
    3. Skip what is unchanged (or WIP, for build)
    4. Order the rest by dependency; cycles become per-template errors
    5. Process each template; a failure is recorded and the batch continues
    6. Persist the logs that changed
    7. Return a ProcessedResult
"""

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from db.buildlog import BuildLogStore
from db.client import DatabaseConnectionError, DatabaseGateway
from db.errors import get_error_hint
from runner.builder import BUNDLE_NAME, MigrationBuilder, MigrationPathError
from runner.dependencies import order_by_dependencies
from runner.templates import (
    Template,
    find_templates,
    is_wip_template,
    read_template,
    strip_wip_indicator,
)
from runner.timestamps import next_timestamp
from srtd.models import ProcessedResult, TemplateError, TemplateStatus, ValidationWarning

logger = logging.getLogger(__name__)


class OrchestratorError(Exception):
    """Raised when an operation cannot proceed at all."""


class TemplateNotFoundError(OrchestratorError):
    """Raised when a template path does not exist."""


class TemplateOutsideDirectoryError(OrchestratorError):
    """Raised when a path exists but is not under the template directory."""


class NotWipTemplateError(OrchestratorError):
    """Raised when promoting a template that has no WIP marker."""


class WipTemplateError(OrchestratorError):
    """Raised when registering a WIP template, which is never built."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """Runs build, apply and bookkeeping operations for one project.

    Operations are serialised by an internal lock, so the watch loop's worker
    thread and the caller never process a batch at the same time.
    """

    def __init__(
        self,
        project_root: Path,
        config: dict[str, Any],
        gateway: DatabaseGateway | None = None,
        store: BuildLogStore | None = None,
        config_warnings: Iterable[ValidationWarning] = (),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.project_root = project_root.resolve()
        self.config = config
        self.template_dir = (self.project_root / config["template_dir"]).resolve()
        self.wip_indicator: str = config["wip_indicator"]
        self.store = store or BuildLogStore.from_config(self.project_root, config)
        self.builder = MigrationBuilder(self.project_root, config)
        self.config_warnings = list(config_warnings)
        self._gateway = gateway
        self._clock = clock
        self._lock = threading.Lock()
        self.store.load_all()

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def gateway(self) -> DatabaseGateway:
        if self._gateway is None:
            self._gateway = DatabaseGateway(self.config["pg_connection"])
        return self._gateway

    @property
    def warnings(self) -> list[ValidationWarning]:
        return [*self.config_warnings, *self.store.warnings]

    def close(self) -> None:
        if self._gateway is not None:
            self._gateway.disconnect()

    # ── discovery ───────────────────────────────────────

    def discover(self) -> list[Path]:
        if not self.template_dir.is_dir():
            logger.warning("Template directory %s does not exist", self.template_dir)
            return []
        return find_templates(self.template_dir, self.config["filter"])

    def read(self, path: Path) -> Template:
        return read_template(path, self.project_root, self.template_dir, self.wip_indicator)

    def display(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.template_dir).as_posix()
        except ValueError:
            return path.name

    def _collect(self, paths: Iterable[Path] | None, result: ProcessedResult) -> list[Template]:
        templates = []
        for path in self.discover() if paths is None else paths:
            try:
                templates.append(self.read(path))
            except (OSError, ValueError) as e:
                display = self.display(path)
                logger.warning("Could not read template %s: %s", display, e)
                result.errors.append(
                    TemplateError(
                        file=display,
                        template_name=path.name.removesuffix(".sql"),
                        error=f"Could not read template: {e}",
                    )
                )
        return templates

    def _order(self, templates: list[Template]) -> tuple[list[Template], list[tuple[Template, str]]]:
        """Dependency order, plus (template, message) for every template in a cycle."""
        by_key = {t.relative_path: t for t in templates}
        order = order_by_dependencies([(t.relative_path, t.content) for t in templates])
        cyclic = []
        for cycle in order.cycles:
            names = " -> ".join(by_key[k].display_path for k in [*cycle, cycle[0]])
            cyclic.extend((by_key[k], f"Circular dependency: {names}") for k in cycle)
        return [by_key[k] for k in order.order], cyclic

    # ── classification ──────────────────────────────────

    def needs_build(self, template: Template) -> bool:
        if template.wip:
            return False
        return self.store.get_state(template.path).last_build_hash != template.current_hash

    def needs_apply(self, template: Template) -> bool:
        return self.store.get_state(template.path).last_applied_hash != template.current_hash

    def _status(self, template: Template) -> TemplateStatus:
        return TemplateStatus(
            template=template.display_path,
            name=template.name,
            wip=template.wip,
            current_hash=template.current_hash,
            needs_build=self.needs_build(template),
            needs_apply=self.needs_apply(template),
            build_state=self.store.get_state(template.path),
        )

    def status(self) -> list[TemplateStatus]:
        """Read-only classification of every discovered template."""
        with self._lock:
            self.store.load_all()
            result = ProcessedResult()
            return [self._status(t) for t in self._collect(None, result)]

    # ── build ───────────────────────────────────────────

    def build(
        self,
        paths: Iterable[Path] | None = None,
        force: bool = False,
        bundle: bool = False,
        apply: bool = False,
    ) -> ProcessedResult:
        """Write migration files for changed, non-WIP templates.

        Args:
            paths: Templates to consider. Defaults to every discovered template.
            force: Treat every template as changed.
            bundle: Write all built templates into a single migration.
            apply: Apply to the database afterwards and merge the results.
        """
        if paths is not None:
            paths = list(paths)
        result = ProcessedResult()

        with self._lock:
            self.store.load_all()
            candidates = []
            for template in self._collect(paths, result):
                if template.wip:
                    logger.info("Skipping WIP template %s", template.display_path)
                    result.skipped.append(template.display_path)
                elif not force and not self.needs_build(template):
                    logger.debug("Skipping unchanged template %s", template.display_path)
                    result.skipped.append(template.display_path)
                else:
                    candidates.append(template)

            ordered, cyclic = self._order(candidates)
            for template, message in cyclic:
                self._build_failed(template, message, result)

            if bundle:
                self._build_bundle(ordered, result)
            else:
                for template in ordered:
                    self._build_one(template, result)

            self.store.save_dirty()

        if apply:
            result.merge(self.apply(paths, force=force))
        return result

    def _build_one(self, template: Template, result: ProcessedResult) -> None:
        state = self.store.get_state(template.path)
        allocation = next_timestamp(self.store.last_timestamp, self._clock())
        try:
            migration = self.builder.render(
                template, allocation.timestamp, state.last_migration_file
            )
            self.builder.write(migration)
        except (MigrationPathError, OSError) as e:
            self._build_failed(template, str(e), result)
            return

        self.store.update_timestamp(allocation.new_last_timestamp)
        self._build_succeeded(template, migration.file_name)
        result.built.append(template.display_path)
        logger.info("Built %s -> %s", template.display_path, migration.file_name)

    def _build_bundle(self, templates: list[Template], result: ProcessedResult) -> None:
        if not templates:
            return
        allocation = next_timestamp(self.store.last_timestamp, self._clock())
        entries = [(t, self.store.get_state(t.path).last_migration_file) for t in templates]
        try:
            migration = self.builder.render_bundle(entries, allocation.timestamp)
            self.builder.write(migration)
        except (MigrationPathError, OSError) as e:
            logger.error("Failed to write bundled migration: %s", e)
            result.errors.append(
                TemplateError(file=BUNDLE_NAME, template_name=BUNDLE_NAME, error=str(e))
            )
            return

        self.store.update_timestamp(allocation.new_last_timestamp)
        for template in templates:
            self._build_succeeded(template, migration.file_name)
            result.built.append(template.display_path)
        logger.info("Built %d templates -> %s", len(templates), migration.file_name)

    def _build_succeeded(self, template: Template, migration_file: str) -> None:
        self.store.set_state(
            template.path,
            last_build_hash=template.current_hash,
            last_build_date=self._clock().isoformat(),
            last_migration_file=migration_file,
            last_build_error=None,
        )

    def _build_failed(self, template: Template, message: str, result: ProcessedResult) -> None:
        logger.error("Build failed for %s: %s", template.display_path, message)
        self.store.set_state(template.path, last_build_error=message)
        result.errors.append(
            TemplateError(file=template.display_path, template_name=template.name, error=message)
        )

    # ── apply ───────────────────────────────────────────

    def apply(self, paths: Iterable[Path] | None = None, force: bool = False) -> ProcessedResult:
        """Execute changed templates (WIP included) against the database."""
        result = ProcessedResult()

        with self._lock:
            self.store.load_all()
            candidates = []
            for template in self._collect(paths, result):
                if not force and not self.needs_apply(template):
                    logger.debug("Skipping unchanged template %s", template.display_path)
                    result.skipped.append(template.display_path)
                else:
                    candidates.append(template)

            ordered, cyclic = self._order(candidates)
            for template, message in cyclic:
                self._apply_failed(template, message, None, result)

            connection_error: DatabaseConnectionError | None = None
            for template in ordered:
                if connection_error is None:
                    try:
                        outcome = self.gateway.execute(template.content, template.name)
                    except DatabaseConnectionError as e:
                        connection_error = e
                if connection_error is not None:
                    message = str(connection_error)
                    self._apply_failed(template, message, get_error_hint(None, message), result)
                elif outcome.error is not None:
                    self._apply_failed(template, outcome.error.message, outcome.error.hint, result)
                else:
                    self.store.set_state(
                        template.path,
                        last_applied_hash=template.current_hash,
                        last_applied_date=self._clock().isoformat(),
                        last_applied_error=None,
                    )
                    result.applied.append(template.display_path)
                    logger.info("Applied %s", template.display_path)

            self.store.save_dirty()

        return result

    def _apply_failed(
        self, template: Template, message: str, hint: str | None, result: ProcessedResult
    ) -> None:
        logger.error("Apply failed for %s: %s", template.display_path, message)
        self.store.set_state(template.path, last_applied_error=message)
        result.errors.append(
            TemplateError(
                file=template.display_path, template_name=template.name, error=message, hint=hint
            )
        )

    # ── register / promote ──────────────────────────────

    def _resolve(self, path: str | Path) -> Path:
        """Find a template given as-is, or relative to the cwd, project root or template dir.

        Raises:
            TemplateNotFoundError: If no candidate exists.
            TemplateOutsideDirectoryError: If it exists outside the template directory.
        """
        path = Path(path)
        candidates = [path, Path.cwd() / path, self.project_root / path, self.template_dir / path]
        for candidate in candidates:
            if candidate.is_file():
                resolved = candidate.resolve()
                break
        else:
            raise TemplateNotFoundError(f"Template not found: {path}")

        if not resolved.is_relative_to(self.template_dir):
            raise TemplateOutsideDirectoryError(
                f"Template {resolved} is outside the template directory {self.template_dir}"
            )
        return resolved

    def register(self, path: str | Path) -> Template:
        """Mark a template as built at its current content without writing a migration.

        Registering again updates the same entry.

        Raises:
            WipTemplateError: If the filename carries the WIP marker.
        """
        resolved = self._resolve(path)
        if is_wip_template(resolved, self.wip_indicator):
            raise WipTemplateError(
                f"Template {self.display(resolved)} is a WIP template and is never built; "
                f"promote it first"
            )
        with self._lock:
            self.store.load_all()
            template = self.read(resolved)
            self.store.set_state(
                template.path,
                last_build_hash=template.current_hash,
                last_build_date=self._clock().isoformat(),
                last_build_error=None,
            )
            self.store.save_dirty()
        logger.info("Registered %s", template.display_path)
        return template

    def promote(self, path: str | Path) -> TemplateStatus:
        """Drop the WIP marker from a template's filename so it gets built.

        Returns:
            The reclassified template under its new name.

        Raises:
            NotWipTemplateError: If the filename has no WIP marker.
            OrchestratorError: If the promoted filename already exists.
        """
        resolved = self._resolve(path)
        if not is_wip_template(resolved, self.wip_indicator):
            raise NotWipTemplateError(
                f"Template {self.display(resolved)} is not a WIP template "
                f"(no '{self.wip_indicator}' in its filename)"
            )
        target = strip_wip_indicator(resolved, self.wip_indicator)
        if target.exists():
            raise OrchestratorError(f"Cannot promote: {self.display(target)} already exists")

        with self._lock:
            self.store.load_all()
            try:
                resolved.rename(target)
            except OSError as e:
                raise OrchestratorError(f"Could not rename {resolved} to {target}: {e}") from e
            self.store.rename(resolved, target)
            self.store.save_dirty()
            status = self._status(self.read(target))

        logger.info("Promoted %s -> %s", self.display(resolved), status.template)
        return status

    # ── maintenance ─────────────────────────────────────

    def clear_build_logs(self, kind: Literal["shared", "local", "both"] = "local") -> None:
        with self._lock:
            self.store.clear(kind)
