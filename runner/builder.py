"""Migration file rendering for srtd.

A migration is a template's text wrapped in a fixed envelope:

    -- Generated with srtd from template: <template_dir>/<file>
    -- <banner>                       (blank line when no banner)

    BEGIN;                            (only when wrap_in_transaction)

    <template content>

    COMMIT;
    <footer>                          (omitted when empty)
    -- Last built: <previous migration file or Never>
    -- Built with https://github.com/t1mmen/srtd

Filenames come from the migration_filename pattern with $timestamp, $prefix
("<prefix>-" or "") and $migrationName substituted. The result must stay
inside the migration directory.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from runner.templates import Template

logger = logging.getLogger(__name__)

BUNDLE_NAME = "bundle"
BUILT_WITH = "-- Built with https://github.com/t1mmen/srtd"


class MigrationPathError(Exception):
    """Raised when a migration filename would land outside the migration directory."""


@dataclass
class MigrationFile:
    file_name: str
    path: Path
    content: str
    timestamp: str


def interpolate_migration_filename(
    pattern: str, timestamp: str, migration_name: str, prefix: str = ""
) -> str:
    """Substitute $timestamp, $migrationName and $prefix in a filename pattern."""
    prefix_value = f"{prefix}-" if prefix else ""
    return (
        pattern.replace("$timestamp", timestamp)
        .replace("$migrationName", migration_name)
        .replace("$prefix", prefix_value)
    )


def resolve_migration_path(migration_dir: Path, file_name: str) -> Path:
    """Join file_name onto migration_dir, rejecting anything that escapes it.

    Raises:
        MigrationPathError: If the resolved path is outside migration_dir.
    """
    base = migration_dir.resolve()
    target = (base / file_name).resolve()
    if target == base or not target.is_relative_to(base):
        raise MigrationPathError(
            f'Invalid migration path: "{file_name}" would write outside migration directory'
        )
    return target


def format_migration_content(
    source_label: str,
    content: str,
    *,
    banner: str = "",
    footer: str = "",
    wrap_in_transaction: bool = True,
    last_built: str | None = None,
    bundled: bool = False,
) -> str:
    header_prefix = "Template" if bundled else "Generated with srtd from template"
    header = f"-- {header_prefix}: {source_label}\n"
    banner_line = f"-- {banner}\n" if banner else "\n"
    body = f"BEGIN;\n\n{content}\n\nCOMMIT;" if wrap_in_transaction else content
    footer_text = f"{footer}\n" if footer else ""
    trailer = f"{footer_text}-- Last built: {last_built or 'Never'}\n{BUILT_WITH}\n"
    return f"{header}{banner_line}\n{body}\n{trailer}"


class MigrationBuilder:
    """Renders and writes migration files for one project's configuration."""

    def __init__(self, project_root: Path, config: dict[str, Any]) -> None:
        self.project_root = project_root
        self.template_dir = config["template_dir"]
        self.migration_dir = project_root / config["migration_dir"]
        self.prefix = config["migration_prefix"]
        self.filename_pattern = config["migration_filename"]
        self.banner = config["banner"]
        self.footer = config["footer"]
        self.wrap_in_transaction = config["wrap_in_transaction"]

    def _label(self, template: Template) -> str:
        return f"{self.template_dir}/{template.display_path}"

    def _target(self, migration_name: str, timestamp: str) -> tuple[str, Path]:
        file_name = interpolate_migration_filename(
            self.filename_pattern, timestamp, migration_name, self.prefix
        )
        return file_name, resolve_migration_path(self.migration_dir, file_name)

    def render(
        self, template: Template, timestamp: str, last_migration_file: str | None = None
    ) -> MigrationFile:
        """Render one template's migration.

        Raises:
            MigrationPathError: If the filename pattern escapes the migration directory.
        """
        file_name, path = self._target(template.name, timestamp)
        content = format_migration_content(
            self._label(template),
            template.content,
            banner=self.banner,
            footer=self.footer,
            wrap_in_transaction=self.wrap_in_transaction,
            last_built=last_migration_file,
        )
        return MigrationFile(file_name=file_name, path=path, content=content, timestamp=timestamp)

    def render_bundle(
        self, templates: list[tuple[Template, str | None]], timestamp: str
    ) -> MigrationFile:
        """Render several templates, each with its own envelope, into one migration.

        Args:
            templates: (template, previous migration file) pairs in execution order.
        """
        file_name, path = self._target(BUNDLE_NAME, timestamp)
        sections = [
            format_migration_content(
                self._label(template),
                template.content,
                banner=self.banner,
                footer=self.footer,
                wrap_in_transaction=self.wrap_in_transaction,
                last_built=last_migration_file,
                bundled=True,
            )
            for template, last_migration_file in templates
        ]
        content = "\n\n".join(s.strip() for s in sections) + "\n"
        return MigrationFile(file_name=file_name, path=path, content=content, timestamp=timestamp)

    def write(self, migration: MigrationFile) -> Path:
        migration.path.parent.mkdir(parents=True, exist_ok=True)
        migration.path.write_text(migration.content, encoding="utf-8")
        logger.info("Wrote migration %s", migration.path)
        return migration.path
