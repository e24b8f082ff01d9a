"""CLI entry point for srtd.

Commands:
    srtd init      — write srtd.config.json and ignore the local build log
    srtd build     — write migration files for changed templates
    srtd apply     — apply changed templates to the database
    srtd watch     — apply templates as they change
    srtd register  — mark templates as built without writing migrations
    srtd promote   — drop the WIP marker from a template's filename
    srtd clear     — delete build logs
    srtd status    — list templates and what they need
    srtd doctor    — check the project setup and database connection
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from db.client import install_shutdown_handlers
from runner.doctor import run_checks
from runner.orchestrator import Orchestrator, OrchestratorError
from runner.watcher import TemplateWatcher, WatchEvent
from srtd.config import (
    ConfigError,
    ensure_gitignored,
    find_project_root,
    load_config,
    read_config,
    write_default_config,
)
from srtd.models import ProcessedResult


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option(
    "--project-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root. Defaults to the nearest directory with srtd.config.json or supabase/",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, project_root: Path | None) -> None:
    """srtd: repeatable SQL templates for Postgres migrations."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"project_root": project_root}


def _open(ctx: click.Context) -> Orchestrator:
    """Resolve the project and build an Orchestrator, exiting on config errors."""
    try:
        root = ctx.obj["project_root"] or find_project_root()
        config, warnings = read_config(root)
    except ConfigError as e:
        click.echo(f"Config error: {e}", err=True)
        sys.exit(1)

    install_shutdown_handlers()
    orchestrator = Orchestrator(Path(root), config, config_warnings=warnings)
    for warning in orchestrator.warnings:
        click.echo(f"Warning ({warning.source}): {warning.message}", err=True)
    return orchestrator


def _echo_result(result: ProcessedResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    for template in result.built:
        click.echo(f"  built    {template}")
    for template in result.applied:
        click.echo(f"  applied  {template}")
    for template in result.skipped:
        click.echo(f"  skipped  {template}")
    for error in result.errors:
        click.echo(f"  error    {error.file}: {error.error}", err=True)
        if error.hint:
            click.echo(f"           hint: {error.hint}", err=True)

    click.echo(
        f"{len(result.built)} built, {len(result.applied)} applied, "
        f"{len(result.skipped)} skipped, {len(result.errors)} errors"
    )


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create srtd.config.json and the template directory."""
    root = ctx.obj["project_root"] or Path.cwd()

    config_path, created = write_default_config(root)
    click.echo(f"Created {config_path}" if created else f"Config already exists: {config_path}")

    try:
        config = load_config(root)
    except ConfigError as e:
        click.echo(f"Config error: {e}", err=True)
        sys.exit(1)

    template_dir = root / config["template_dir"]
    if not template_dir.exists():
        template_dir.mkdir(parents=True)
        click.echo(f"Created {template_dir}")

    if ensure_gitignored(root, config["local_build_log"]):
        click.echo(f"Added {config['local_build_log']} to .gitignore")

    click.echo("Done.")


@main.command()
@click.option("--force", is_flag=True, help="Rebuild templates even if unchanged")
@click.option("--bundle", is_flag=True, help="Bundle all templates into a single migration")
@click.option("--apply", "apply_after", is_flag=True, help="Apply to the database after building")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def build(ctx: click.Context, force: bool, bundle: bool, apply_after: bool, as_json: bool) -> None:
    """Write migration files for changed templates."""
    with _open(ctx) as orchestrator:
        result = orchestrator.build(force=force, bundle=bundle, apply=apply_after)
    _echo_result(result, as_json)
    if result.errors:
        sys.exit(1)


@main.command()
@click.option("--force", is_flag=True, help="Apply templates even if unchanged")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def apply(ctx: click.Context, force: bool, as_json: bool) -> None:
    """Apply changed templates directly to the database."""
    with _open(ctx) as orchestrator:
        result = orchestrator.apply(force=force)
    _echo_result(result, as_json)
    if result.errors:
        sys.exit(1)


def _echo_event(event: WatchEvent, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(event.to_dict()))
        return
    stamp = event.timestamp.astimezone().strftime("%H:%M:%S")
    if event.type == "error":
        click.echo(f"{stamp} error    {event.template}: {event.error}", err=True)
        if event.hint:
            click.echo(f"         hint: {event.hint}", err=True)
    else:
        click.echo(f"{stamp} {event.type:<8} {event.template}")


async def _watch(orchestrator: Orchestrator, initial: bool, as_json: bool) -> None:
    async with TemplateWatcher(orchestrator, initial_process=initial) as watcher:
        async for event in watcher.events():
            _echo_event(event, as_json)


@main.command()
@click.option("--initial", is_flag=True, help="Apply every changed template on startup")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON lines")
@click.pass_context
def watch(ctx: click.Context, initial: bool, as_json: bool) -> None:
    """Apply templates to the database as they change. Ctrl-C to stop."""
    orchestrator = _open(ctx)
    if not as_json:
        click.echo(f"Watching {orchestrator.template_dir}")
    try:
        asyncio.run(_watch(orchestrator, initial, as_json))
    except KeyboardInterrupt:
        click.echo("Stopped.")


@main.command()
@click.argument("paths", nargs=-1, required=True)
@click.pass_context
def register(ctx: click.Context, paths: tuple[str, ...]) -> None:
    """Mark templates as built without writing migration files."""
    failed = False
    with _open(ctx) as orchestrator:
        for path in paths:
            try:
                template = orchestrator.register(path)
            except OrchestratorError as e:
                click.echo(f"Error: {e}", err=True)
                failed = True
                continue
            click.echo(f"Registered {template.display_path}")
    if failed:
        sys.exit(1)


@main.command()
@click.argument("path")
@click.pass_context
def promote(ctx: click.Context, path: str) -> None:
    """Promote a WIP template so it is included in builds."""
    with _open(ctx) as orchestrator:
        try:
            status = orchestrator.promote(path)
        except OrchestratorError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Promoted to {status.template}. Run `srtd build` to generate its migration.")


@main.command()
@click.option(
    "--logs",
    type=click.Choice(["local", "shared", "both"]),
    default="local",
    show_default=True,
    help="Which build log to delete",
)
@click.pass_context
def clear(ctx: click.Context, logs: str) -> None:
    """Delete build logs so templates are rebuilt or reapplied."""
    with _open(ctx) as orchestrator:
        orchestrator.clear_build_logs(logs)
    click.echo(f"Cleared {logs} build log{'s' if logs == 'both' else ''}.")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the status as JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """List templates with their build and apply state."""
    with _open(ctx) as orchestrator:
        statuses = orchestrator.status()
        activity = orchestrator.store.recent_activity()

    if as_json:
        click.echo(
            json.dumps(
                {"templates": [s.to_dict() for s in statuses], "recentActivity": activity},
                indent=2,
            )
        )
        return

    if not statuses:
        click.echo("No templates found.")
        return
    for s in statuses:
        flags = [
            flag
            for flag, on in (("wip", s.wip), ("needs build", s.needs_build), ("needs apply", s.needs_apply))
            if on
        ]
        migration = s.build_state.last_migration_file or "-"
        click.echo(f"  {s.template:<40} {migration:<50} {', '.join(flags) or 'up to date'}")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the check results as JSON")
@click.pass_context
def doctor(ctx: click.Context, as_json: bool) -> None:
    """Check config, directories, build logs and the database connection."""
    with _open(ctx) as orchestrator:
        results = run_checks(orchestrator)

    failed = [r for r in results if not r.passed]
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        for r in results:
            click.echo(f"  {'ok  ' if r.passed else 'FAIL'} {r.name}")
            if r.message and not r.passed:
                click.echo(f"       {r.message}")
        passed = len(results) - len(failed)
        if failed:
            noun = "issue" if len(failed) == 1 else "issues"
            click.echo(f"{passed} checks passed, {len(failed)} {noun} found")
        else:
            click.echo(f"{passed} checks passed, no issues found")
    if failed:
        sys.exit(1)
