"""Tests for runner/orchestrator.py — build, apply, register and promote.

The database is replaced by FakeGateway; build logs and migrations are real
files under tmp_path.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from db.client import DatabaseConnectionError, DatabaseError, ExecutionResult
from runner.orchestrator import (
    NotWipTemplateError,
    Orchestrator,
    OrchestratorError,
    TemplateNotFoundError,
    TemplateOutsideDirectoryError,
    WipTemplateError,
)
from runner.templates import compute_hash
from srtd.config import DEFAULTS

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeGateway:
    """Records executed templates; fails those named in `failures`."""

    def __init__(
        self, failures: dict[str, DatabaseError] | None = None, unreachable: bool = False
    ) -> None:
        self.failures = failures or {}
        self.unreachable = unreachable
        self.executed: list[str] = []
        self.disconnects = 0

    def execute(self, sql: str, template_name: str) -> ExecutionResult:
        if self.unreachable:
            raise DatabaseConnectionError("Could not connect to database after 3 attempts", 3)
        self.executed.append(template_name)
        if template_name in self.failures:
            return ExecutionResult(error=self.failures[template_name])
        return ExecutionResult()

    def disconnect(self) -> None:
        self.disconnects += 1


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    (tmp_path / DEFAULTS["template_dir"]).mkdir(parents=True)
    return tmp_path


@pytest.fixture()
def template_dir(project: Path) -> Path:
    return project / DEFAULTS["template_dir"]


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


def _orchestrator(project: Path, gateway: FakeGateway, **overrides: object) -> Orchestrator:
    config = dict(DEFAULTS, **overrides)
    return Orchestrator(project, config, gateway=gateway, clock=lambda: NOW)


def _migrations(project: Path) -> list[str]:
    migration_dir = project / DEFAULTS["migration_dir"]
    if not migration_dir.exists():
        return []
    return sorted(p.name for p in migration_dir.iterdir())


def _shared_log(project: Path) -> dict:
    return json.loads((project / DEFAULTS["build_log"]).read_text())


def _local_log(project: Path) -> dict:
    return json.loads((project / DEFAULTS["local_build_log"]).read_text())


class TestBuild:
    def test_first_build(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "audit.sql").write_text("create table audit();")
        orch = _orchestrator(project, gateway)

        result = orch.build()

        assert result.built == ["audit.sql"]
        assert result.errors == []
        assert _migrations(project) == ["20240501120000_srtd-audit.sql"]

        entry = _shared_log(project)["templates"]["supabase/migrations-templates/audit.sql"]
        assert entry["lastBuildHash"] == compute_hash("create table audit();")
        assert entry["lastMigrationFile"] == "20240501120000_srtd-audit.sql"
        assert entry["lastBuildDate"] == NOW.isoformat()
        assert "lastBuildError" not in entry
        assert _shared_log(project)["lastTimestamp"] == "20240501120000"
        assert gateway.executed == []

    def test_unchanged_skipped(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "audit.sql").write_text("create table audit();")
        orch = _orchestrator(project, gateway)
        orch.build()

        result = orch.build()
        assert result.built == []
        assert result.skipped == ["audit.sql"]
        assert len(_migrations(project)) == 1

    def test_changed_rebuilt_with_new_timestamp(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        path = template_dir / "audit.sql"
        path.write_text("create table audit();")
        orch = _orchestrator(project, gateway)
        orch.build()

        path.write_text("create table audit(id int);")
        result = orch.build()

        assert result.built == ["audit.sql"]
        assert _migrations(project) == [
            "20240501120000_srtd-audit.sql",
            "20240501120001_srtd-audit.sql",
        ]
        second = (project / DEFAULTS["migration_dir"] / "20240501120001_srtd-audit.sql").read_text()
        assert "-- Last built: 20240501120000_srtd-audit.sql" in second

    def test_force_rebuilds(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "audit.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)
        orch.build()
        assert orch.build(force=True).built == ["audit.sql"]

    def test_wip_never_built(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "draft.wip.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)

        result = orch.build(force=True)
        assert result.built == []
        assert result.skipped == ["draft.wip.sql"]
        assert _migrations(project) == []

    def test_timestamps_unique_within_batch(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        for name in ("a", "b", "c", "d"):
            (template_dir / f"{name}.sql").write_text(f"select '{name}';")
        orch = _orchestrator(project, gateway)

        result = orch.build()
        assert len(result.built) == 4
        stamps = [name.split("_")[0] for name in _migrations(project)]
        assert len(set(stamps)) == 4
        assert _shared_log(project)["lastTimestamp"] == max(stamps)

    def test_dependency_order(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "a_report.sql").write_text("create view report as select * from users;")
        (template_dir / "b_users.sql").write_text("create table users (id int);")
        orch = _orchestrator(project, gateway)

        assert orch.build().built == ["b_users.sql", "a_report.sql"]

    def test_cycle_is_error_rest_continues(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        (template_dir / "a.sql").write_text("create view a as select * from b;")
        (template_dir / "b.sql").write_text("create view b as select * from a;")
        (template_dir / "c.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)

        result = orch.build()
        assert result.built == ["c.sql"]
        assert sorted(e.file for e in result.errors) == ["a.sql", "b.sql"]
        assert all("Circular dependency" in e.error for e in result.errors)
        assert orch.store.get_state(template_dir / "a.sql").last_build_error is not None

    def test_path_traversal_recorded(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        (template_dir / "audit.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway, migration_filename="../../$migrationName.sql")

        result = orch.build()
        assert result.built == []
        assert result.errors[0].file == "audit.sql"
        assert "outside migration directory" in result.errors[0].error
        entry = _shared_log(project)["templates"]["supabase/migrations-templates/audit.sql"]
        assert "lastBuildHash" not in entry
        assert "lastBuildError" in entry

    def test_bundle(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "a.sql").write_text("select 'a';")
        (template_dir / "b.sql").write_text("select 'b';")
        (template_dir / "c.wip.sql").write_text("select 'c';")
        orch = _orchestrator(project, gateway)

        result = orch.build(bundle=True)
        assert result.built == ["a.sql", "b.sql"]
        assert result.skipped == ["c.wip.sql"]
        assert _migrations(project) == ["20240501120000_srtd-bundle.sql"]
        log = _shared_log(project)["templates"]
        assert {e["lastMigrationFile"] for e in log.values()} == {"20240501120000_srtd-bundle.sql"}

    def test_build_then_apply(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "audit.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)

        result = orch.build(apply=True)
        assert result.built == ["audit.sql"]
        assert result.applied == ["audit.sql"]
        assert gateway.executed == ["audit"]

    def test_build_then_apply_not_also_skipped(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        (template_dir / "draft.wip.sql").write_text("select 1;")
        (template_dir / "done.sql").write_text("select 2;")
        orch = _orchestrator(project, gateway)
        orch.build()

        result = orch.build(apply=True)
        assert result.built == []
        assert result.applied == ["done.sql", "draft.wip.sql"]
        assert result.skipped == []

    def test_template_outside_project_root(self, tmp_path: Path, gateway: FakeGateway) -> None:
        project = tmp_path / "proj"
        template_dir = project / DEFAULTS["template_dir"]
        template_dir.mkdir(parents=True)
        shared = tmp_path / "shared_sql"
        shared.mkdir()
        (shared / "common.sql").write_text("create table common();")
        (template_dir / "common.sql").symlink_to(shared / "common.sql")
        (template_dir / "a.sql").write_text("select 1;")

        result = _orchestrator(project, gateway).build()
        assert result.errors == []
        assert sorted(result.built) == ["a.sql", "common.sql"]
        assert "../shared_sql/common.sql" in _shared_log(project)["templates"]


class TestApply:
    def test_apply_records_local_state(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        (template_dir / "audit.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)

        result = orch.apply()
        assert result.applied == ["audit.sql"]
        entry = _local_log(project)["templates"]["supabase/migrations-templates/audit.sql"]
        assert entry["lastAppliedHash"] == compute_hash("select 1;")
        assert entry["lastAppliedDate"] == NOW.isoformat()
        assert not (project / DEFAULTS["build_log"]).exists()

    def test_unchanged_skipped(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "audit.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)
        orch.apply()

        result = orch.apply()
        assert result.applied == []
        assert result.skipped == ["audit.sql"]
        assert gateway.executed == ["audit"]

    def test_wip_is_applied(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "draft.wip.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)
        assert orch.apply().applied == ["draft.wip.sql"]

    def test_one_failure_does_not_stop_batch(self, project: Path, template_dir: Path) -> None:
        for i in range(1, 6):
            (template_dir / f"t{i}.sql").write_text(f"select {i};")
        gateway = FakeGateway(
            failures={
                "t3": DatabaseError(
                    message='column "x" does not exist',
                    code="42703",
                    hint="Column does not exist.",
                )
            }
        )
        orch = _orchestrator(project, gateway)

        result = orch.apply()
        assert result.applied == ["t1.sql", "t2.sql", "t4.sql", "t5.sql"]
        assert len(result.errors) == 1
        error = result.errors[0]
        assert (error.file, error.template_name, error.hint) == ("t3.sql", "t3", "Column does not exist.")

        entry = _local_log(project)["templates"]["supabase/migrations-templates/t3.sql"]
        assert entry["lastAppliedError"] == 'column "x" does not exist'
        assert "lastAppliedHash" not in entry

    def test_success_clears_previous_error(self, project: Path, template_dir: Path) -> None:
        path = template_dir / "audit.sql"
        path.write_text("select x;")
        failing = FakeGateway(failures={"audit": DatabaseError(message="boom")})
        _orchestrator(project, failing).apply()

        path.write_text("select 1;")
        _orchestrator(project, FakeGateway()).apply()
        entry = _local_log(project)["templates"]["supabase/migrations-templates/audit.sql"]
        assert "lastAppliedError" not in entry

    def test_unreachable_database_recorded_per_template(
        self, project: Path, template_dir: Path
    ) -> None:
        (template_dir / "a.sql").write_text("select 1;")
        (template_dir / "b.sql").write_text("select 2;")
        orch = _orchestrator(project, FakeGateway(unreachable=True))

        result = orch.apply()
        assert result.applied == []
        assert [e.file for e in result.errors] == ["a.sql", "b.sql"]
        assert "Could not connect" in result.errors[0].error

    def test_explicit_paths(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "a.sql").write_text("select 1;")
        (template_dir / "b.sql").write_text("select 2;")
        orch = _orchestrator(project, gateway)

        result = orch.apply(paths=[template_dir / "b.sql"])
        assert result.applied == ["b.sql"]
        assert gateway.executed == ["b"]

    def test_vanished_path_is_error(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        orch = _orchestrator(project, gateway)
        result = orch.apply(paths=[template_dir / "gone.sql"])
        assert [e.file for e in result.errors] == ["gone.sql"]

    def test_undecodable_template_is_error(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        (template_dir / "bad.sql").write_bytes(b"select '\xff\xfe';")
        (template_dir / "good.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)

        result = orch.apply()
        assert result.applied == ["good.sql"]
        assert [e.file for e in result.errors] == ["bad.sql"]
        assert "Could not read template" in result.errors[0].error


class TestRegister:
    def test_register_marks_built(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "audit.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)

        template = orch.register("audit.sql")
        assert template.name == "audit"
        assert orch.build().skipped == ["audit.sql"]
        assert _migrations(project) == []

    def test_register_twice_single_entry(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        path = template_dir / "audit.sql"
        path.write_text("select 1;")
        orch = _orchestrator(project, gateway)

        orch.register(path)
        path.write_text("select 2;")
        orch.register(path)

        templates = _shared_log(project)["templates"]
        assert list(templates) == ["supabase/migrations-templates/audit.sql"]
        assert templates["supabase/migrations-templates/audit.sql"]["lastBuildHash"] == compute_hash(
            "select 2;"
        )

    def test_register_keeps_last_migration_file(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        path = template_dir / "audit.sql"
        path.write_text("select 1;")
        orch = _orchestrator(project, gateway)
        orch.build()

        path.write_text("select 2;")
        orch.register(path)
        state = orch.store.get_state(path)
        assert state.last_migration_file == "20240501120000_srtd-audit.sql"

    def test_missing_file(self, project: Path, gateway: FakeGateway) -> None:
        orch = _orchestrator(project, gateway)
        with pytest.raises(TemplateNotFoundError):
            orch.register("nope.sql")

    def test_outside_template_dir(self, project: Path, gateway: FakeGateway) -> None:
        outside = project / "elsewhere.sql"
        outside.write_text("select 1;")
        orch = _orchestrator(project, gateway)
        with pytest.raises(TemplateOutsideDirectoryError):
            orch.register(outside)

    def test_wip_rejected(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "draft.wip.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)
        with pytest.raises(WipTemplateError):
            orch.register("draft.wip.sql")
        assert not (project / DEFAULTS["build_log"]).exists()


class TestPromote:
    def test_promote_renames_and_moves_entries(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        (template_dir / "feature.wip.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)
        orch.apply()

        status = orch.promote("feature.wip.sql")

        assert status.template == "feature.sql"
        assert status.wip is False
        assert status.needs_build is True
        assert status.needs_apply is False
        assert not (template_dir / "feature.wip.sql").exists()
        assert (template_dir / "feature.sql").exists()
        assert list(_local_log(project)["templates"]) == [
            "supabase/migrations-templates/feature.sql"
        ]

    def test_not_wip(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "feature.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)
        with pytest.raises(NotWipTemplateError):
            orch.promote("feature.sql")

    def test_target_exists(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "feature.wip.sql").write_text("select 1;")
        (template_dir / "feature.sql").write_text("select 2;")
        orch = _orchestrator(project, gateway)
        with pytest.raises(OrchestratorError):
            orch.promote("feature.wip.sql")
        assert (template_dir / "feature.wip.sql").exists()


class TestStatusAndMaintenance:
    def test_status(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (template_dir / "a.sql").write_text("select 1;")
        (template_dir / "b.wip.sql").write_text("select 2;")
        orch = _orchestrator(project, gateway)
        orch.build()

        statuses = {s.template: s for s in orch.status()}
        assert statuses["a.sql"].needs_build is False
        assert statuses["a.sql"].needs_apply is True
        assert statuses["b.wip.sql"].needs_build is False
        assert statuses["b.wip.sql"].wip is True

    def test_clear_local_forces_reapply(
        self, project: Path, template_dir: Path, gateway: FakeGateway
    ) -> None:
        (template_dir / "a.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)
        orch.apply()

        orch.clear_build_logs("local")
        assert not (project / DEFAULTS["local_build_log"]).exists()
        assert orch.apply().applied == ["a.sql"]

    def test_corrupt_log_is_warning(self, project: Path, template_dir: Path, gateway: FakeGateway) -> None:
        (project / DEFAULTS["build_log"]).write_text("{broken")
        (template_dir / "a.sql").write_text("select 1;")
        orch = _orchestrator(project, gateway)

        assert [w.source for w in orch.warnings] == ["buildLog"]
        assert orch.build().built == ["a.sql"]

    def test_close_disconnects(self, project: Path, gateway: FakeGateway) -> None:
        with _orchestrator(project, gateway):
            pass
        assert gateway.disconnects == 1
