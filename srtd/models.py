"""Shared data models for srtd.

The build log is persisted as JSON, so its schema is a pydantic model with
camelCase aliases matching the on-disk format. Everything that only lives for
the duration of one command is a plain dataclass.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

BUILD_LOG_VERSION = "1.0"

BUILD_FIELDS = ("last_build_hash", "last_build_date", "last_build_error", "last_migration_file")
APPLY_FIELDS = ("last_applied_hash", "last_applied_date", "last_applied_error")


# ── Persisted build log ─────────────────────────────────


class TemplateBuildState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_build_hash: str | None = Field(default=None, alias="lastBuildHash")
    last_build_date: str | None = Field(default=None, alias="lastBuildDate")
    last_build_error: str | None = Field(default=None, alias="lastBuildError")
    last_migration_file: str | None = Field(default=None, alias="lastMigrationFile")
    last_applied_hash: str | None = Field(default=None, alias="lastAppliedHash")
    last_applied_date: str | None = Field(default=None, alias="lastAppliedDate")
    last_applied_error: str | None = Field(default=None, alias="lastAppliedError")


class BuildLog(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: str
    last_timestamp: str = Field(alias="lastTimestamp")
    templates: dict[str, TemplateBuildState]

    def to_json(self) -> str:
        """Serialize in the on-disk format (2-space indent, trailing newline)."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2) + "\n"


def empty_build_log() -> BuildLog:
    return BuildLog(version=BUILD_LOG_VERSION, last_timestamp="", templates={})


# ── In-process results ──────────────────────────────────


@dataclass(frozen=True)
class ValidationWarning:
    """A non-fatal problem found while loading a log or the config."""

    source: Literal["buildLog", "localBuildLog", "config"]
    type: Literal["parse", "validation"]
    message: str
    path: str | None = None


@dataclass
class TemplateError:
    file: str
    template_name: str
    error: str
    hint: str | None = None


@dataclass
class ProcessedResult:
    """Outcome of one batch run. Partial failure still yields a full result."""

    built: list[str] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[TemplateError] = field(default_factory=list)

    def merge(self, other: "ProcessedResult") -> None:
        """Fold another batch in. A template processed by either batch is not skipped."""
        self.built.extend(other.built)
        self.applied.extend(other.applied)
        self.errors.extend(other.errors)
        processed = {*self.built, *self.applied, *(e.file for e in self.errors)}
        skipped = [*self.skipped, *other.skipped]
        self.skipped = [s for i, s in enumerate(skipped) if s not in processed and s not in skipped[:i]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "built": list(self.built),
            "applied": list(self.applied),
            "skipped": list(self.skipped),
            "errors": [
                {
                    "file": e.file,
                    "templateName": e.template_name,
                    "error": e.error,
                    **({"hint": e.hint} if e.hint is not None else {}),
                }
                for e in self.errors
            ],
        }


@dataclass(frozen=True)
class TemplateStatus:
    """Read-only view of one template for listing and registration tooling."""

    template: str
    name: str
    wip: bool
    current_hash: str
    needs_build: bool
    needs_apply: bool
    build_state: TemplateBuildState

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["build_state"] = self.build_state.model_dump(by_alias=True, exclude_none=True)
        return data
