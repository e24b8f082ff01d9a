"""Template discovery and content hashing for srtd.

A template is any file under the template directory matching the configured
glob. Change detection is by content digest only: file modification times
differ across checkouts and CI, so they are never consulted here.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path

from db.buildlog import log_key


@dataclass(frozen=True)
class Template:
    """A template file as read from disk.

    relative_path is the build log key (relative to the project root);
    display_path is relative to the template directory and is what results
    report.
    """

    name: str
    path: Path
    relative_path: str
    display_path: str
    current_hash: str
    wip: bool
    content: str


def compute_hash(content: str) -> str:
    """MD5 hex digest of the template text."""
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def is_wip_template(path: Path | str, wip_indicator: str) -> bool:
    """True if the filename carries the WIP marker (e.g. feature.wip.sql)."""
    if not wip_indicator:
        return False
    return wip_indicator in Path(path).name


def strip_wip_indicator(path: Path, wip_indicator: str) -> Path:
    """Return path with the first WIP marker removed from the filename only."""
    return path.with_name(path.name.replace(wip_indicator, "", 1))


def find_templates(template_dir: Path, pattern: str) -> list[Path]:
    """List template files under template_dir matching pattern, sorted.

    Dotfiles (the build logs live next to templates) are never templates.
    """
    matches = [
        p.resolve()
        for p in template_dir.glob(pattern)
        if p.is_file() and not p.name.startswith(".")
    ]
    return sorted(set(matches))


def read_template(
    path: Path, project_root: Path, template_dir: Path, wip_indicator: str
) -> Template:
    """Read and hash one template.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = path.resolve()
    content = path.read_text(encoding="utf-8")

    try:
        display_path = path.relative_to(template_dir.resolve()).as_posix()
    except ValueError:
        display_path = path.name

    return Template(
        name=path.name.removesuffix(".sql"),
        path=path,
        relative_path=log_key(path, project_root),
        display_path=display_path,
        current_hash=compute_hash(content),
        wip=is_wip_template(path, wip_indicator),
        content=content,
    )
