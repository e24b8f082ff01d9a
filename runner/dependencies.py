"""Best-effort dependency extraction and ordering for SQL templates.

This is deliberately not a SQL parser. A handful of regular expressions over
sanitized text (comments blanked, string literals collapsed) find:

    declarations  CREATE [OR REPLACE] TABLE|VIEW|MATERIALIZED VIEW|FUNCTION|
                  TRIGGER|POLICY [IF NOT EXISTS] <name>
    references    FROM <a>[, <b> ...], JOIN <a>, REFERENCES <a>,
                  CREATE TRIGGER|POLICY ... ON <a>,
                  EXECUTE FUNCTION|PROCEDURE <a>
    directives    -- @depends-on: other.sql, another.sql

CTE names and subquery aliases are not recognised as local declarations, so
they may show up as references; they simply fail to match any other
template. Unusual SQL only loses ordering hints, it never blocks a build.
"""

import itertools
import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath

logger = logging.getLogger(__name__)

_IDENT = r'(?:"(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)'
_NAME = rf"{_IDENT}(?:\s*\.\s*{_IDENT}){{0,2}}"

_LEXER = re.compile(
    r"""
      (?P<line>--[^\n]*)
    | (?P<block>/\*.*?(?:\*/|\Z))
    | (?P<string>'(?:[^']|'')*(?:'|\Z))
    | (?P<ident>"(?:[^"]|"")*(?:"|\Z))
    """,
    re.VERBOSE | re.DOTALL,
)

_DEPENDS_ON = re.compile(r"^--[ \t]*@depends-on:[ \t]*([^\n\r]*)$", re.IGNORECASE | re.MULTILINE)

_DECLARATION = re.compile(
    r"\bCREATE\s+(?:OR\s+REPLACE\s+)?(?:(?:TEMP|TEMPORARY|UNLOGGED)\s+)?(?:CONSTRAINT\s+)?"
    r"(?P<kind>TABLE|MATERIALIZED\s+VIEW|VIEW|FUNCTION|TRIGGER|POLICY)\s+"
    rf"(?:IF\s+NOT\s+EXISTS\s+)?(?P<name>{_NAME})",
    re.IGNORECASE,
)

_FROM = re.compile(r"\bFROM\b", re.IGNORECASE)
_FROM_ITEM = re.compile(rf"\s*(?:(?:ONLY|LATERAL)\s+)?(?P<name>{_NAME})", re.IGNORECASE)
_ALIAS = re.compile(rf"\s+(?:AS\s+)?{_IDENT}", re.IGNORECASE)
_COMMA = re.compile(r"\s*,")

_JOIN = re.compile(rf"\bJOIN\s+(?:(?:ONLY|LATERAL)\s+)?(?P<name>{_NAME})", re.IGNORECASE)

# Parentheses after these names are part of the syntax, not a function call
_TARGET_REFERENCES = [
    re.compile(rf"\bREFERENCES\s+(?P<name>{_NAME})", re.IGNORECASE),
    re.compile(
        rf"\bCREATE\s+(?:OR\s+REPLACE\s+)?(?:CONSTRAINT\s+)?(?:TRIGGER|POLICY)\s+{_NAME}"
        rf"[^;]*?\bON\s+(?:ONLY\s+)?(?P<name>{_NAME})",
        re.IGNORECASE,
    ),
    re.compile(rf"\bEXECUTE\s+(?:FUNCTION|PROCEDURE)\s+(?P<name>{_NAME})", re.IGNORECASE),
]

DECLARATION_TYPES = ("table", "view", "function", "trigger", "policy")


@dataclass(frozen=True)
class Declaration:
    type: str
    name: str


@dataclass
class TemplateDependencies:
    declarations: list[Declaration] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyOrder:
    """Processing order for a batch.

    order excludes every template that takes part in a cycle; those are
    listed in cycles, one list per strongly connected group.
    """

    order: list[str]
    cycles: list[list[str]]

    @property
    def cyclic(self) -> set[str]:
        return {node for cycle in self.cycles for node in cycle}


# ── Extraction ──────────────────────────────────────────


def sanitize_sql(sql: str) -> str:
    """Blank comments and collapse string literals, preserving line breaks."""

    def _replace(match: re.Match[str]) -> str:
        if match.lastgroup == "string":
            return "''"
        if match.lastgroup == "ident":
            return match.group(0)
        return re.sub(r"[^\n]", " ", match.group(0))

    return _LEXER.sub(_replace, sql)


def normalize_name(name: str) -> str:
    """Unquote quoted parts, lower-case unquoted parts, keep schema qualification."""
    parts = []
    for part in re.findall(_IDENT, name):
        if part.startswith('"'):
            parts.append(part[1:-1].replace('""', '"'))
        else:
            parts.append(part.lower())
    return ".".join(parts)


def bare_name(name: str) -> str:
    return name.rsplit(".", 1)[-1]


def extract_depends_on(sql: str) -> list[str]:
    """Filenames named in `-- @depends-on:` lines, in order, deduplicated."""
    seen: dict[str, None] = {}
    for match in _DEPENDS_ON.finditer(sql):
        for item in match.group(1).split(","):
            item = item.strip()
            if item:
                seen.setdefault(item, None)
    return list(seen)


def extract_declarations(sql: str) -> list[Declaration]:
    text = sanitize_sql(sql)
    found: dict[Declaration, None] = {}
    for match in _DECLARATION.finditer(text):
        kind = match.group("kind").lower()
        kind = "view" if kind.startswith("materialized") else kind
        found.setdefault(Declaration(type=kind, name=normalize_name(match.group("name"))), None)
    return list(found)


def _is_call(text: str, pos: int) -> bool:
    return text[pos:].lstrip().startswith("(")


def _skip_parens(text: str, pos: int) -> int:
    """Return the index just past the parenthesised group starting at or after pos."""
    start = text.find("(", pos)
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i + 1
    return len(text)


def _from_list(text: str, pos: int) -> list[str]:
    """Names in a comma-separated FROM list beginning at pos."""
    names: list[str] = []
    while True:
        if text[pos:].lstrip().startswith("("):
            pos = _skip_parens(text, pos)
        else:
            item = _FROM_ITEM.match(text, pos)
            if item is None:
                break
            pos = item.end()
            if _is_call(text, pos):
                pos = _skip_parens(text, pos)
            else:
                names.append(item.group("name"))

        alias = _ALIAS.match(text, pos)
        if alias is not None:
            pos = alias.end()
        comma = _COMMA.match(text, pos)
        if comma is None:
            break
        pos = comma.end()
    return names


def extract_references(sql: str, declarations: Sequence[Declaration] = ()) -> list[str]:
    """Object names the template reads from, minus what it declares itself."""
    text = sanitize_sql(sql)
    raw: list[str] = []

    for match in _FROM.finditer(text):
        raw.extend(_from_list(text, match.end()))

    for match in _JOIN.finditer(text):
        if not _is_call(text, match.end("name")):
            raw.append(match.group("name"))

    for pattern in _TARGET_REFERENCES:
        raw.extend(match.group("name") for match in pattern.finditer(text))

    local = {d.name for d in declarations}
    found: dict[str, None] = {}
    for name in raw:
        normalized = normalize_name(name)
        if normalized and normalized not in local:
            found.setdefault(normalized, None)
    return list(found)


def analyze_template(sql: str) -> TemplateDependencies:
    """Extract declarations, references and directives. Never raises."""
    try:
        depends_on = extract_depends_on(sql)
    except Exception:
        logger.warning("Could not read @depends-on directives", exc_info=True)
        depends_on = []

    try:
        declarations = extract_declarations(sql)
        references = extract_references(sql, declarations)
    except Exception:
        logger.warning("Could not extract SQL dependencies; ordering hints skipped", exc_info=True)
        return TemplateDependencies(depends_on=depends_on)

    return TemplateDependencies(
        declarations=declarations, references=references, depends_on=depends_on
    )


# ── Graph ───────────────────────────────────────────────


def build_dependency_graph(templates: Sequence[tuple[str, str]]) -> dict[str, list[str]]:
    """Map each template key to the keys it depends on.

    Args:
        templates: (key, content) pairs in discovery order. Keys are paths;
            @depends-on entries are matched against their filenames.
    """
    analyses = {key: analyze_template(content) for key, content in templates}

    by_filename: dict[str, str] = {}
    by_full_name: dict[str, list[str]] = {}
    by_bare_name: dict[str, list[str]] = {}
    for key, analysis in analyses.items():
        by_filename.setdefault(PurePosixPath(key).name.lower(), key)
        for decl in analysis.declarations:
            by_full_name.setdefault(decl.name, []).append(key)
            by_bare_name.setdefault(bare_name(decl.name), []).append(key)

    graph: dict[str, list[str]] = {}
    for key, analysis in analyses.items():
        deps: dict[str, None] = {}
        for filename in analysis.depends_on:
            target = by_filename.get(PurePosixPath(filename).name.lower())
            if target is not None and target != key:
                deps.setdefault(target, None)
        for ref in analysis.references:
            owners = by_full_name.get(ref) or by_bare_name.get(bare_name(ref), [])
            for owner in owners:
                if owner != key:
                    deps.setdefault(owner, None)
        graph[key] = list(deps)
    return graph


def detect_cycles(graph: dict[str, list[str]]) -> list[list[str]]:
    """Strongly connected groups of more than one template (Tarjan).

    Iterative, so long dependency chains do not hit the recursion limit.
    """
    counter = itertools.count()
    index: dict[str, int] = {}
    low: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    cycles: list[list[str]] = []

    def enter(node: str) -> tuple[str, Iterator[str]]:
        index[node] = low[node] = next(counter)
        stack.append(node)
        on_stack.add(node)
        return node, iter(graph.get(node, []))

    for root in graph:
        if root in index:
            continue
        work = [enter(root)]
        while work:
            node, deps = work[-1]
            for dep in deps:
                if dep not in index:
                    work.append(enter(dep))
                    break
                if dep in on_stack:
                    low[node] = min(low[node], index[dep])
            else:
                work.pop()
                if work:
                    parent = work[-1][0]
                    low[parent] = min(low[parent], low[node])
                if low[node] != index[node]:
                    continue
                component: set[str] = set()
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.add(member)
                    if member == node:
                        break
                if len(component) > 1:
                    cycles.append([n for n in graph if n in component])
    return cycles


def topological_sort(graph: dict[str, list[str]], exclude: set[str] | None = None) -> list[str]:
    """Dependencies first; otherwise the graph's own (discovery) order."""
    exclude = exclude or set()
    visited: set[str] = set()
    result: list[str] = []

    for root in graph:
        if root in visited or root in exclude:
            continue
        visited.add(root)
        work = [(root, iter(graph.get(root, [])))]
        while work:
            node, deps = work[-1]
            for dep in deps:
                if dep not in visited and dep not in exclude:
                    visited.add(dep)
                    work.append((dep, iter(graph.get(dep, []))))
                    break
            else:
                work.pop()
                result.append(node)
    return result


def order_by_dependencies(templates: Sequence[tuple[str, str]]) -> DependencyOrder:
    """Order a batch so no template runs before anything it depends on."""
    if len(templates) <= 1:
        return DependencyOrder(order=[key for key, _ in templates], cycles=[])

    graph = build_dependency_graph(templates)
    cycles = detect_cycles(graph)
    for cycle in cycles:
        logger.warning(
            "Circular dependency: %s",
            " -> ".join(PurePosixPath(n).name for n in [*cycle, cycle[0]]),
        )
    cyclic = {node for cycle in cycles for node in cycle}
    return DependencyOrder(order=topological_sort(graph, cyclic), cycles=cycles)
