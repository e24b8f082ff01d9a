"""Watch loop for srtd.

Polls the template directory and applies templates as they change. Runs as
asyncio tasks:

    poller   stats every template each poll_interval; a new or changed
             (mtime, size) signature schedules a per-file debounce
    debounce one task per file, restarted on every change; when it fires the
             path goes onto the work queue (at most once)
    worker   single consumer; reads the template, publishes `changed`, then
             runs Orchestrator.apply for that one file in a worker thread and
             publishes `applied` or `error`

A file that changes while it is being applied is queued again, so its final
content always gets applied. Watch mode never builds migrations.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from runner.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

EventType = Literal["changed", "applied", "error"]


@dataclass
class WatchEvent:
    type: EventType
    template: str
    name: str
    error: str | None = None
    hint: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "template": self.template,
            "name": self.name,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            data["error"] = self.error
        if self.hint is not None:
            data["hint"] = self.hint
        return data


@dataclass
class StackedEvent:
    """Consecutive events for one template, collapsed for display."""

    types: list[EventType]
    template: str
    name: str
    timestamp: datetime
    error: str | None = None
    hint: str | None = None


def stack_events(events: Iterable[WatchEvent]) -> list[StackedEvent]:
    """Coalesce runs of non-error events for the same template.

    changed, applied for audit.sql becomes one entry with types
    ["changed", "applied"]. Errors always stand alone.
    """
    stacked: list[StackedEvent] = []
    for event in events:
        last = stacked[-1] if stacked else None
        if (
            last is not None
            and last.template == event.template
            and event.type != "error"
            and "error" not in last.types
        ):
            if event.type not in last.types:
                last.types.append(event.type)
            continue
        stacked.append(
            StackedEvent(
                types=[event.type],
                template=event.template,
                name=event.name,
                timestamp=event.timestamp,
                error=event.error,
                hint=event.hint,
            )
        )
    return stacked


class TemplateWatcher:
    """Applies changed templates until stopped.

    Usage:
        async with TemplateWatcher(orchestrator) as watcher:
            async for event in watcher.events():
                ...
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        poll_interval: float = 0.5,
        debounce: float = 0.1,
        initial_process: bool = False,
    ) -> None:
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self.debounce = debounce
        self.initial_process = initial_process
        self._running = False
        self._signatures: dict[Path, tuple[int, int]] = {}
        self._debounce_tasks: dict[Path, asyncio.Task[None]] = {}
        self._queued: set[Path] = set()
        self._work: asyncio.Queue[Path | None] = asyncio.Queue()
        self._events: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        self._poller: asyncio.Task[None] | None = None
        self._worker: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "TemplateWatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Watcher already running")
            return
        self._running = True
        self._signatures = self._scan()
        if self.initial_process:
            for path in self._signatures:
                self._enqueue(path)
        self._worker = asyncio.create_task(self._work_loop())
        self._poller = asyncio.create_task(self._poll_loop())
        logger.info(
            "Watching %s (%d templates)", self.orchestrator.template_dir, len(self._signatures)
        )

    async def stop(self) -> None:
        """Stop watching; the in-flight apply finishes first, then the pool is closed."""
        if not self._running:
            return
        self._running = False

        pending = [t for t in (self._poller, *self._debounce_tasks.values()) if t is not None]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._debounce_tasks.clear()

        while not self._work.empty():
            self._work.get_nowait()
        self._queued.clear()
        await self._work.put(None)
        if self._worker is not None:
            await self._worker

        await asyncio.to_thread(self.orchestrator.close)
        self._events.put_nowait(None)
        logger.info("Watcher stopped")

    async def events(self) -> AsyncIterator[WatchEvent]:
        """Yield events until the watcher is stopped."""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    # ── polling ─────────────────────────────────────────

    def _scan(self) -> dict[Path, tuple[int, int]]:
        signatures = {}
        for path in self.orchestrator.discover():
            try:
                stat = path.stat()
            except OSError:
                continue
            signatures[path] = (stat.st_mtime_ns, stat.st_size)
        return signatures

    def detect_changes(self) -> list[Path]:
        """New or modified templates since the previous scan."""
        current = self._scan()
        changed = [p for p, sig in current.items() if self._signatures.get(p) != sig]
        self._signatures = current
        return changed

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.poll_interval)
            try:
                for path in self.detect_changes():
                    logger.debug("Change detected: %s", path.name)
                    self._schedule(path)
            except Exception:
                logger.exception("Error scanning templates")

    def _schedule(self, path: Path) -> None:
        existing = self._debounce_tasks.get(path)
        if existing is not None:
            existing.cancel()
        self._debounce_tasks[path] = asyncio.create_task(self._debounced(path))

    async def _debounced(self, path: Path) -> None:
        await asyncio.sleep(self.debounce)
        self._debounce_tasks.pop(path, None)
        self._enqueue(path)

    def _enqueue(self, path: Path) -> None:
        if not self._running or path in self._queued:
            return
        self._queued.add(path)
        self._work.put_nowait(path)

    # ── processing ──────────────────────────────────────

    def _publish(self, event: WatchEvent) -> None:
        self._events.put_nowait(event)

    async def _work_loop(self) -> None:
        while True:
            path = await self._work.get()
            if path is None:
                return
            self._queued.discard(path)
            try:
                await self._process(path)
            except Exception:
                logger.exception("Unexpected error processing %s", path)

    async def _process(self, path: Path) -> None:
        try:
            template = await asyncio.to_thread(self.orchestrator.read, path)
        except OSError as e:
            logger.debug("Template %s vanished before processing: %s", path, e)
            return
        except ValueError as e:
            logger.warning("Could not read template %s: %s", path, e)
            self._publish(
                WatchEvent(
                    type="error",
                    template=self.orchestrator.display(path),
                    name=path.name.removesuffix(".sql"),
                    error=f"Could not read template: {e}",
                )
            )
            return

        if not self.orchestrator.needs_apply(template):
            return

        self._publish(WatchEvent(type="changed", template=template.display_path, name=template.name))
        result = await asyncio.to_thread(self.orchestrator.apply, [path])

        for applied in result.applied:
            self._publish(WatchEvent(type="applied", template=applied, name=template.name))
        for error in result.errors:
            self._publish(
                WatchEvent(
                    type="error",
                    template=error.file,
                    name=error.template_name,
                    error=error.error,
                    hint=error.hint,
                )
            )
