"""Debounced watch mode.

A :class:`WatchController` owns one :class:`WatchSession` per watched root.
watchdog's observer thread only forwards raw events onto the asyncio loop;
every session mutation happens on the loop thread. Bursts of events are
coalesced by a per-root debounce timer and each regeneration cycle runs under
the session lock, its blocking parts in worker threads.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
import signal
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from dir2txt.cache import CacheStore, create_cache
from dir2txt.config import DEFAULT_DEBOUNCE_MS, DEFAULT_WATCH_IGNORES, ChangeSet, WatchStats
from dir2txt.exceptions import InvalidDebounceError, WatchRootError
from dir2txt.file_manipulation import (
    discovery_options_for,
    generated_paths,
    list_files,
    match_any_glob,
    normalize_globs,
    now_iso,
    relpath,
)
from dir2txt.logging import logger
from dir2txt.output_construction import GenerateOptions, build_watch_header, generate
from dir2txt.relationships import analyze_project

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from watchdog.observers.api import BaseObserver

    from dir2txt.settings import Settings

_DEBOUNCE_PATTERN = re.compile(r"^(\d+)(ms|s)?$")

STABILITY_THRESHOLD_S = 0.3
STABILITY_POLL_S = 0.1

ADD, CHANGE, UNLINK = "add", "change", "unlink"


def parse_debounce(value: str | None) -> int:
    """Parse a debounce duration into milliseconds.

    Args:
        value (str | None): ``"500ms"``, ``"2s"`` or a bare number of milliseconds

    Raises:
        InvalidDebounceError: if the value has any other shape.

    Returns:
        int: the delay in milliseconds, 1000 when `value` is empty or None
    """
    if not value:
        return DEFAULT_DEBOUNCE_MS
    m = _DEBOUNCE_PATTERN.match(value)
    if m is None:
        raise InvalidDebounceError(value=value)
    amount = int(m.group(1))
    return amount * 1000 if m.group(2) == "s" else amount


class RegenerationPlan(BaseModel):
    """What a watch cycle renders.

    Attributes:
        files: files whose content is rendered.
        current_files: the full current file list, shown in the project tree.
        change_set: cache diff the plan derives from, None without a cache.
        added: files absent from the previously known set (smart diff only).
        removed: known files gone from the current list (smart diff only).
        skip: nothing changed and nothing was deleted.
    """

    files: list[str] = Field(default_factory=list)
    current_files: list[str] = Field(default_factory=list)
    change_set: ChangeSet | None = None
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    skip: bool = False

    @property
    def structure_changed(self) -> bool:
        return bool(self.added or self.removed)


def plan_regeneration(
    current_files: Iterable[str],
    known_files: Iterable[str],
    change_set: ChangeSet | None = None,
    *,
    smart_diff: bool = False,
) -> RegenerationPlan:
    """Decide what the next watch cycle processes.

    Without a change set every current file is rendered. With one, only its
    changed files are, and the cycle is skipped when it holds no change and
    no deletion. The structural diff against `known_files` is informational:
    it never alters the selection.

    Args:
        current_files (Iterable[str]): the freshly listed files
        known_files (Iterable[str]): the files listed by the previous cycle
        change_set (ChangeSet | None): the cache diff of `current_files`
        smart_diff (bool): compute the added/removed structural diff

    Returns:
        RegenerationPlan: the plan of the cycle
    """
    current = list(current_files)
    added: list[str] = []
    removed: list[str] = []
    if smart_diff:
        known = set(known_files)
        present = set(current)
        added = [f for f in current if f not in known]
        removed = sorted(known - present)

    if change_set is None:
        return RegenerationPlan(files=current, current_files=current, added=added, removed=removed)
    return RegenerationPlan(
        files=list(change_set.changed),
        current_files=current,
        change_set=change_set,
        added=added,
        removed=removed,
        skip=change_set.is_empty,
    )


@dataclass
class WatchSession:
    """State of one watched root. Only touched from the event loop thread."""

    root: Path
    cache: CacheStore | None = None
    known_files: set[str] = field(default_factory=set)
    timer: asyncio.TimerHandle | None = None
    last_event: tuple[str, str] | None = None
    stability_checks: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    cycles: set[asyncio.Task[None]] = field(default_factory=set)
    observer: BaseObserver | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    stopped: bool = False


class _ForwardingHandler(FileSystemEventHandler):
    """Translates watchdog events and hands them to the loop thread."""

    def __init__(self, controller: WatchController, root: Path, loop: asyncio.AbstractEventLoop) -> None:
        self.controller = controller
        self.root = root
        self.loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = os.fsdecode(event.src_path)
        if event.event_type == EVENT_TYPE_CREATED:
            self._forward(ADD, src)
        elif event.event_type == EVENT_TYPE_MODIFIED:
            self._forward(CHANGE, src)
        elif event.event_type == EVENT_TYPE_DELETED:
            self._forward(UNLINK, src)
        elif event.event_type == EVENT_TYPE_MOVED:
            self._forward(UNLINK, src)
            self._forward(ADD, os.fsdecode(event.dest_path))

    def _forward(self, event_type: str, path: str) -> None:
        with contextlib.suppress(RuntimeError):  # loop already closed
            self.loop.call_soon_threadsafe(self.controller.on_raw_event, event_type, path, self.root)


class WatchController:
    """Watches project roots and regenerates the export after debounced changes.

    Attributes:
        settings: the watch command settings.
        debounce_ms: quiet period after the last event before regenerating.
        sessions: active sessions keyed by resolved root.
        stats: statistics shared by every session.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        debounce_ms: int | None = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self.settings = settings
        self.debounce_ms = debounce_ms if debounce_ms is not None else parse_debounce(settings.debounce)
        self.output_file = settings.output.resolve() if settings.output else None
        self.sessions: dict[Path, WatchSession] = {}
        self.stats = WatchStats()
        self._observer_factory = observer_factory

    # ------------------------------- discovery -------------------------------

    def list_current_files(self, root: Path) -> list[str]:
        """List the files of `root` with the discovery options of the session."""
        return list_files(root, discovery_options_for(root, self.settings, self.output_file))

    def is_ignored(self, root: Path, path: str) -> bool:
        """Whether a raw event on `path` must be dropped before debouncing.

        Drops the default watch ignores, the user ignore patterns, dir2txt's
        own cache and output files, and files above the size limit.
        """
        p = Path(path)
        rel = relpath(p, root)
        for generated in generated_paths(root, self.settings.cache_dir, self.output_file):
            if rel == generated or rel.startswith(generated + "/"):
                return True
        if match_any_glob(rel, [*DEFAULT_WATCH_IGNORES, *normalize_globs(self.settings.ignore)]):
            return True
        if self.settings.max_size:
            try:
                st = p.stat()
            except OSError:
                return False
            return p.is_file() and st.st_size > self.settings.max_size
        return False

    # ------------------------------- lifecycle -------------------------------

    def attach(self, root: Path) -> WatchSession:
        """Build the session of `root` and run its initial generation (blocking)."""
        if not root.is_dir():
            raise WatchRootError(root=root)
        cache = create_cache(root, self.settings.cache_dir) if self.settings.incremental else None
        files = self.list_current_files(root)
        session = WatchSession(root=root, cache=cache, known_files=set(files))
        self.stats.files_watched = len(files)
        logger.info("watch_initial_files", root=str(root), files=len(files))
        self._generate_output(session, plan_regeneration(files, ()), "initial")
        return session

    async def start_watching(self, root: Path | str) -> Callable[[], Awaitable[None]]:
        """Start watching `root`.

        Raises:
            WatchRootError: if `root` is not an existing directory.

        Returns:
            Callable[[], Awaitable[None]]: stops this session when awaited
        """
        resolved = Path(root).resolve()
        if not resolved.is_dir():
            raise WatchRootError(root=resolved)

        async def stop() -> None:
            await self.stop_watching(resolved)

        if resolved in self.sessions:
            logger.warning("already_watching", root=str(resolved))
            return stop

        loop = asyncio.get_running_loop()
        session = await asyncio.to_thread(self.attach, resolved)
        session.observer = self._start_observer(resolved, loop)
        self.sessions[resolved] = session
        logger.info(
            "watch_ready",
            root=str(resolved),
            files=self.stats.files_watched,
            debounce_ms=self.debounce_ms,
            output=str(self.output_file) if self.output_file else "stdout",
        )
        return stop

    def _start_observer(self, root: Path, loop: asyncio.AbstractEventLoop) -> BaseObserver:
        observer = self._observer_factory()
        observer.schedule(_ForwardingHandler(self, root, loop), str(root), recursive=True)
        observer.start()
        return observer

    async def stop_watching(self, root: Path | str | None = None) -> None:
        """Stop one session, or all of them when `root` is None.

        Pending timers and stability checks are cancelled; a cycle already
        running completes. Stopping an unknown or stopped root does nothing.
        """
        roots = [Path(root).resolve()] if root is not None else list(self.sessions)
        for r in roots:
            session = self.sessions.pop(r, None)
            if session is None:
                continue
            session.stopped = True
            if session.timer is not None:
                session.timer.cancel()
                session.timer = None
            for task in session.stability_checks.values():
                task.cancel()
            session.stability_checks.clear()
            if session.observer is not None:
                session.observer.stop()
                await asyncio.to_thread(session.observer.join)
            if session.cycles:
                await asyncio.gather(*session.cycles, return_exceptions=True)
            logger.info("watch_stopped", root=str(r))

    def get_stats(self) -> WatchStats:
        """Return a copy of the watch statistics."""
        return self.stats.model_copy(deep=True)

    # --------------------------------- events --------------------------------

    def on_raw_event(self, event_type: str, path: str, root: Path) -> None:
        """Filter a forwarded event and wait for writes to settle on add/change."""
        session = self.sessions.get(root)
        if session is None or session.stopped or self.is_ignored(root, path):
            return
        if event_type == UNLINK:
            self.handle_file_change(event_type, path, root)
            return
        if path in session.stability_checks:
            return
        task = asyncio.get_running_loop().create_task(self._await_write_stability(session, event_type, path))
        session.stability_checks[path] = task

    async def _await_write_stability(self, session: WatchSession, event_type: str, path: str) -> None:
        """Dispatch the event once size and mtime stayed unchanged for the threshold."""
        loop = asyncio.get_running_loop()
        try:
            last = _stat_signature(path)
            stable_since = loop.time()
            while True:
                await asyncio.sleep(STABILITY_POLL_S)
                current = _stat_signature(path)
                if current is None:
                    return
                if current != last:
                    last, stable_since = current, loop.time()
                elif loop.time() - stable_since >= STABILITY_THRESHOLD_S:
                    break
        finally:
            if session.stability_checks.get(path) is asyncio.current_task():
                del session.stability_checks[path]
        self.handle_file_change(event_type, path, session.root)

    def handle_file_change(self, event_type: str, path: str, root: Path) -> None:
        """Record an event and (re)arm the debounce timer of its session."""
        session = self.sessions.get(root)
        if session is None or session.stopped:
            return
        logger.info("file_event", event=event_type.upper(), path=relpath(Path(path), root))
        self.stats.total_changes += 1
        session.last_event = (event_type, path)
        if session.timer is not None:
            session.timer.cancel()
        session.timer = asyncio.get_running_loop().call_later(self.debounce_ms / 1000, self._fire, session)

    def _fire(self, session: WatchSession) -> None:
        session.timer = None
        if session.stopped or session.last_event is None:
            return
        event_type, path = session.last_event
        task = asyncio.get_running_loop().create_task(self._run_cycle(session.root, event_type, path))
        session.cycles.add(task)
        task.add_done_callback(session.cycles.discard)

    async def _run_cycle(self, root: Path, event_type: str, path: str) -> None:
        try:
            await self.process_changes(root, event_type, path)
        except Exception as e:  # noqa: BLE001
            logger.error("watch_cycle_failed", root=str(root), error=str(e), exc_info=True)

    async def process_changes(self, root: Path, event_type: str, path: str) -> None:
        """Run one regeneration cycle for `root`, serialized by the session lock.

        Args:
            root (Path): the watched root
            event_type (str): type of the last event of the burst
            path (str): path of the last event of the burst
        """
        session = self.sessions.get(root)
        if session is None:
            return
        async with session.lock:
            start = time.perf_counter()
            logger.info("processing_changes", root=str(root), trigger=event_type, path=relpath(Path(path), root))
            files = await asyncio.to_thread(self.list_current_files, root)
            change_set = await asyncio.to_thread(session.cache.get_changed_files, files) if session.cache else None
            plan = plan_regeneration(
                files,
                session.known_files,
                change_set,
                smart_diff=self.settings.incremental and self.settings.smart_diff,
            )
            if plan.structure_changed:
                logger.info("structure_changed", added=len(plan.added), removed=len(plan.removed))
            session.known_files = set(files)
            self.stats.files_watched = len(files)

            await asyncio.to_thread(self._generate_output, session, plan, event_type)

            elapsed_ms = (time.perf_counter() - start) * 1000
            self.stats.record_processing_time(elapsed_ms, datetime.now(UTC))
            logger.info("update_completed", elapsed_ms=round(elapsed_ms))

    def _generate_output(self, session: WatchSession, plan: RegenerationPlan, change_type: str) -> None:
        """Render `plan`, refresh the cache and prepend the watch report (blocking)."""
        change_set = plan.change_set
        if change_set is not None and self.settings.show_changes:
            logger.info(
                "changes_detected",
                changed=len(change_set.changed),
                new=len(change_set.new),
                deleted=len(change_set.deleted),
            )
        if plan.skip:
            logger.info("no_changes_skipping_regeneration", root=str(session.root))
            return

        cache = session.cache
        if cache is not None and change_set is not None:
            cache.cleanup(change_set.deleted)

        analysis = analyze_project(session.root, plan.files) if self.settings.has_relationship_options else None
        generate(
            plan.files,
            GenerateOptions(
                root=session.root,
                output_file=self.output_file,
                markdown=self.settings.markdown,
                concurrency=self.settings.concurrency,
                include_relationships=self.settings.include_relationships,
                file_summaries=self.settings.file_summaries,
                include_dependencies=self.settings.include_dependencies,
                group_by_feature=self.settings.group_by_feature,
                project_analysis=analysis,
                cache=cache,
                change_info=change_set,
                highlight_new=bool(change_set and change_set.new),
                tree_files=plan.current_files,
            ),
        )

        if cache is not None:
            for rel in plan.files:
                cache.update_file_cache(rel, {"processed": True, "processedAt": now_iso(), "watchMode": True})
            if analysis is not None:
                cache.update_relationships_cache(analysis.to_blob(), persist=False)
            cache.save()

        if self.output_file is not None:
            header = build_watch_header(change_type, self.stats, change_set)
            try:
                existing = self.output_file.read_text(encoding="utf-8")
                self.output_file.write_text(header + "\n\n" + existing, encoding="utf-8")
            except OSError as e:
                logger.warning("watch_header_failed", output=str(self.output_file), error=str(e))


def _stat_signature(path: str) -> tuple[int, int] | None:
    try:
        st = Path(path).stat()
    except OSError:
        return None
    return st.st_size, st.st_mtime_ns


async def watch(settings: Settings, stop_event: asyncio.Event | None = None) -> WatchStats:
    """Watch ``settings.repo`` until `stop_event` is set (or SIGINT/SIGTERM).

    Returns:
        WatchStats: the statistics of the session
    """
    controller = WatchController(settings)
    stop = await controller.start_watching(settings.repo)
    event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(sig, event.set)
    try:
        await event.wait()
    finally:
        await stop()
    return controller.get_stats()


def run_watch(settings: Settings) -> WatchStats:
    """Blocking entry point of the ``watch`` command."""
    return asyncio.run(watch(settings))
