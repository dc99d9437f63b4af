"""
skillrelay.watcher

Filesystem watching built on watchdog.

- Debouncer: restartable delay on the event loop; each trigger reschedules a single pending
  call, so a burst of events fires the callback once.
- is_relevant_event(): decides whether one raw event can change the set of skills.
- SkillDirectoryWatcher: watches the active skill directories and fires a debounced refresh.
- WatchdogFileBackend: per-file watches used by resource subscriptions.

watchdog delivers events on its observer thread. Everything here hops back onto the event loop
with call_soon_threadsafe before touching shared state.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import threading
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from skillrelay import SERVER_NAME
from skillrelay.discovery import SKILL_FILENAMES, find_definition_file, scan_directories

logger = logging.getLogger(f"{SERVER_NAME}.watcher")

REFRESH_DEBOUNCE = 0.5
_DEFINITION_NAMES = {n.lower() for n in SKILL_FILENAMES}
_CHANGE_EVENTS = {"created", "modified", "deleted", "moved"}


class Debouncer:
    """Collapses bursts of trigger() calls into one callback after `delay` seconds of quiet."""

    def __init__(
        self,
        delay: float,
        callback: Callable[[], Any],
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.delay = delay
        self.callback = callback
        self._loop = loop or asyncio.get_running_loop()
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        """(Re)start the timer. Must be called on the loop thread."""
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._loop.call_later(self.delay, self._fire)

    def trigger_threadsafe(self) -> None:
        """trigger() from any thread."""
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self.trigger)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        result = self.callback()
        if inspect.isawaitable(result):
            self._loop.create_task(result)


def is_relevant_event(
    event_type: str,
    src_path: str,
    is_directory: bool,
    dest_path: str | None = None,
) -> bool:
    """
    function_purpose: Decide whether a raw filesystem event can change the discovered skills.

    - Any create/modify/delete/move of a file named SKILL.md (any case) qualifies.
    - A directory that is created or moved in qualifies when it holds a definition file.
    - A deleted or moved-away directory qualifies, since it may have been a skill folder.
    - Everything else (other files, directory metadata changes, open/close) is ignored.
    """
    if event_type not in _CHANGE_EVENTS:
        return False
    paths = [p for p in (src_path, dest_path) if p]

    if not is_directory:
        return any(Path(p).name.lower() in _DEFINITION_NAMES for p in paths)

    if event_type == "deleted":
        return True
    if event_type == "moved":
        return True
    if event_type == "created":
        return find_definition_file(Path(src_path)) is not None
    return False


class _CallbackHandler(FileSystemEventHandler):
    def __init__(self, on_event: Callable[[FileSystemEvent], None]) -> None:
        super().__init__()
        self._on_event = on_event

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._on_event(event)


def _watch_roots(directories: Iterable[Path]) -> list[Path]:
    """Existing directories to watch recursively, with nested duplicates removed."""
    candidates: list[Path] = []
    for directory in directories:
        for d in scan_directories(Path(directory)):
            if d.is_dir():
                candidates.append(d.resolve())
    roots: list[Path] = []
    for c in sorted(set(candidates), key=lambda p: len(p.parts)):
        if not any(r == c or r in c.parents for r in roots):
            roots.append(c)
    return roots


class SkillDirectoryWatcher:
    """
    Watches skill directories and calls on_change once per settled burst of relevant events.

    start() replaces any previous watch set, so it is also how the watcher is retargeted
    after the active directories change.
    """

    def __init__(
        self,
        on_change: Callable[[], Any],
        loop: asyncio.AbstractEventLoop | None = None,
        delay: float = REFRESH_DEBOUNCE,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self._debouncer = Debouncer(delay, on_change, loop)
        self._observer_factory = observer_factory
        self._observer: Any = None
        self.watched: list[Path] = []

    def _on_event(self, event: FileSystemEvent) -> None:
        src = os.fsdecode(event.src_path)
        dest = os.fsdecode(event.dest_path) if event.dest_path else None
        if is_relevant_event(event.event_type, src, event.is_directory, dest):
            logger.debug("Skill change detected: %s %s", event.event_type, src)
            self._debouncer.trigger_threadsafe()

    def start(self, directories: Iterable[Path]) -> list[Path]:
        self.stop()
        roots = _watch_roots(directories)
        if not roots:
            logger.info("No skill directories to watch")
            return []

        observer = self._observer_factory()
        handler = _CallbackHandler(self._on_event)
        for root in roots:
            try:
                observer.schedule(handler, str(root), recursive=True)
            except OSError as e:
                logger.warning("Cannot watch %s: %s", root, e)
        observer.start()
        self._observer = observer
        self.watched = roots
        logger.info("Watching %d skill director%s", len(roots), "y" if len(roots) == 1 else "ies")
        return roots

    def stop(self) -> None:
        self._debouncer.cancel()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None
        self.watched = []


# --- Per-file watches ---
class FileWatchBackend(Protocol):
    """Watches single files. The callback may run on any thread."""

    def watch(self, path: Path, callback: Callable[[], None]) -> Any: ...

    def unwatch(self, handle: Any) -> None: ...

    def close(self) -> None: ...


class WatchdogFileBackend:
    """
    FileWatchBackend on one shared watchdog observer.

    Each file is watched through a non-recursive watch on its parent directory; events are
    filtered down to the file itself.
    """

    def __init__(self, observer_factory: Callable[[], Any] = Observer) -> None:
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._lock = threading.Lock()
        self._callbacks: dict[int, tuple[str, Callable[[], None]]] = {}
        self._dir_watches: dict[str, tuple[Any, int]] = {}
        self._next_id = 0

    def _ensure_observer(self) -> Any:
        if self._observer is None:
            self._observer = self._observer_factory()
            self._observer.start()
        return self._observer

    def _dispatch(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _CHANGE_EVENTS:
            return
        touched = {os.path.realpath(os.fsdecode(event.src_path))}
        if event.dest_path:
            touched.add(os.path.realpath(os.fsdecode(event.dest_path)))
        with self._lock:
            callbacks = [cb for path, cb in self._callbacks.values() if path in touched]
        for cb in callbacks:
            cb()

    def watch(self, path: Path, callback: Callable[[], None]) -> int:
        target = os.path.realpath(path)
        parent = os.path.dirname(target)
        with self._lock:
            observer = self._ensure_observer()
            if parent in self._dir_watches:
                watch, count = self._dir_watches[parent]
                self._dir_watches[parent] = (watch, count + 1)
            else:
                watch = observer.schedule(_CallbackHandler(self._dispatch), parent, recursive=False)
                self._dir_watches[parent] = (watch, 1)
            self._next_id += 1
            self._callbacks[self._next_id] = (target, callback)
            return self._next_id

    def unwatch(self, handle: int) -> None:
        with self._lock:
            entry = self._callbacks.pop(handle, None)
            if entry is None:
                return
            parent = os.path.dirname(entry[0])
            watch, count = self._dir_watches[parent]
            if count > 1:
                self._dir_watches[parent] = (watch, count - 1)
                return
            del self._dir_watches[parent]
            if self._observer is not None:
                self._observer.unschedule(watch)

    def close(self) -> None:
        with self._lock:
            self._callbacks.clear()
            self._dir_watches.clear()
            observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=2)
