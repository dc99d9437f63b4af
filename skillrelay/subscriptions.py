"""
skillrelay.subscriptions

Resource subscriptions: maps a subscribed resource URI to the concrete files behind it,
watches those files, and emits one debounced "updated" notification per URI per settled burst.

URI resolution against the current skill index:
  skill://                 every skill's definition file
  skill://{name}           the skill's definition file
  skill://{name}/          the definition file plus every file in the skill folder
  skill://{name}/{path}    one file inside the skill folder (through the files.py checks)

refresh() re-resolves every subscription after the index is replaced. Old watches are torn
down before new ones are set; a subscription that no longer resolves to anything is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import unquote

from skillrelay import SERVER_NAME
from skillrelay.discovery import SkillIndex
from skillrelay.files import ResourceAccessError, list_skill_files, resolve_skill_file
from skillrelay.watcher import Debouncer, FileWatchBackend

logger = logging.getLogger(f"{SERVER_NAME}.subscriptions")

SKILL_URI_SCHEME = "skill://"
SUBSCRIPTION_DEBOUNCE = 0.1


class UnknownResourceError(LookupError):
    """A subscription URI does not resolve to any file."""


def resolve_uri(uri: str, index: SkillIndex) -> set[Path]:
    """
    function_purpose: Resolve a skill resource URI to the set of files it denotes.

    Returns an empty set for unknown skills. Raises ResourceAccessError for a file path that
    fails the access checks and UnknownResourceError for a URI outside the skill scheme.
    """
    if not uri.startswith(SKILL_URI_SCHEME):
        raise UnknownResourceError(f"Unsupported resource URI: {uri}")
    rest = uri[len(SKILL_URI_SCHEME) :]
    if not rest:
        return {r.definition_path for r in index.values()}

    raw_name, slash, rel_path = rest.partition("/")
    record = index.get(unquote(raw_name))
    if record is None:
        return set()
    if not slash:
        return {record.definition_path}
    if not rel_path:
        return {record.definition_path} | {record.skill_dir / f for f in list_skill_files(record.skill_dir)}
    return {resolve_skill_file(record.skill_dir, unquote(rel_path))}


@dataclass
class SubscriptionEntry:
    uri: str
    debouncer: Debouncer
    watched_paths: frozenset[Path] = frozenset()
    handles: list[Any] = field(default_factory=list)
    active: bool = True


class SubscriptionManager:
    """
    Tracks subscriptions independently of the skill index.

    `notify(uri)` is called on the event loop once per settled burst of changes to any file
    behind `uri`; it may return an awaitable.
    """

    def __init__(
        self,
        backend: FileWatchBackend,
        notify: Callable[[str], Any],
        index_provider: Callable[[], SkillIndex],
        loop: asyncio.AbstractEventLoop | None = None,
        delay: float = SUBSCRIPTION_DEBOUNCE,
    ) -> None:
        self.backend = backend
        self.notify = notify
        self.index_provider = index_provider
        self.delay = delay
        self._loop = loop
        self._entries: dict[str, SubscriptionEntry] = {}

    @property
    def subscriptions(self) -> dict[str, frozenset[Path]]:
        return {uri: e.watched_paths for uri, e in self._entries.items() if e.active}

    def _watch(self, entry: SubscriptionEntry, paths: set[Path]) -> None:
        for p in sorted(paths):
            try:
                entry.handles.append(self.backend.watch(p, entry.debouncer.trigger_threadsafe))
            except OSError as e:
                logger.warning("Cannot watch %s for %s: %s", p, entry.uri, e)
        entry.watched_paths = frozenset(paths)

    def _unwatch(self, entry: SubscriptionEntry) -> None:
        for handle in entry.handles:
            self.backend.unwatch(handle)
        entry.handles = []
        entry.watched_paths = frozenset()

    def subscribe(self, uri: str) -> frozenset[Path]:
        """
        function_purpose: Start watching the files behind uri. Subscribing twice is a no-op.

        Raises UnknownResourceError when uri resolves to nothing, ResourceAccessError when it
        names a file that fails the access checks.
        """
        existing = self._entries.get(uri)
        if existing is not None:
            return existing.watched_paths

        paths = resolve_uri(uri, self.index_provider())
        if not paths:
            raise UnknownResourceError(f"Resource not found: {uri}")

        entry = SubscriptionEntry(
            uri=uri,
            debouncer=Debouncer(self.delay, lambda: self.notify(uri), self._loop),
        )
        self._watch(entry, paths)
        self._entries[uri] = entry
        logger.info("Subscribed to %s (%d file(s))", uri, len(paths))
        return entry.watched_paths

    def unsubscribe(self, uri: str) -> bool:
        entry = self._entries.pop(uri, None)
        if entry is None:
            return False
        self._destroy(entry)
        logger.info("Unsubscribed from %s", uri)
        return True

    def _destroy(self, entry: SubscriptionEntry) -> None:
        entry.debouncer.cancel()
        self._unwatch(entry)
        entry.active = False

    def refresh(self, index: SkillIndex) -> None:
        """
        function_purpose: Re-resolve every subscription against a new index.

        Unchanged targets keep their watches. Changed targets are unwatched first, then
        rewatched, and a notification is scheduled since the content behind the URI moved.
        Subscriptions that resolve to nothing are dropped.
        """
        for uri, entry in list(self._entries.items()):
            try:
                paths = resolve_uri(uri, index)
            except (ResourceAccessError, UnknownResourceError) as e:
                logger.warning("Subscription %s no longer resolves: %s", uri, e)
                paths = set()

            if frozenset(paths) == entry.watched_paths:
                continue

            self._unwatch(entry)
            if not paths:
                del self._entries[uri]
                self._destroy(entry)
                logger.info("Dropped subscription %s: resource no longer exists", uri)
                continue
            self._watch(entry, paths)
            entry.debouncer.trigger()
            logger.debug("Re-resolved subscription %s to %d file(s)", uri, len(paths))

    def close(self) -> None:
        for entry in self._entries.values():
            self._destroy(entry)
        self._entries.clear()
