"""
skillrelay.runtime

Wires the trigger paths into the refresh pipeline:

- startup and configuration edits: resolve sources, sync remote repositories, refresh,
  then retarget the directory watcher and the polling manager
- local filesystem changes (debounced by the watcher): refresh over the same directories
- remote updates found by polling: refresh over the same directories

In static mode neither the watcher nor polling runs; configuration edits still refresh.
Everything runs on one event loop. reload() holds a lock so an edit that arrives while a
sync is in flight waits for it instead of interleaving.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from skillrelay import SERVER_NAME
from skillrelay.config import (
    RemoteSettings,
    SettingsStore,
    SourceConfigResolver,
    SourceConfigState,
    SourceKind,
    load_remote_settings,
)
from skillrelay.discovery import BUNDLED_SOURCE, LOCAL_SOURCE, SkillSource, remote_source
from skillrelay.polling import PollingManager
from skillrelay.refresh import (
    PromptRegistry,
    ProtocolSurface,
    RefreshPipeline,
    SkillSnapshot,
    SkillState,
)
from skillrelay.remote_spec import (
    InvalidReference,
    RemoteSpec,
    is_repo_allowed,
    parse_remote_reference,
)
from skillrelay.remote_sync import (
    RemoteSyncEngine,
    SyncOptions,
    SyncResult,
    select_remote_specs,
)
from skillrelay.subscriptions import SubscriptionManager
from skillrelay.watcher import FileWatchBackend, SkillDirectoryWatcher

logger = logging.getLogger(f"{SERVER_NAME}.runtime")


class SkillRelayRuntime:
    """
    Owns the shared skill state and every component that can trigger a refresh.

    The protocol surface, file-watch backend and resource-updated callback are optional so
    the runtime can also back the CLI inspection modes, which never start watchers.
    """

    def __init__(
        self,
        store: SettingsStore,
        resolver: SourceConfigResolver,
        environ: Mapping[str, str] | None = None,
        engine: RemoteSyncEngine | None = None,
        surface: ProtocolSurface | None = None,
        file_backend: FileWatchBackend | None = None,
        on_resource_updated: Callable[[str], Any] | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.environ = environ
        self.engine = engine or RemoteSyncEngine()
        self.surface = surface
        self.file_backend = file_backend
        self.on_resource_updated = on_resource_updated

        self.state = SkillState()
        self.prompts = PromptRegistry(surface) if surface is not None else None
        self.pipeline = RefreshPipeline(
            self.state,
            overrides_provider=self.store.invocation_overrides,
            surface=surface,
            prompts=self.prompts,
        )
        self.subscriptions: SubscriptionManager | None = None
        self.watcher: SkillDirectoryWatcher | None = None
        self.poller: PollingManager | None = None

        self.remote_settings: RemoteSettings = load_remote_settings(store, environ)
        self.config_state: SourceConfigState = resolver.resolve()
        self.sync_results: dict[str, SyncResult] = {}
        self.remote_specs: list[tuple[str, RemoteSpec]] = []
        self._reload_lock = asyncio.Lock()

    @property
    def sync_options(self) -> SyncOptions:
        return SyncOptions(cache_dir=self.remote_settings.cache_dir, token=self.remote_settings.token)

    def static_mode(self) -> bool:
        return self.store.static_mode()

    # --- Source resolution ---
    def active_directories(self) -> list[tuple[Path, SkillSource]]:
        """
        function_purpose: Map the resolved entries to scan directories, in configured order.

        Remote entries contribute their cache path only after a successful sync. Bundled
        skills come last.
        """
        out: list[tuple[Path, SkillSource]] = []
        for entry in self.config_state.directories:
            if entry.kind is SourceKind.LOCAL:
                out.append((Path(entry.path), LOCAL_SOURCE))
                continue
            result = self.sync_results.get(entry.path)
            if result is None or not result.ok:
                continue
            out.append((result.local_path, remote_source(result.spec.owner, result.spec.repo)))
        if self.config_state.bundled_directory is not None:
            out.append((self.config_state.bundled_directory, BUNDLED_SOURCE))
        return out

    async def sync_remotes(self) -> list[SyncResult]:
        """Sync every allowed remote entry of the active tier, one after another."""
        self.remote_specs = select_remote_specs(
            self.config_state.paths,
            self.remote_settings.allowed_orgs,
            self.remote_settings.allowed_users,
        )
        results = await self.engine.sync_all([spec for _, spec in self.remote_specs], self.sync_options)
        self.sync_results = {entry: result for (entry, _), result in zip(self.remote_specs, results)}
        failed = [r for r in results if not r.ok]
        if failed:
            logger.warning("%d of %d remote repo(s) failed to sync", len(failed), len(results))
        return results

    # --- Trigger paths ---
    def refresh(self) -> SkillSnapshot:
        """Refresh over the current directories without resolving or syncing again."""
        return self.pipeline.refresh(self.active_directories())

    async def reload(self, sync: bool = True) -> SkillSnapshot:
        """
        function_purpose: Full reload after startup or a configuration edit.

        Re-reads settings, resolves the active tier, optionally syncs remote repositories,
        refreshes, then retargets the watcher and polling for the new sources.
        """
        async with self._reload_lock:
            self.remote_settings = load_remote_settings(self.store, self.environ)
            self.config_state = self.resolver.resolve()
            if sync:
                await self.sync_remotes()
            snapshot = self.refresh()
            self._retarget()
            return snapshot

    def _on_local_change(self) -> None:
        logger.info("Skill files changed on disk; refreshing")
        self.refresh()

    def _on_remote_update(self, spec: RemoteSpec, result: SyncResult) -> None:
        for entry, s in self.remote_specs:
            if s == spec:
                self.sync_results[entry] = result
        logger.info("Remote update pulled for %s; refreshing", spec.display_name)
        self.refresh()

    def _on_poll_error(self, spec: RemoteSpec, error: Exception) -> None:
        logger.warning("Polling %s failed: %s", spec.display_name, error)

    def _retarget(self) -> None:
        if self.watcher is None:
            return
        if self.static_mode():
            self.watcher.stop()
            self._stop_polling()
            logger.info("Static mode: file watching and polling are off")
            return

        self.watcher.start([d for d, _ in self.active_directories()])
        self._stop_polling()
        specs: list[RemoteSpec] = []
        for entry, spec in self.remote_specs:
            result = self.sync_results.get(entry)
            if result is not None and result.pinned:
                continue
            specs.append(spec)
        if specs:
            self.poller = PollingManager(
                self.engine,
                specs,
                self.sync_options,
                self.remote_settings.poll_interval,
                on_update=self._on_remote_update,
                on_error=self._on_poll_error,
            )
            self.poller.start()

    def _stop_polling(self) -> None:
        if self.poller is not None:
            self.poller.stop()
            self.poller = None

    # --- Lifecycle ---
    async def start(self) -> SkillSnapshot:
        """
        function_purpose: Build watchers on the running loop, then perform the initial
        sync and refresh.
        """
        loop = asyncio.get_running_loop()
        if self.file_backend is not None and self.on_resource_updated is not None:
            self.subscriptions = SubscriptionManager(
                self.file_backend,
                self.on_resource_updated,
                lambda: self.state.index,
                loop,
            )
            self.pipeline.subscriptions = self.subscriptions
        self.watcher = SkillDirectoryWatcher(self._on_local_change, loop)
        return await self.reload()

    async def stop(self) -> None:
        self._stop_polling()
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        if self.subscriptions is not None:
            self.subscriptions.close()
        if self.file_backend is not None:
            self.file_backend.close()

    # --- Inspection ---
    def _skill_count(self, path: str, kind: SourceKind) -> int:
        records = self.state.index.values()
        if kind is SourceKind.REMOTE:
            try:
                spec = parse_remote_reference(path)
            except InvalidReference:
                return 0
            return sum(
                1
                for r in records
                if (r.source.owner or "").lower() == spec.owner.lower()
                and (r.source.repo or "").lower() == spec.repo.lower()
            )
        base = Path(path)
        return sum(1 for r in records if r.source_directory == base or base in r.source_directory.parents)

    def describe_config(self) -> dict[str, Any]:
        """State reported by the skill-config tool and the --config CLI flag."""
        active = set(self.config_state.paths)
        directories: list[dict[str, Any]] = []
        for entry in self.resolver.all_directories():
            item = entry.to_dict()
            item["active"] = entry.path in active
            item["skillCount"] = self._skill_count(entry.path, entry.kind)
            if entry.kind is SourceKind.REMOTE:
                try:
                    spec = parse_remote_reference(entry.path)
                    item["allowed"] = is_repo_allowed(
                        spec, self.remote_settings.allowed_orgs, self.remote_settings.allowed_users
                    )
                except InvalidReference as e:
                    item["allowed"] = False
                    item["error"] = str(e)
                result = self.sync_results.get(entry.path)
                if result is not None:
                    item["sync"] = result.to_dict()
            else:
                item["allowed"] = True
            directories.append(item)

        return {
            "directories": directories,
            "activeTier": self.config_state.active_tier.value,
            "isOverridden": self.config_state.is_overridden,
            "bundledDirectory": (
                str(self.config_state.bundled_directory) if self.config_state.bundled_directory else None
            ),
            "staticMode": self.static_mode(),
            "allowedOrgs": list(self.remote_settings.allowed_orgs),
            "allowedUsers": list(self.remote_settings.allowed_users),
            "pollInterval": self.remote_settings.poll_interval,
            "cacheDir": str(self.remote_settings.cache_dir),
            "skillCount": len(self.state.index),
        }
