"""
skillrelay.polling

Periodic update checks for remote repositories that track a branch.

Every `interval` seconds the manager runs one check cycle over the non-pinned repositories:
a cheap has_remote_updates() pre-check, then a full sync when it reports changes. Only a sync
that succeeded and moved HEAD fires on_update. Failures fire on_error and the cycle moves on.

A cycle that is still running when the next tick arrives causes that tick to be skipped, not
queued. stop() cancels the timer only; a cycle already underway runs to completion.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable
from typing import Any

from skillrelay import SERVER_NAME
from skillrelay.remote_spec import RemoteSpec, looks_like_commit, looks_like_version_tag
from skillrelay.remote_sync import RemoteSyncEngine, RemoteSyncError, SyncOptions, SyncResult

logger = logging.getLogger(f"{SERVER_NAME}.polling")

UpdateCallback = Callable[[RemoteSpec, SyncResult], Any]
ErrorCallback = Callable[[RemoteSpec, Exception], Any]


def polled_subset(specs: Iterable[RemoteSpec]) -> list[RemoteSpec]:
    """Specs worth polling: default-branch and branch refs, not version tags or commits."""
    return [
        s for s in specs if not (s.ref and (looks_like_version_tag(s.ref) or looks_like_commit(s.ref)))
    ]


async def _call(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class PollingManager:
    def __init__(
        self,
        engine: RemoteSyncEngine,
        specs: Iterable[RemoteSpec],
        options: SyncOptions,
        interval: float,
        on_update: UpdateCallback,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.engine = engine
        self.specs = list(specs)
        self.options = options
        self.interval = interval
        self.on_update = on_update
        self.on_error = on_error
        self._timer: asyncio.Task[None] | None = None
        self._cycle: asyncio.Task[list[SyncResult]] | None = None
        self._checking = False

    @property
    def polled_specs(self) -> list[RemoteSpec]:
        return polled_subset(self.specs)

    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        """
        function_purpose: Start the polling timer on the running event loop.

        No-op when already running, when the interval is 0 or negative, or when every
        repository is pinned.
        """
        if self.is_running():
            logger.debug("Polling already running")
            return
        if self.interval <= 0:
            logger.info("Polling disabled (interval <= 0)")
            return
        polled = self.polled_specs
        if not polled:
            logger.info("Polling not started: all repositories are pinned to specific refs")
            return
        logger.info("Polling %d repo(s) every %ss", len(polled), self.interval)
        self._timer = asyncio.get_running_loop().create_task(self._run(), name="skillrelay-polling")

    def stop(self) -> None:
        if self._timer is None:
            return
        logger.info("Polling stopped")
        self._timer.cancel()
        self._timer = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self._checking:
                logger.info("Polling tick skipped: previous check still running")
                continue
            self._cycle = asyncio.get_running_loop().create_task(self.check_now())

    async def check_now(self) -> list[SyncResult]:
        """
        function_purpose: Run one check cycle immediately and return the syncs it performed.

        Returns an empty list without doing anything if a cycle is already in flight.
        """
        if self._checking:
            logger.info("Polling: already checking for updates, skipping")
            return []

        self._checking = True
        results: list[SyncResult] = []
        try:
            for spec in self.polled_specs:
                try:
                    if not await self.engine.has_remote_updates(spec, self.options):
                        continue
                    logger.info("Updates available for %s", spec.display_name)
                    result = await self.engine.sync(spec, self.options)
                    results.append(result)
                    if not result.ok:
                        await _call(self.on_error, spec, RemoteSyncError(result))
                    elif result.updated:
                        await _call(self.on_update, spec, result)
                except Exception as e:
                    logger.error("Polling error for %s: %s", spec.display_name, e, exc_info=True)
                    await _call(self.on_error, spec, e)
        finally:
            self._checking = False
        return results
