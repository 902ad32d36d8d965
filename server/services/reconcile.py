from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from fastapi import HTTPException

from services.party import PartySession
from services.registry import SessionRegistry


log = logging.getLogger("auxcord")


class ReconciliationLoop:
    """Re-asserts every host's intended party state against whatever other Sonos apps did.

    A fast loop applies target volume, play state and unmute. A slow loop
    refreshes cached groups/favorites and polls playback as a fallback for
    missed push notifications.
    """

    def __init__(self, *, registry: SessionRegistry, interval: float, cache_interval: float) -> None:
        self._registry = registry
        self._interval = max(0.5, float(interval))
        self._cache_interval = max(self._interval, float(cache_interval))
        self._tasks: list[asyncio.Task] = []

    async def _each_session(self, label: str, action: Callable[[PartySession], Awaitable[None]]) -> None:
        async def _run(session: PartySession) -> None:
            try:
                await action(session)
            except HTTPException as exc:
                log.warning("%s failed for user %s: %s", label, session.user_id, exc.detail)
            except Exception:
                log.exception("%s crashed for user %s", label, session.user_id)

        sessions = self._registry.sessions()
        if sessions:
            await asyncio.gather(*(_run(session) for session in sessions))

    async def reconcile_once(self) -> None:
        await self._each_session("Reconcile", lambda session: session.sonos.ensure_current_settings())

    async def refresh_once(self) -> None:
        async def _refresh(session: PartySession) -> None:
            await session.sonos.refresh_caches()
            if session.events:
                await session.events.poll()

        await self._each_session("Cache refresh", _refresh)

    async def _loop(self, step: Callable[[], Awaitable[None]], interval: float) -> None:
        try:
            while True:
                await step()
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            pass

    def start(self) -> None:
        if self._tasks:
            return
        log.info(
            "Reconciliation enabled (interval=%.1fs, cache refresh=%.1fs)",
            self._interval,
            self._cache_interval,
        )
        self._tasks = [
            asyncio.create_task(self._loop(self.reconcile_once, self._interval)),
            asyncio.create_task(self._loop(self.refresh_once, self._cache_interval)),
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not all(task.done() for task in self._tasks)
