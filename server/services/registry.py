from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Optional

from fastapi import HTTPException

from services.party import PartySession
from services.session_store import SONOS_SESSIONS, SPOTIFY_SESSIONS, SessionStore
from services.sonos import SonosController
from services.spotify_api import SpotifyClient


log = logging.getLogger("auxcord")


class SessionRegistry:
    """Live PartySession per host, loaded on first use and torn down explicitly."""

    def __init__(
        self,
        *,
        store: SessionStore,
        build_sonos: Callable[[int], SonosController],
        build_spotify: Callable[[int], SpotifyClient],
    ) -> None:
        self._store = store
        self._build_sonos = build_sonos
        self._build_spotify = build_spotify
        self._sessions: dict[int, PartySession] = {}
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, user_id: int) -> Optional[PartySession]:
        return self._sessions.get(user_id)

    def sessions(self) -> list[PartySession]:
        return list(self._sessions.values())

    def require(self, user_id: int) -> PartySession:
        session = self._sessions.get(user_id)
        if not session:
            raise HTTPException(status_code=404, detail="Unknown party")
        return session

    async def _build(self, user_id: int) -> Optional[PartySession]:
        if self._store.get(SONOS_SESSIONS, user_id) is None:
            return None
        sonos = self._build_sonos(user_id)
        await sonos.load()
        session = PartySession(user_id=user_id, sonos=sonos)
        if self._store.get(SPOTIFY_SESSIONS, user_id) is not None:
            session.attach_spotify(self._build_spotify(user_id))
        return session

    async def get_or_load(self, user_id: int) -> Optional[PartySession]:
        async with self._locks[user_id]:
            session = self._sessions.get(user_id)
            if session:
                return session
            session = await self._build(user_id)
            if session:
                self._sessions[user_id] = session
            return session

    async def reload(self, user_id: int) -> Optional[PartySession]:
        async with self._locks[user_id]:
            previous = self._sessions.pop(user_id, None)
            if previous:
                await previous.teardown()
            session = await self._build(user_id)
            if session:
                self._sessions[user_id] = session
            return session

    async def remove(self, user_id: int) -> None:
        async with self._locks[user_id]:
            session = self._sessions.pop(user_id, None)
            if session:
                await session.teardown()
        self._locks.pop(user_id, None)

    async def load_all(self) -> None:
        for user_id in self._store.user_ids():
            try:
                await self.get_or_load(user_id)
            except HTTPException as exc:
                log.warning("Could not load session for user %s: %s", user_id, exc.detail)

    async def close_all(self) -> None:
        for user_id in list(self._sessions.keys()):
            await self.remove(user_id)

    def find_by_group(self, group_id: str) -> Optional[PartySession]:
        """Session that owns a Sonos group; half-onboarded duplicates are skipped."""
        candidates = [s for s in self._sessions.values() if s.sonos.group_id == group_id]
        for session in candidates:
            if session.fully_linked:
                return session
        return None
