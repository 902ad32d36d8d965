from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import HTTPException

from services.errors import AuthError, NoHouseholdError
from services.registry import SessionRegistry
from services.session_store import SONOS_SESSIONS, SPOTIFY_SESSIONS, SessionStore
from services.sonos import SonosController
from services.spotify_api import SpotifyClient
from services.tokens import TokenManager


log = logging.getLogger("auxcord")


class OnboardingService:
    def __init__(
        self,
        *,
        store: SessionStore,
        registry: SessionRegistry,
        sonos_tokens: TokenManager,
        spotify_tokens: TokenManager,
        build_sonos: Callable[[int], SonosController],
        build_spotify: Callable[[int], SpotifyClient],
    ) -> None:
        self._store = store
        self._registry = registry
        self._sonos_tokens = sonos_tokens
        self._spotify_tokens = spotify_tokens
        self._build_sonos = build_sonos
        self._build_spotify = build_spotify

    async def _discard(self, user_id: int) -> None:
        await self._registry.remove(user_id)
        self._store.delete(SONOS_SESSIONS, user_id)
        self._store.delete(SPOTIFY_SESSIONS, user_id)
        self._store.delete_user(user_id)

    async def complete_device_link(self, authorization_code: str) -> int:
        """Link a Sonos account and return the user id that owns its household from now on."""
        user_id = self._store.create_user()
        try:
            await self._sonos_tokens.exchange(user_id, authorization_code)
            household = await self._build_sonos(user_id).primary_household()
        except HTTPException:
            await self._discard(user_id)
            raise
        if not household:
            log.info("Sonos account of user %s has no household, discarding", user_id)
            await self._discard(user_id)
            raise NoHouseholdError()
        self._store.update(SONOS_SESSIONS, user_id, {"household": household})

        adopted = await self.merge_household(household)
        session = await self._registry.reload(adopted)
        if session is None:
            raise AuthError("Sonos session could not be loaded")
        return adopted

    async def merge_household(self, household: str) -> int:
        entries = self._store.find(SONOS_SESSIONS, household=household)
        if not entries:
            raise AuthError(f"No Sonos session stored for household {household}")
        without_spotify = [e for e in entries if self._store.get(SPOTIFY_SESSIONS, e["user_id"]) is None]

        if len(entries) > len(without_spotify):
            # Someone already finished onboarding for this household; drop the half-linked records.
            for entry in without_spotify:
                await self._discard(entry["user_id"])
            adopted = self._store.find(SONOS_SESSIONS, household=household)[0]["user_id"]
            log.info("Household %s re-linked, adopting fully linked user %s", household, adopted)
            return adopted

        if len(entries) > 1:
            oldest = entries[0]
            for entry in entries[1:]:
                await self._discard(entry["user_id"])
            log.info("Household %s had %d half-linked records, keeping user %s", household, len(entries), oldest["user_id"])
            return oldest["user_id"]

        return entries[0]["user_id"]

    async def complete_streaming_link(self, user_id: int, authorization_code: str) -> None:
        session = await self._registry.get_or_load(user_id)
        if session is None:
            raise AuthError("Sonos is not linked")
        await self._spotify_tokens.exchange(user_id, authorization_code)
        spotify = self._build_spotify(user_id)
        profile = await spotify.me()
        self._store.update(SPOTIFY_SESSIONS, user_id, {"spotify_user_id": profile.get("id")})
        session.attach_spotify(spotify)
        log.info("User %s finished onboarding", user_id)

    async def logout(self, user_id: int) -> None:
        await self._discard(user_id)
        log.info("User %s logged out", user_id)
