from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from services.errors import AuthError, DuplicateSubmissionError
from services.onboarding import OnboardingService
from services.party import PartySession
from services.registry import SessionRegistry


class HostUpdatePayload(BaseModel):
    volume: Optional[int] = Field(default=None, ge=0, le=100)
    party_on: Optional[bool] = None
    group_id: Optional[str] = Field(default=None, min_length=1, max_length=200)
    skip: bool = False


def create_party_router(
    *,
    require_host: Callable[..., int],
    registry: SessionRegistry,
    onboarding: OnboardingService,
) -> APIRouter:
    router = APIRouter()

    async def _host_session(user_id: int) -> PartySession:
        session = await registry.get_or_load(user_id)
        if session is None:
            raise AuthError("Sonos is not linked")
        return session

    async def _guest_session(user_id: int, playlist_id: str) -> PartySession:
        session = await registry.get_or_load(user_id)
        if session is None or not session.fully_linked:
            raise HTTPException(status_code=404, detail="Unknown party")
        session.verify_guest_access(playlist_id)
        return session

    # Host

    @router.get("/api/party")
    async def party_dashboard(
        refresh: bool = Query(default=False),
        user_id: int = Depends(require_host),
    ) -> dict:
        session = await _host_session(user_id)
        if not session.fully_linked:
            return {"needs_spotify": True}
        return await session.party_data(force_refresh=refresh)

    @router.post("/api/party/host")
    async def party_host_update(payload: HostUpdatePayload, user_id: int = Depends(require_host)) -> dict:
        session = await _host_session(user_id)
        await session.host_update(
            volume=payload.volume,
            party_on=payload.party_on,
            group_id=payload.group_id,
            skip=payload.skip,
        )
        return {
            "ok": True,
            "party_on": session.sonos.party_active,
            "volume": session.sonos.target_volume,
            "selected_group": session.sonos.group_id,
        }

    @router.post("/api/party/logout")
    async def party_logout(user_id: int = Depends(require_host)) -> dict:
        await onboarding.logout(user_id)
        return {"ok": True}

    # Guests

    @router.get("/api/p/{user_id}/{playlist_id}")
    async def guest_queue(user_id: int, playlist_id: str) -> dict:
        session = await _guest_session(user_id, playlist_id)
        return {"queued_songs": session.queued_songs()}

    @router.get("/api/p/{user_id}/{playlist_id}/search")
    async def guest_search(
        user_id: int,
        playlist_id: str,
        q: str = Query(min_length=1, max_length=200),
    ) -> dict:
        query = (q or "").strip()
        if not query:
            raise HTTPException(status_code=400, detail="Query cannot be empty")
        session = await _guest_session(user_id, playlist_id)
        return {"query": query, "tracks": await session.search(query)}

    @router.post("/api/p/{user_id}/{playlist_id}/{song_id}")
    async def guest_submit(user_id: int, playlist_id: str, song_id: str) -> dict:
        session = await _guest_session(user_id, playlist_id)
        try:
            return await session.submit_song(song_id)
        except DuplicateSubmissionError as exc:
            return {"success": False, "error": exc.detail}

    return router
