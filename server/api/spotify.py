from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from services.auth_service import AuthService
from services.onboarding import OnboardingService


def create_spotify_router(
    *,
    require_host: Callable[..., int],
    onboarding: OnboardingService,
    auth: AuthService,
    client_id: str,
    redirect_uri: str,
) -> APIRouter:
    router = APIRouter()

    @router.get("/auth/spotify")
    async def spotify_auth_url(user_id: int = Depends(require_host)) -> dict:
        if not client_id:
            raise HTTPException(status_code=503, detail="Spotify client is not configured")
        return {"url": auth.spotify_authorize_url(user_id, client_id=client_id, redirect_uri=redirect_uri)}

    @router.get("/auth/spotify/callback")
    async def spotify_callback(
        code: Optional[str] = Query(default=None),
        state: Optional[str] = Query(default=None),
        error: Optional[str] = Query(default=None),
    ) -> dict:
        if error:
            raise HTTPException(status_code=400, detail=f"Spotify authorization failed: {error}")
        if not code:
            raise HTTPException(status_code=400, detail="Missing authorization code")
        data = auth.decode_state(state)
        user_id = (data or {}).get("user_id")
        if not isinstance(user_id, int):
            raise HTTPException(status_code=400, detail="Invalid state")
        await onboarding.complete_streaming_link(user_id, code)
        return {"ok": True, "user_id": user_id}

    return router
