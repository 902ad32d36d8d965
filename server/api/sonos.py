import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import Response

from services.auth_service import AuthService
from services.events import EventProcessor
from services.onboarding import OnboardingService
from services.registry import SessionRegistry


log = logging.getLogger("auxcord")

TARGET_HEADER = "X-Sonos-Target-Value"


def create_sonos_router(
    *,
    registry: SessionRegistry,
    onboarding: OnboardingService,
    auth: AuthService,
    client_id: str,
    redirect_uri: str,
) -> APIRouter:
    router = APIRouter()

    async def _process_event(events: EventProcessor, group_id: str, event: Any) -> None:
        try:
            await events.process(event)
        except HTTPException as exc:
            log.warning("Sonos event for group %s failed: %s", group_id, exc.detail)
        except Exception:
            log.exception("Sonos event for group %s crashed", group_id)

    @router.post("/callback")
    async def sonos_callback(request: Request, background_tasks: BackgroundTasks) -> Response:
        # Sonos redelivers anything that is not acknowledged quickly, so the work runs after the 200.
        group_id = request.headers.get(TARGET_HEADER)
        raw = await request.body()
        try:
            event = json.loads(raw) if raw else None
        except ValueError:
            log.debug("Ignoring malformed Sonos event for group %s", group_id)
            event = None
        session = registry.find_by_group(group_id) if group_id else None
        if session and session.events and isinstance(event, dict):
            background_tasks.add_task(_process_event, session.events, group_id, event)
        return Response(status_code=200)

    @router.get("/auth/sonos")
    async def sonos_auth_url() -> dict:
        if not client_id:
            raise HTTPException(status_code=503, detail="Sonos client is not configured")
        return {"url": auth.sonos_authorize_url(client_id=client_id, redirect_uri=redirect_uri)}

    @router.get("/sonos/authorized")
    async def sonos_authorized(
        code: Optional[str] = Query(default=None),
        state: Optional[str] = Query(default=None),
        error: Optional[str] = Query(default=None),
    ) -> dict:
        if error:
            raise HTTPException(status_code=400, detail=f"Sonos authorization failed: {error}")
        if not code:
            raise HTTPException(status_code=400, detail="Missing authorization code")
        if auth.decode_state(state) is None:
            raise HTTPException(status_code=400, detail="Invalid state")
        user_id = await onboarding.complete_device_link(code)
        session = registry.get(user_id)
        return {
            "host_token": auth.encode_host_token(user_id),
            "user_id": user_id,
            "spotify_linked": bool(session and session.fully_linked),
        }

    return router
