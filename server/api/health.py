from __future__ import annotations

from typing import Callable

from fastapi import APIRouter


def create_health_router(*, session_count: Callable[[], int]) -> APIRouter:
    router = APIRouter()

    @router.get("/api/health")
    async def health() -> dict:
        return {"status": "ok", "sessions": session_count()}

    return router
