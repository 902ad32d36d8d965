import logging
import os
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from itsdangerous import URLSafeTimedSerializer

from api.health import create_health_router
from api.party import create_party_router
from api.sonos import create_sonos_router
from api.spotify import create_spotify_router
from services.auth_service import AuthService
from services.onboarding import OnboardingService
from services.reconcile import ReconciliationLoop
from services.registry import SessionRegistry
from services.session_store import SONOS_SESSIONS, SPOTIFY_SESSIONS, SessionStore
from services.sonos import SonosController
from services.spotify_api import SpotifyClient
from services.tokens import TokenManager


logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
log = logging.getLogger("auxcord")

SONOS_CLIENT_ID = os.getenv("SONOS_CLIENT_ID", "").strip()
SONOS_CLIENT_SECRET = os.getenv("SONOS_CLIENT_SECRET", "")
SONOS_TOKEN_URL = "https://api.sonos.com/login/v3/oauth/access"
SPOTIFY_CLIENT_ID = os.getenv("SPOTIFY_CLIENT_ID", "").strip()
SPOTIFY_CLIENT_SECRET = os.getenv("SPOTIFY_CLIENT_SECRET", "")
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").strip().rstrip("/")
SONOS_REDIRECT_URI = f"{PUBLIC_BASE_URL}/sonos/authorized"
SPOTIFY_REDIRECT_URI = f"{PUBLIC_BASE_URL}/auth/spotify/callback"
STORE_PATH = Path(os.getenv("STORE_PATH", "/config/auxcord.json"))
STORE_PATH.parent.mkdir(parents=True, exist_ok=True)
SESSION_SECRET = os.getenv("AUTH_SESSION_SECRET", "auxcord-auth-secret")
SESSION_MAX_AGE = max(300, int(os.getenv("AUTH_SESSION_MAX_AGE", str(60 * 60 * 24 * 30))))
SESSION_SIGNER = URLSafeTimedSerializer(SESSION_SECRET, salt="auxcord-session")
STATE_SIGNER = URLSafeTimedSerializer(SESSION_SECRET, salt="auxcord-oauth-state")
SONOS_CONTROL_TIMEOUT = max(1.0, float(os.getenv("SONOS_CONTROL_TIMEOUT", "10")))
SPOTIFY_TIMEOUT = max(1.0, float(os.getenv("SPOTIFY_TIMEOUT", "10")))
RECONCILE_INTERVAL = max(0.5, float(os.getenv("RECONCILE_INTERVAL", "2")))
CACHE_REFRESH_INTERVAL = max(RECONCILE_INTERVAL, float(os.getenv("CACHE_REFRESH_INTERVAL", "15")))
DEFAULT_TARGET_VOLUME = max(0, min(100, int(os.getenv("DEFAULT_TARGET_VOLUME", "30"))))
WELCOME_TRACK_ID = os.getenv("WELCOME_TRACK_ID", "3KliPMvk1EvFZu9cvkj8p1").strip() or None
PARTY_PLAYLIST_NAME = os.getenv("PARTY_PLAYLIST_NAME", "SonosPartyMode - Don't Delete").strip() or "SonosPartyMode - Don't Delete"


store = SessionStore(STORE_PATH)

sonos_tokens = TokenManager(
    provider="Sonos",
    token_url=SONOS_TOKEN_URL,
    client_id=SONOS_CLIENT_ID,
    client_secret=SONOS_CLIENT_SECRET,
    redirect_uri=SONOS_REDIRECT_URI,
    store=store,
    table=SONOS_SESSIONS,
    timeout=SONOS_CONTROL_TIMEOUT,
)
spotify_tokens = TokenManager(
    provider="Spotify",
    token_url=SPOTIFY_TOKEN_URL,
    client_id=SPOTIFY_CLIENT_ID,
    client_secret=SPOTIFY_CLIENT_SECRET,
    redirect_uri=SPOTIFY_REDIRECT_URI,
    store=store,
    table=SPOTIFY_SESSIONS,
    timeout=SPOTIFY_TIMEOUT,
)


def _build_sonos(user_id: int) -> SonosController:
    return SonosController(
        user_id=user_id,
        store=store,
        tokens=sonos_tokens,
        timeout=SONOS_CONTROL_TIMEOUT,
        default_volume=DEFAULT_TARGET_VOLUME,
    )


def _build_spotify(user_id: int) -> SpotifyClient:
    return SpotifyClient(
        user_id=user_id,
        store=store,
        tokens=spotify_tokens,
        playlist_name=PARTY_PLAYLIST_NAME,
        welcome_track_id=WELCOME_TRACK_ID,
        timeout=SPOTIFY_TIMEOUT,
    )


registry = SessionRegistry(store=store, build_sonos=_build_sonos, build_spotify=_build_spotify)
onboarding = OnboardingService(
    store=store,
    registry=registry,
    sonos_tokens=sonos_tokens,
    spotify_tokens=spotify_tokens,
    build_sonos=_build_sonos,
    build_spotify=_build_spotify,
)
auth_service = AuthService(
    session_signer=SESSION_SIGNER,
    state_signer=STATE_SIGNER,
    session_max_age=SESSION_MAX_AGE,
)
reconciliation = ReconciliationLoop(
    registry=registry,
    interval=RECONCILE_INTERVAL,
    cache_interval=CACHE_REFRESH_INTERVAL,
)


def require_host(x_host_token: Optional[str] = Header(default=None)) -> int:
    user_id = auth_service.resolve_host(x_host_token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Host login required")
    return user_id


app = FastAPI(title="Auxcord")

app.include_router(create_health_router(session_count=lambda: len(registry)))

app.include_router(
    create_sonos_router(
        registry=registry,
        onboarding=onboarding,
        auth=auth_service,
        client_id=SONOS_CLIENT_ID,
        redirect_uri=SONOS_REDIRECT_URI,
    )
)

app.include_router(
    create_spotify_router(
        require_host=require_host,
        onboarding=onboarding,
        auth=auth_service,
        client_id=SPOTIFY_CLIENT_ID,
        redirect_uri=SPOTIFY_REDIRECT_URI,
    )
)

app.include_router(
    create_party_router(
        require_host=require_host,
        registry=registry,
        onboarding=onboarding,
    )
)


@app.on_event("startup")
async def _startup_events() -> None:
    if not SONOS_CLIENT_ID or not SPOTIFY_CLIENT_ID:
        log.warning("Sonos or Spotify client credentials are missing; onboarding will fail")
    await registry.load_all()
    log.info("Loaded %d party session(s) from %s", len(registry), STORE_PATH)
    reconciliation.start()


@app.on_event("shutdown")
async def _shutdown_events() -> None:
    await reconciliation.stop()
    await registry.close_all()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
