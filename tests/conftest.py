import json
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio

from services.registry import SessionRegistry
from services.session_store import SONOS_SESSIONS, SPOTIFY_SESSIONS, SessionStore
from services.sonos import SonosController
from services.spotify_api import SpotifyClient
from services.tokens import TokenManager

SONOS_TOKEN_URL = "https://api.sonos.com/login/v3/oauth/access"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
PARTY_PLAYLIST_NAME = "SonosPartyMode - Don't Delete"


def make_track(track_id: str, name: str, artist: str = "Test Artist") -> dict:
    """Spotify Web API track object."""
    return {
        "id": track_id,
        "name": name,
        "uri": f"spotify:track:{track_id}",
        "duration_ms": 215000,
        "artists": [{"name": artist}],
        "album": {
            "images": [
                {"url": f"https://img.example/{track_id}/640"},
                {"url": f"https://img.example/{track_id}/300"},
                {"url": f"https://img.example/{track_id}/64"},
            ]
        },
    }


def sonos_fault(errorcode: str, faultstring: str = "Fault") -> dict:
    return {"fault": {"faultstring": faultstring, "detail": {"errorcode": errorcode}}}


# ============================================================================
# Fake provider backends
# ============================================================================


class FakeTokenEndpoint:
    """OAuth token endpoint that hands out numbered tokens."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self.issued = 0
        self.requests: list[dict] = []
        self.reject = False
        self.rotate_refresh_token = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.requests.append(form)
        if self.reject:
            return httpx.Response(400, json={"error": "invalid_grant"})
        self.issued += 1
        body = {"access_token": f"{self.prefix}-access-{self.issued}", "expires_in": 3600}
        if form.get("grant_type") == "authorization_code" or self.rotate_refresh_token:
            body["refresh_token"] = f"{self.prefix}-refresh-{self.issued}"
        return httpx.Response(200, json=body)


class FakeSonos:
    """In-memory Sonos Control API for one household."""

    def __init__(self) -> None:
        self.households = [{"id": "HH1"}]
        self.groups = [
            {"id": "G1", "name": "Living Room", "playerIds": ["P1", "P2"]},
            {"id": "G2", "name": "Kitchen", "playerIds": ["P3"]},
        ]
        self.favorites = [
            {
                "id": "F7",
                "name": PARTY_PLAYLIST_NAME,
                "service": {"name": "Spotify"},
                "resource": {"type": "PLAYLIST", "id": {"objectId": "spotify:user:spotify:playlist:PL1"}},
            }
        ]
        self.playback_state = "PLAYBACK_STATE_PLAYING"
        self.volume = 30
        self.muted = False
        self.metadata: dict = {}
        self.expired_tokens: set[str] = set()
        self.fatal_fault = None
        self.calls: list[tuple[str, str, object]] = []

    def writes(self) -> list[tuple[str, str, object]]:
        return [call for call in self.calls if call[0] != "GET"]

    def calls_to(self, method: str, suffix: str) -> list[tuple[str, str, object]]:
        return [call for call in self.calls if call[0] == method and call[1].endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.split("/control/api/v1/", 1)[1]
        body = json.loads(request.content) if request.content else None
        token = request.headers.get("Authorization", "")[len("Bearer ") :]
        method = request.method
        self.calls.append((method, path, body))

        if token in self.expired_tokens:
            return httpx.Response(
                401, json=sonos_fault("keymanagement.service.access_token_expired", "Access token expired")
            )
        if self.fatal_fault:
            return httpx.Response(500, json=sonos_fault("groups.service.unavailable", self.fatal_fault))

        if path.endswith("/subscription"):
            return httpx.Response(200)
        if path == "households":
            return httpx.Response(200, json={"households": self.households})
        if path.endswith("/groups"):
            return httpx.Response(200, json={"groups": self.groups, "players": []})
        if path.endswith("/favorites") and method == "GET":
            return httpx.Response(200, json={"version": "1", "items": self.favorites})
        if path.endswith("/favorites") and method == "POST":
            return httpx.Response(200, json={})
        if path.endswith("/playback") and method == "GET":
            return httpx.Response(200, json={"playbackState": self.playback_state})
        if path.endswith("/playback/play"):
            self.playback_state = "PLAYBACK_STATE_PLAYING"
            return httpx.Response(200, json={})
        if path.endswith("/playback/pause"):
            self.playback_state = "PLAYBACK_STATE_PAUSED"
            return httpx.Response(200, json={})
        if path.endswith("/playback/skipToNextTrack"):
            return httpx.Response(200, json={})
        if path.endswith("/playbackMetadata"):
            return httpx.Response(200, json=self.metadata)
        if path.endswith("/groupVolume/mute"):
            self.muted = bool(body.get("muted"))
            return httpx.Response(200, json={})
        if path.endswith("/groupVolume") and method == "GET":
            return httpx.Response(200, json={"volume": self.volume, "muted": self.muted, "fixed": False})
        if path.endswith("/groupVolume") and method == "POST":
            self.volume = body["volume"]
            return httpx.Response(200, json={})
        return httpx.Response(404, json={"errorCode": "ERROR_RESOURCE_GONE"})


class FakeSpotify:
    """In-memory Spotify Web API with one account and its playlists."""

    def __init__(self) -> None:
        self.user_id = "host-spotify"
        self.tracks = {
            "A": make_track("A", "Alpha Song"),
            "B": make_track("B", "Bravo Song"),
            "C": make_track("C", "Charlie Song"),
        }
        self.playlists: dict[str, dict] = {"PL1": {"id": "PL1", "name": PARTY_PLAYLIST_NAME, "uris": []}}
        self.expired_tokens: set[str] = set()
        self.calls: list[tuple[str, str, object]] = []

    def calls_to(self, method: str, suffix: str) -> list[tuple[str, str, object]]:
        return [call for call in self.calls if call[0] == method and call[1].endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len("/v1") :]
        body = json.loads(request.content) if request.content else None
        token = request.headers.get("Authorization", "")[len("Bearer ") :]
        method = request.method
        self.calls.append((method, path, body))

        if token in self.expired_tokens:
            return httpx.Response(401, json={"error": {"status": 401, "message": "The access token expired"}})

        parts = path.strip("/").split("/")
        if path == "/me":
            return httpx.Response(200, json={"id": self.user_id, "display_name": "Host"})
        if parts[0] == "tracks":
            track = self.tracks.get(parts[1])
            if not track:
                return httpx.Response(400, json={"error": {"status": 400, "message": "invalid id"}})
            return httpx.Response(200, json=track)
        if path == "/search":
            query = request.url.params.get("q", "").lower()
            items = [track for track in self.tracks.values() if query in track["name"].lower()]
            return httpx.Response(200, json={"tracks": {"items": items}})
        if parts[0] == "users" and method == "POST":
            playlist_id = f"PL{len(self.playlists) + 1}"
            self.playlists[playlist_id] = {"id": playlist_id, "name": body["name"], "uris": []}
            return httpx.Response(201, json={"id": playlist_id, "name": body["name"]})
        if parts[0] == "playlists":
            playlist = self.playlists.get(parts[1])
            if not playlist:
                return httpx.Response(404, json={"error": {"status": 404, "message": "Not found"}})
            if len(parts) == 2:
                return httpx.Response(200, json={"id": playlist["id"], "name": playlist["name"]})
            if method == "GET":
                items = [{"track": {"uri": uri}} for uri in playlist["uris"]]
                return httpx.Response(200, json={"items": items})
            if method == "POST":
                playlist["uris"].extend(body["uris"])
                return httpx.Response(201, json={"snapshot_id": "snap"})
            if method == "DELETE":
                removed = {entry["uri"] for entry in body["tracks"]}
                playlist["uris"] = [uri for uri in playlist["uris"] if uri not in removed]
                return httpx.Response(200, json={"snapshot_id": "snap"})
        return httpx.Response(404, json={"error": {"status": 404, "message": "Not found"}})


# ============================================================================
# Wiring
# ============================================================================


@pytest.fixture
def store():
    """In-memory record store."""
    return SessionStore()


@pytest.fixture
def sonos_api():
    return FakeSonos()


@pytest.fixture
def spotify_api():
    return FakeSpotify()


@pytest.fixture
def sonos_token_endpoint():
    return FakeTokenEndpoint("sonos")


@pytest.fixture
def spotify_token_endpoint():
    return FakeTokenEndpoint("spotify")


@pytest.fixture
def sonos_tokens(store, sonos_token_endpoint):
    return TokenManager(
        provider="Sonos",
        token_url=SONOS_TOKEN_URL,
        client_id="sonos-client",
        client_secret="sonos-secret",
        redirect_uri="http://testserver/sonos/authorized",
        store=store,
        table=SONOS_SESSIONS,
        transport=httpx.MockTransport(sonos_token_endpoint.handler),
    )


@pytest.fixture
def spotify_tokens(store, spotify_token_endpoint):
    return TokenManager(
        provider="Spotify",
        token_url=SPOTIFY_TOKEN_URL,
        client_id="spotify-client",
        client_secret="spotify-secret",
        redirect_uri="http://testserver/auth/spotify/callback",
        store=store,
        table=SPOTIFY_SESSIONS,
        transport=httpx.MockTransport(spotify_token_endpoint.handler),
    )


@pytest.fixture
def build_sonos(store, sonos_tokens, sonos_api):
    def _build(user_id: int) -> SonosController:
        return SonosController(
            user_id=user_id,
            store=store,
            tokens=sonos_tokens,
            transport=httpx.MockTransport(sonos_api.handler),
        )

    return _build


@pytest.fixture
def build_spotify(store, spotify_tokens, spotify_api):
    def _build(user_id: int) -> SpotifyClient:
        return SpotifyClient(
            user_id=user_id,
            store=store,
            tokens=spotify_tokens,
            playlist_name=PARTY_PLAYLIST_NAME,
            welcome_track_id="A",
            transport=httpx.MockTransport(spotify_api.handler),
        )

    return _build


@pytest.fixture
def link_host(store):
    """Store a host with a Sonos session and, optionally, a Spotify session."""

    def _link(
        *,
        household: str = "HH1",
        group: str = "G1",
        party_active: bool = False,
        volume: int = 30,
        spotify: bool = True,
        playlist_id: str = "PL1",
    ) -> int:
        user_id = store.create_user()
        store.insert(
            SONOS_SESSIONS,
            user_id,
            {
                "access_token": f"sonos-token-{user_id}",
                "refresh_token": f"sonos-refresh-{user_id}",
                "household": household,
                "group": group,
                "party_active": party_active,
                "volume": volume,
            },
        )
        if spotify:
            store.insert(
                SPOTIFY_SESSIONS,
                user_id,
                {
                    "access_token": f"spotify-token-{user_id}",
                    "refresh_token": f"spotify-refresh-{user_id}",
                    "spotify_user_id": "host-spotify",
                    "playlist_id": playlist_id,
                },
            )
        return user_id

    return _link


@pytest_asyncio.fixture
async def registry(store, build_sonos, build_spotify):
    registry = SessionRegistry(store=store, build_sonos=build_sonos, build_spotify=build_spotify)
    yield registry
    await registry.close_all()


@pytest_asyncio.fixture
async def party(registry, link_host):
    """A fully linked host with the party switched on."""
    user_id = link_host(party_active=True)
    return await registry.get_or_load(user_id)
