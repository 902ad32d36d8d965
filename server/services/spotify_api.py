from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from services.errors import AuthError, StreamingApiError
from services.session_store import SPOTIFY_SESSIONS, SessionStore
from services.tokens import TokenManager, call_with_token_refresh


log = logging.getLogger("auxcord")

WEB_API_BASE_URL = "https://api.spotify.com/v1"
TRACK_URI_PREFIX = "spotify:track:"
PERMISSION_SCOPE = " ".join(
    [
        "playlist-read-private",
        "user-read-private",
        "user-read-email",
        "playlist-modify-public",
        "user-library-read",
        "user-library-modify",
    ]
)


def parse_spotify_error(detail: Any) -> dict:
    payload: Any = detail
    if isinstance(detail, str):
        try:
            payload = json.loads(detail)
        except ValueError:
            payload = {"error": {"message": detail}}
    if not isinstance(payload, dict):
        return {"message": str(detail)}
    error = payload.get("error")
    if isinstance(error, dict):
        return {
            "status": error.get("status"),
            "message": error.get("message"),
            "reason": error.get("reason"),
        }
    return {"message": payload.get("message") or str(detail)}


def track_id_from_uri(value: Optional[str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    if value.startswith(TRACK_URI_PREFIX):
        return value[len(TRACK_URI_PREFIX) :] or None
    return None


@dataclass(frozen=True)
class GuestTrack:
    id: str
    name: str
    artists: tuple[str, ...]
    album_cover: Optional[str]
    thumbnail: Optional[str]
    duration_ms: int
    uri: str

    @classmethod
    def from_spotify(cls, payload: dict) -> "GuestTrack":
        images = (payload.get("album") or {}).get("images") or []
        urls = [image.get("url") for image in images if isinstance(image, dict) and image.get("url")]
        track_id = str(payload.get("id") or "")
        return cls(
            id=track_id,
            name=payload.get("name") or "",
            artists=tuple(artist.get("name") or "" for artist in payload.get("artists") or []),
            # Spotify orders images largest first.
            album_cover=urls[-1] if urls else None,
            thumbnail=urls[1] if len(urls) > 1 else (urls[0] if urls else None),
            duration_ms=int(payload.get("duration_ms") or 0),
            uri=payload.get("uri") or f"{TRACK_URI_PREFIX}{track_id}",
        )

    def to_public(self) -> dict:
        return {
            "album_cover": self.album_cover,
            "name": self.name,
            "artists": ", ".join(self.artists),
            "id": self.id,
            "duration": self.duration_ms // 1000,
            "uri": self.uri,
        }


class SpotifyClient:
    def __init__(
        self,
        *,
        user_id: int,
        store: SessionStore,
        tokens: TokenManager,
        playlist_name: str,
        welcome_track_id: Optional[str] = None,
        timeout: float = 10,
        base_url: str = WEB_API_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.user_id = user_id
        self._store = store
        self._tokens = tokens
        self._playlist_name = playlist_name
        self._welcome_track_id = welcome_track_id
        self._timeout = float(timeout)
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._tracks: dict[str, GuestTrack] = {}
        self._playlist: Optional[dict] = None

    def database_row(self) -> Optional[dict]:
        return self._store.get(SPOTIFY_SESSIONS, self.user_id)

    async def _send(self, method: str, path: str, token: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                return await client.request(method, f"{self._base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise StreamingApiError(f"Spotify request {method} {path} failed: {exc}") from exc

    async def request(self, method: str, path: str, **kwargs: Any) -> dict:
        resp = await call_with_token_refresh(
            lambda token: self._send(method, path, token, **kwargs),
            token=lambda: self._tokens.access_token(self.user_id),
            refresh=lambda: self._tokens.refresh(self.user_id),
            is_token_fault=lambda response: response.status_code == 401,
        )
        if resp.status_code >= 400:
            parsed = parse_spotify_error(resp.text)
            raise StreamingApiError(parsed.get("message") or f"Spotify request failed ({resp.status_code})")
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def me(self) -> dict:
        return await self.request("GET", "/me")

    async def find_track(self, track_id: str) -> GuestTrack:
        cached = self._tracks.get(track_id)
        if cached:
            return cached
        track = GuestTrack.from_spotify(await self.request("GET", f"/tracks/{track_id}"))
        self._tracks[track_id] = track
        return track

    async def search(self, query: str, limit: int = 20) -> list[GuestTrack]:
        query = (query or "").strip()
        if not query:
            return []
        data = await self.request("GET", "/search", params={"q": query, "type": "track", "limit": limit})
        tracks = []
        for item in (data.get("tracks") or {}).get("items") or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            track = GuestTrack.from_spotify(item)
            self._tracks.setdefault(track.id, track)
            tracks.append(track)
        return tracks

    # Handoff playlist

    async def party_playlist_id(self) -> str:
        row = self.database_row()
        if row is None:
            raise AuthError("Spotify is not linked")
        playlist_id = row.get("playlist_id")
        if playlist_id:
            return playlist_id
        owner = row.get("spotify_user_id") or (await self.me()).get("id")
        created = await self.request(
            "POST",
            f"/users/{owner}/playlists",
            json={"name": self._playlist_name, "public": True},
        )
        playlist_id = created.get("id")
        if not playlist_id:
            raise StreamingApiError("Spotify did not return a playlist id")
        self._store.update(SPOTIFY_SESSIONS, self.user_id, {"playlist_id": playlist_id})
        self._playlist = created
        log.info("Created party playlist %s for user %s", playlist_id, self.user_id)
        return playlist_id

    async def party_playlist(self) -> dict:
        playlist_id = await self.party_playlist_id()
        if not self._playlist or self._playlist.get("id") != playlist_id:
            self._playlist = await self.request("GET", f"/playlists/{playlist_id}", params={"fields": "id,name"})
        return self._playlist

    async def playlist_track_uris(self) -> list[str]:
        playlist_id = await self.party_playlist_id()
        data = await self.request(
            "GET",
            f"/playlists/{playlist_id}/tracks",
            params={"fields": "items(track(uri))", "limit": 100},
        )
        uris = []
        for item in data.get("items") or []:
            uri = ((item or {}).get("track") or {}).get("uri")
            if uri:
                uris.append(uri)
        return uris

    async def add_tracks(self, uris: list[str]) -> None:
        playlist_id = await self.party_playlist_id()
        await self.request("POST", f"/playlists/{playlist_id}/tracks", json={"uris": uris})

    async def remove_tracks(self, uris: list[str]) -> None:
        if not uris:
            return
        playlist_id = await self.party_playlist_id()
        await self.request(
            "DELETE",
            f"/playlists/{playlist_id}/tracks",
            json={"tracks": [{"uri": uri} for uri in uris]},
        )

    async def clear_playlist(self) -> int:
        uris = await self.playlist_track_uris()
        if uris:
            log.info("Removing %d leftover track(s) from party playlist of user %s", len(uris), self.user_id)
            await self.remove_tracks(sorted(set(uris)))
        return len(uris)

    async def prepare_welcome_song(self) -> None:
        # Sonos cannot favorite an empty playlist, so seed it while the host adds it.
        if not self._welcome_track_id:
            return
        if await self.playlist_track_uris():
            return
        await self.add_tracks([f"{TRACK_URI_PREFIX}{self._welcome_track_id}"])
