import logging
from typing import Any, Optional

import httpx

from services.errors import AuthError, DeviceApiError
from services.session_store import SONOS_SESSIONS, SessionStore
from services.tokens import TokenManager, call_with_token_refresh


log = logging.getLogger("auxcord")

CONTROL_BASE_URL = "https://api.ws.sonos.com/control/api/v1"
PLAYING_STATES = {"PLAYBACK_STATE_PLAYING", "PLAYBACK_STATE_BUFFERING"}
TOKEN_FAULT_CODES = {
    "keymanagement.service.invalid_access_token",
    "keymanagement.service.access_token_expired",
}
SUBSCRIPTION_NAMESPACES = ("playback", "playbackMetadata")


def fault_error_code(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    fault = payload.get("fault")
    if not isinstance(fault, dict):
        return None
    detail = fault.get("detail")
    if not isinstance(detail, dict):
        return None
    code = detail.get("errorcode")
    return code if isinstance(code, str) else None


def track_object_id(item: Any) -> Optional[str]:
    """``objectId`` of a playbackMetadata item, e.g. ``spotify:track:3Kli...``."""
    if not isinstance(item, dict):
        return None
    track = item.get("track")
    if not isinstance(track, dict):
        return None
    track_id = track.get("id")
    if not isinstance(track_id, dict):
        return None
    object_id = track_id.get("objectId")
    return object_id if isinstance(object_id, str) else None


def normalize_volume(value: object, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(0, min(100, parsed))


class SonosController:
    """Single point of contact with the Sonos Control API for one host."""

    def __init__(
        self,
        *,
        user_id: int,
        store: SessionStore,
        tokens: TokenManager,
        timeout: float = 10,
        default_volume: int = 30,
        base_url: str = CONTROL_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.user_id = user_id
        self._store = store
        self._tokens = tokens
        self._timeout = float(timeout)
        self._default_volume = normalize_volume(default_volume, 30)
        self._base_url = base_url.rstrip("/")
        self._transport = transport

        self.target_volume = self._default_volume
        self.group_id: Optional[str] = None
        self.party_active = False
        # Set by push notifications; compared against previousItemId to detect finished tracks.
        self.current_item_id: Optional[str] = None
        self.groups_cached: Optional[list[dict]] = None
        self.favorites_cached: Optional[dict] = None
        self._playback_metadata: Optional[dict] = None
        self._household: Optional[str] = None

    def database_row(self) -> Optional[dict]:
        return self._store.get(SONOS_SESSIONS, self.user_id)

    async def load(self) -> None:
        row = self.database_row()
        if row is None:
            raise AuthError("Sonos is not linked")
        self.target_volume = normalize_volume(row.get("volume"), self._default_volume)
        self.group_id = row.get("group") or None
        self._household = row.get("household") or None
        self.party_active = bool(row.get("party_active", False))
        await self.resolve_group()
        await self.subscribe()

    # Transport

    async def _send(self, method: str, path: str, body: Optional[dict], token: str) -> tuple[int, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        kwargs: dict[str, Any] = {}
        if body is not None or method != "GET":
            kwargs["json"] = body or {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise DeviceApiError(f"Sonos request {method} {path} failed: {exc}") from exc
        if not resp.content:
            return resp.status_code, {}
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        return resp.status_code, payload

    async def request(self, path: str, method: str = "GET", body: Optional[dict] = None) -> dict:
        status, payload = await call_with_token_refresh(
            lambda token: self._send(method, path, body, token),
            token=lambda: self._tokens.access_token(self.user_id),
            refresh=lambda: self._tokens.refresh(self.user_id),
            is_token_fault=lambda result: fault_error_code(result[1]) in TOKEN_FAULT_CODES,
        )
        if isinstance(payload, dict) and payload.get("fault"):
            fault = payload["fault"]
            message = fault.get("faultstring") if isinstance(fault, dict) else None
            raise DeviceApiError(message or str(fault))
        if status >= 400:
            raise DeviceApiError(payload or f"Sonos request {method} {path} failed ({status})")
        return payload if isinstance(payload, dict) else {}

    # Topology

    async def households(self) -> list[dict]:
        return (await self.request("households")).get("households") or []

    async def primary_household(self) -> Optional[str]:
        if self._household:
            return self._household
        households = await self.households()
        if not households:
            return None
        self._household = households[0].get("id")
        return self._household

    async def _require_household(self) -> str:
        household = await self.primary_household()
        if not household:
            raise DeviceApiError("No Sonos household available")
        return household

    async def groups(self) -> list[dict]:
        household = await self._require_household()
        return (await self.request(f"households/{household}/groups")).get("groups") or []

    async def resolve_group(self) -> str:
        groups = await self.groups()
        self.groups_cached = groups
        if self.group_id and any(group.get("id") == self.group_id for group in groups):
            return self.group_id
        if not groups:
            raise DeviceApiError("No Sonos groups found for household")
        # max() keeps the first group on ties.
        fallback = max(groups, key=lambda group: len(group.get("playerIds") or []))
        log.info(
            "Sonos group %s no longer exists for user %s, falling back to %s",
            self.group_id,
            self.user_id,
            fallback.get("id"),
        )
        self.group_id = fallback.get("id")
        self._store.update(SONOS_SESSIONS, self.user_id, {"group": self.group_id})
        return self.group_id

    def _group(self) -> str:
        if not self.group_id:
            raise DeviceApiError("No Sonos group selected")
        return self.group_id

    async def subscribe(self) -> None:
        group = self._group()
        for namespace in SUBSCRIPTION_NAMESPACES:
            await self.request(f"groups/{group}/{namespace}/subscription", method="POST")

    async def unsubscribe(self) -> None:
        if not self.group_id:
            return
        for namespace in SUBSCRIPTION_NAMESPACES:
            try:
                await self.request(f"groups/{self.group_id}/{namespace}/subscription", method="DELETE")
            except (AuthError, DeviceApiError) as exc:
                log.warning("Failed to unsubscribe %s for user %s: %s", namespace, self.user_id, exc.detail)

    async def refresh_caches(self) -> None:
        previous = self.group_id
        await self.resolve_group()
        if self.group_id != previous:
            # The old group was dissolved in another Sonos app; its subscriptions went with it.
            self.current_item_id = None
            self._playback_metadata = None
            await self.subscribe()
        household = await self._require_household()
        self.favorites_cached = await self.request(f"households/{household}/favorites")

    # Playback

    async def playback_status(self) -> Optional[str]:
        status = await self.request(f"groups/{self._group()}/playback")
        return status.get("playbackState")

    async def is_playing(self) -> bool:
        return await self.playback_status() in PLAYING_STATES

    async def play(self) -> None:
        log.info("Resuming playback for user %s", self.user_id)
        await self.request(f"groups/{self._group()}/playback/play", method="POST")

    async def ensure_music_playing(self) -> None:
        if await self.is_playing():
            return
        await self.play()

    async def pause_playback(self) -> None:
        if not await self.is_playing():
            return
        log.info("Pausing playback for user %s", self.user_id)
        await self.request(f"groups/{self._group()}/playback/pause", method="POST")

    async def skip_song(self) -> None:
        log.info("Skipping song for user %s", self.user_id)
        await self.request(f"groups/{self._group()}/playback/skipToNextTrack", method="POST")

    def did_receive_playback_metadata(self, metadata: dict) -> None:
        self._playback_metadata = metadata

    async def playback_metadata(self) -> dict:
        cached = self._playback_metadata
        if isinstance(cached, dict) and ((cached.get("currentItem") or {}).get("track") or {}).get("id"):
            return cached
        return await self.request(f"groups/{self._group()}/playbackMetadata")

    # Volume

    async def get_volume(self) -> dict:
        return await self.request(f"groups/{self._group()}/groupVolume")

    async def unmute(self) -> None:
        # There is no reliable read for "any speaker in the group muted", so this is sent on a cadence.
        await self.request(f"groups/{self._group()}/groupVolume/mute", method="POST", body={"muted": False})

    async def ensure_volume(self, target: int, check_first: bool = True) -> bool:
        if check_first:
            current = await self.get_volume()
            if current.get("volume") == target and current.get("muted") is False:
                return False
        await self.request(f"groups/{self._group()}/groupVolume", method="POST", body={"volume": target})
        await self.unmute()
        return True

    # Favorites

    async def ensure_playlist_in_favorites(self, playlist_id: str, force_refresh: bool = True) -> Optional[dict]:
        favorites = None if force_refresh else self.favorites_cached
        if favorites is None:
            household = await self._require_household()
            favorites = await self.request(f"households/{household}/favorites")
            self.favorites_cached = favorites
        for favorite in favorites.get("items") or []:
            if not isinstance(favorite, dict):
                continue
            service = favorite.get("service") or {}
            resource = favorite.get("resource") or {}
            object_id = (resource.get("id") or {}).get("objectId") or ""
            if service.get("name") == "Spotify" and resource.get("type") == "PLAYLIST" and playlist_id in object_id:
                return favorite
        return None

    async def queue_favorite_next(self, favorite_id: str) -> None:
        await self.request(
            f"groups/{self._group()}/favorites",
            method="POST",
            body={"favoriteId": favorite_id, "action": "INSERT_NEXT"},
        )

    # Host intent

    def set_party_active(self, value: bool) -> None:
        self.party_active = bool(value)
        self._store.update(SONOS_SESSIONS, self.user_id, {"party_active": self.party_active})

    def set_target_volume(self, value: int) -> int:
        self.target_volume = normalize_volume(value, self.target_volume)
        self._store.update(SONOS_SESSIONS, self.user_id, {"volume": self.target_volume})
        return self.target_volume

    async def select_group(self, group_id: str) -> None:
        groups = await self.groups()
        self.groups_cached = groups
        if not any(group.get("id") == group_id for group in groups):
            raise DeviceApiError(f"Unknown Sonos group {group_id}")
        if group_id == self.group_id:
            return
        await self.pause_playback()
        await self.unsubscribe()
        self.group_id = group_id
        self._store.update(SONOS_SESSIONS, self.user_id, {"group": group_id})
        self.current_item_id = None
        self._playback_metadata = None
        await self.subscribe()
        if self.party_active:
            await self.ensure_music_playing()

    async def ensure_current_settings(self) -> None:
        if not self.party_active:
            return
        await self.ensure_volume(self.target_volume)
        await self.ensure_music_playing()
        await self.unmute()
