from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException

from services.errors import AuthError, DeviceApiError
from services.events import EventProcessor
from services.party_queue import QueueCoordinator
from services.sonos import SonosController, normalize_volume, track_object_id
from services.spotify_api import GuestTrack, SpotifyClient, track_id_from_uri


log = logging.getLogger("auxcord")


@dataclass
class PartySession:
    """Everything the server holds for one host: Sonos, and once linked, Spotify and the guest queue."""

    user_id: int
    sonos: SonosController
    spotify: Optional[SpotifyClient] = None
    queue: Optional[QueueCoordinator] = None
    events: Optional[EventProcessor] = None

    @property
    def fully_linked(self) -> bool:
        return self.spotify is not None

    def attach_spotify(self, spotify: SpotifyClient) -> None:
        if self.queue:
            self.queue.cancel()
        self.spotify = spotify
        self.queue = QueueCoordinator(spotify=spotify)
        self.events = EventProcessor(sonos=self.sonos, spotify=spotify, queue=self.queue)

    def _linked(self) -> tuple[SpotifyClient, QueueCoordinator]:
        if not self.spotify or not self.queue:
            raise AuthError("Spotify is not linked")
        return self.spotify, self.queue

    async def teardown(self) -> None:
        if self.queue:
            self.queue.cancel()
        await self.sonos.unsubscribe()

    # Host

    async def host_update(
        self,
        *,
        volume: Optional[int] = None,
        party_on: Optional[bool] = None,
        group_id: Optional[str] = None,
        skip: bool = False,
    ) -> None:
        sonos = self.sonos
        if volume is not None:
            target = normalize_volume(volume, sonos.target_volume)
            if sonos.party_active:
                # A manual change always writes, even if the speakers already report this level.
                await sonos.ensure_volume(target, check_first=False)
            sonos.set_target_volume(target)

        if party_on is not None:
            sonos.set_party_active(party_on)
            if party_on:
                await sonos.ensure_music_playing()
            else:
                await sonos.pause_playback()

        if group_id:
            await sonos.select_group(group_id)

        if skip:
            await sonos.skip_song()

    def groups_summary(self) -> list[dict]:
        groups = [
            {
                "name": group.get("name"),
                "id": group.get("id"),
                "number_of_speakers": len(group.get("playerIds") or []),
            }
            for group in self.sonos.groups_cached or []
        ]
        return sorted(groups, key=lambda group: group["number_of_speakers"], reverse=True)

    async def _track_details(self, item: object) -> Optional[dict]:
        if not isinstance(item, dict) or not isinstance(item.get("track"), dict):
            return None
        track = item["track"]
        details = {
            "name": track.get("name"),
            "artist": (track.get("artist") or {}).get("name"),
            "album": (track.get("album") or {}).get("name"),
            "image_url": track.get("imageUrl"),
            "duration": int(track.get("durationMillis") or 0) // 1000,
        }
        spotify_id = track_id_from_uri(track_object_id(item))
        if spotify_id and self.spotify:
            try:
                guest_track = await self.spotify.find_track(spotify_id)
            except HTTPException as exc:
                log.debug("Track lookup for %s failed: %s", spotify_id, exc.detail)
            else:
                details["image_url"] = guest_track.thumbnail or details["image_url"]
        return details

    async def party_data(self, force_refresh: bool = False) -> dict:
        spotify, queue = self._linked()
        playlist = await spotify.party_playlist()
        playlist_id = playlist.get("id") or await spotify.party_playlist_id()

        metadata = await self.sonos.playback_metadata()
        if not track_object_id(metadata.get("currentItem")):
            if self.sonos.groups_cached is None:
                self.sonos.groups_cached = await self.sonos.groups()
            group_name = next(
                (group.get("name") for group in self.sonos.groups_cached if group.get("id") == self.sonos.group_id),
                None,
            )
            return {"nothing_playing": True, "group_name": group_name}

        favorite = await self.sonos.ensure_playlist_in_favorites(playlist_id, force_refresh=force_refresh)
        if favorite is None:
            await spotify.prepare_welcome_song()
            return {"needs_favorite": True, "playlist_name": playlist.get("name")}

        if self.sonos.groups_cached is None:
            self.sonos.groups_cached = await self.sonos.groups()
        return {
            "selected_group": self.sonos.group_id,
            "groups": self.groups_summary(),
            "party_on": self.sonos.party_active,
            "queued_songs": queue.queued_songs(),
            "current_song": await self._track_details(metadata.get("currentItem")),
            "next_song": await self._track_details(metadata.get("nextItem")),
            "volume": self.sonos.target_volume,
            "invite_path": f"/api/p/{self.user_id}/{playlist_id}",
        }

    # Guests

    def verify_guest_access(self, playlist_id: str) -> None:
        row = self.spotify.database_row() if self.spotify else None
        if not row or not row.get("playlist_id") or row.get("playlist_id") != playlist_id:
            raise HTTPException(status_code=404, detail="Unknown party")

    def queued_songs(self) -> list[dict]:
        _, queue = self._linked()
        return queue.queued_songs()

    async def search(self, query: str) -> list[dict]:
        spotify, _ = self._linked()
        tracks = await spotify.search(query)
        return [{**track.to_public(), "thumbnail": track.thumbnail} for track in tracks]

    async def submit_song(self, song_id: str) -> dict:
        spotify, queue = self._linked()
        track: GuestTrack = await spotify.find_track(song_id)
        if not self.sonos.group_id:
            raise DeviceApiError("No Sonos group selected")
        position = queue.submit(track, self.sonos)
        log.info("Guest queued %s for user %s at position %d", track.id, self.user_id, position)
        return {"success": True, "position": position}
