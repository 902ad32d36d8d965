from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Optional

from fastapi import HTTPException

from services.errors import DeviceApiError, DuplicateSubmissionError
from services.sonos import SonosController
from services.spotify_api import GuestTrack, SpotifyClient


log = logging.getLogger("auxcord")


class QueueCoordinator:
    """Guest song queue for one host, handed to Sonos one track at a time.

    Guest tracks cannot be queued on Sonos directly. Each one is placed alone
    in the host's Spotify party playlist, which Sonos knows as a favorite,
    and that favorite is inserted after the current item. ``advance`` is
    serialized by a per-host lock, and ``advance_in_flight`` records whether
    a guest track currently owns the "next up" slot on the speakers.
    """

    def __init__(self, *, spotify: SpotifyClient) -> None:
        self._spotify = spotify
        self.pending: deque[GuestTrack] = deque()
        self.past: list[GuestTrack] = []
        self.advance_in_flight = False
        self._lock = asyncio.Lock()
        self._advance_task: Optional[asyncio.Task] = None

    def active_tracks(self) -> list[GuestTrack]:
        tracks = list(self.pending)
        if self.advance_in_flight and self.past:
            tracks.insert(0, self.past[-1])
        return tracks

    def queued_songs(self) -> list[dict]:
        return [track.to_public() for track in self.active_tracks()]

    def enqueue(self, track: GuestTrack) -> None:
        if any(active.id == track.id for active in self.active_tracks()):
            raise DuplicateSubmissionError()
        self.pending.append(track)

    def submit(self, track: GuestTrack, sonos: SonosController) -> int:
        """Queue a guest track; returns its position (0 means it goes to the speakers now)."""
        self.enqueue(track)
        if self.advance_in_flight:
            return len(self.pending)
        self.advance_in_flight = True
        # Counted now: a track-finished advance already waiting on the lock may serve this track first.
        self._advance_task = asyncio.create_task(self._scheduled_advance(sonos, served_before=len(self.past)))
        return 0

    async def _scheduled_advance(self, sonos: SonosController, *, served_before: int) -> None:
        try:
            advanced = await self.advance(sonos)
        except asyncio.CancelledError:
            raise
        except HTTPException as exc:
            log.warning("Guest song handoff failed for user %s: %s", sonos.user_id, exc.detail)
            self.advance_in_flight = False
            return
        except Exception:
            log.exception("Guest song handoff crashed for user %s", sonos.user_id)
            self.advance_in_flight = False
            return
        # A track-finished advance may have taken the song first; then the flag is already correct.
        if not advanced and len(self.past) == served_before:
            self.advance_in_flight = False

    async def advance(self, sonos: SonosController) -> bool:
        async with self._lock:
            # Leftovers from an earlier partial handoff.
            await self._spotify.clear_playlist()
            if not self.pending:
                return False
            track = self.pending.popleft()
            self.past.append(track)
            log.info("Handing %s (%s) to Sonos for user %s", track.name, track.id, sonos.user_id)

            playlist_id = await self._spotify.party_playlist_id()
            await self._spotify.add_tracks([track.uri])
            favorite = await sonos.ensure_playlist_in_favorites(playlist_id)
            if favorite is None:
                raise DeviceApiError("Party playlist is not in the Sonos favorites")
            await sonos.queue_favorite_next(favorite["id"])
            await self._spotify.remove_tracks([track.uri])
            return True

    async def on_track_finished(self, sonos: SonosController) -> bool:
        try:
            self.advance_in_flight = await self.advance(sonos)
        except Exception:
            self.advance_in_flight = False
            raise
        return self.advance_in_flight

    def cancel(self) -> None:
        if self._advance_task and not self._advance_task.done():
            self._advance_task.cancel()
        self._advance_task = None
