from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException

from services.party_queue import QueueCoordinator
from services.sonos import PLAYING_STATES, SonosController, track_object_id
from services.spotify_api import SpotifyClient, track_id_from_uri


log = logging.getLogger("auxcord")


class EventProcessor:
    """Turns Sonos playback notifications into queue advances and self-healing actions.

    Sonos redelivers a notification up to three times when it does not get a
    fast 200, so the same payload can arrive more than once and out of order.
    The stored ``current_item_id`` is updated before anything is awaited,
    which makes every redelivery after the first a no-op for the queue.
    """

    def __init__(self, *, sonos: SonosController, spotify: SpotifyClient, queue: QueueCoordinator) -> None:
        self._sonos = sonos
        self._spotify = spotify
        self._queue = queue

    def _take_transition(self, event: dict) -> bool:
        item_id = event.get("itemId")
        if not item_id or not isinstance(item_id, str):
            return False
        previous = self._sonos.current_item_id
        self._sonos.current_item_id = item_id
        return previous != item_id and previous == event.get("previousItemId")

    async def process(self, event: Any) -> None:
        if not isinstance(event, dict):
            return
        finished = self._take_transition(event)

        if finished:
            # Redeliveries are no-ops from here on, so the advance runs before anything else can fail.
            log.info("Track finished for user %s, queueing the next guest song", self._sonos.user_id)
            advanced = await self._queue.on_track_finished(self._sonos)
            log.debug("Queue advance for user %s returned %s", self._sonos.user_id, advanced)

        state = event.get("playbackState")
        if isinstance(state, str) and state not in PLAYING_STATES and self._sonos.party_active:
            log.info("Group of user %s was paused externally, resuming party", self._sonos.user_id)
            try:
                await self._sonos.play()
            except HTTPException as exc:
                log.warning("Resuming playback for user %s failed: %s", self._sonos.user_id, exc.detail)

        if event.get("container"):
            self._sonos.did_receive_playback_metadata(event)
            await self._warm_track_cache(event)

    async def _warm_track_cache(self, event: dict) -> None:
        for key in ("currentItem", "nextItem"):
            track_id = track_id_from_uri(track_object_id(event.get(key)))
            if track_id:
                await self._spotify.find_track(track_id)

    async def poll(self) -> None:
        if not self._sonos.group_id:
            return
        status = await self._sonos.request(f"groups/{self._sonos.group_id}/playback")
        await self.process(status)
