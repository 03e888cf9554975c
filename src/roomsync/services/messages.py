"""Fetch, merge and decrypt room timelines."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from roomsync.core.settings import Settings, settings
from roomsync.models.event import Event
from roomsync.models.outcome import Decrypted
from roomsync.models.session import SessionContext
from roomsync.schemas import RoomMessagesResponse
from roomsync.services.decryption import DecryptionOrchestrator
from roomsync.services.sync import SyncCoordinator
from roomsync.services.timeline_cache import TimelineCache
from roomsync.services.transport import HomeserverClient, TransportError, room_path

# Configure logger for this module
logger = logging.getLogger(__name__)


class FetchFailedError(TransportError):
    """The messages endpoint answered, but not with a usable page."""


class MessagePipeline:
    """Serves a room's timeline from cache plus the latest server page.

    Network problems never destroy local state: if the fetch fails the
    previously cached events are returned unchanged.
    """

    def __init__(
        self,
        transport: HomeserverClient,
        context: SessionContext,
        cache: TimelineCache,
        orchestrator: DecryptionOrchestrator,
        sync: SyncCoordinator,
        config: Settings | None = None,
    ) -> None:
        self.transport = transport
        self.context = context
        self.cache = cache
        self.orchestrator = orchestrator
        self.sync = sync
        self.config = config or settings

    async def fetch_page(self, room_id: str) -> list[Event]:
        """Fetch the newest page of events in chronological order.

        Raises:
            TransportError: On network failure, non-2xx status or a malformed body.
        """
        response = await self.transport.get(
            room_path(self.config, room_id, "messages"),
            {"limit": str(self.config.fetch_page_size), "dir": "b"},
            timeout=self.config.fetch_timeout_seconds,
        )
        if not response.ok:
            raise FetchFailedError(f"Bad response status {response.status}")
        try:
            page = RoomMessagesResponse.model_validate(response.body)
        except ValidationError as e:
            raise FetchFailedError(f"Malformed messages response: {e}") from e

        # The server returns newest first for dir=b.
        return [schema.to_event() for schema in reversed(page.chunk)]

    async def get_room_messages(self, room_id: str, skip_decryption: bool = False) -> list[Event]:
        """Return the room timeline, decrypted where possible.

        Args:
            room_id: Room to read.
            skip_decryption: Return merged events verbatim.

        Returns:
            Chronologically ordered events. Never raises.
        """
        async with self.cache.room_lock(room_id):
            cached = self.cache.get(room_id)
            logger.debug("Room %s: %d cached events", room_id, len(cached))
            try:
                fetched = await self.fetch_page(room_id)
            except TransportError as e:
                logger.warning("Fetching messages for %s failed, serving cache: %s", room_id, e)
                return cached
            merged = self.cache.merge(room_id, fetched)
            logger.debug("Room %s: fetched %d, merged to %d", room_id, len(fetched), len(merged))

        if skip_decryption:
            return merged

        engine = self.context.engine
        if engine is None:
            logger.debug("No crypto engine, returning raw events for %s", room_id)
            return merged

        if self.config.pre_decrypt_sync_enabled and any(e.is_encrypted for e in merged):
            if not await self.sync.sync_once(self.config.pre_decrypt_sync_timeout_seconds):
                logger.warning("Pre-decryption sync failed; recent messages may stay encrypted")

        resolved = await self.orchestrator.process(room_id, merged, engine)

        decrypted = {
            item.event.event_id: item.event
            for item in resolved
            if isinstance(item.outcome, Decrypted)
        }
        if decrypted:
            async with self.cache.room_lock(room_id):
                self.cache.replace_events(room_id, decrypted)

        return [item.event for item in resolved]
