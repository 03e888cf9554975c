"""Bounded, deduplicated per-room timeline cache."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping

from roomsync.core.settings import Settings, settings
from roomsync.models.event import Event

logger = logging.getLogger(__name__)


class TimelineCache:
    """In-memory room_id -> chronologically ordered events.

    Events are unique by ``event_id``. On merge the first occurrence wins, so
    a cached display copy (possibly already decrypted) is never replaced by
    re-fetched ciphertext. Once a room exceeds ``max_events`` the oldest
    events are evicted.

    ``get``/``merge`` do not await and are therefore atomic on the event loop.
    Callers doing read-fetch-merge across awaits hold :meth:`room_lock`.
    """

    def __init__(self, max_events: int | None = None, config: Settings | None = None) -> None:
        config = config or settings
        self.max_events = max_events if max_events is not None else config.cache_max_events
        if self.max_events < 1:
            raise ValueError("max_events must be positive")
        self._rooms: dict[str, list[Event]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def room_lock(self, room_id: str) -> asyncio.Lock:
        """Return the lock serialising updates for ``room_id``."""
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    def get(self, room_id: str) -> list[Event]:
        return list(self._rooms.get(room_id, ()))

    def merge(self, room_id: str, fetched: Iterable[Event]) -> list[Event]:
        """Merge ``fetched`` into the cached events and store the result.

        Duplicates keep the cached copy. The result is ordered by
        ``origin_server_ts`` (stable, so equal timestamps keep arrival order)
        before the oldest events beyond ``max_events`` are dropped.
        """
        seen: set[str] = set()
        merged: list[Event] = []
        for event in (*self._rooms.get(room_id, ()), *fetched):
            if event.event_id in seen:
                continue
            seen.add(event.event_id)
            merged.append(event)
        merged.sort(key=lambda event: event.origin_server_ts)

        if len(merged) > self.max_events:
            logger.debug(
                "Evicting %d events from room %s", len(merged) - self.max_events, room_id
            )
            merged = merged[-self.max_events:]

        self._rooms[room_id] = merged
        return list(merged)

    def replace_events(self, room_id: str, replacements: Mapping[str, Event]) -> int:
        """Swap cached events for display copies with the same ``event_id``.

        Events no longer cached are ignored. Returns the number replaced.
        """
        events = self._rooms.get(room_id)
        if not events or not replacements:
            return 0
        replaced = 0
        for index, event in enumerate(events):
            replacement = replacements.get(event.event_id)
            if replacement is not None and replacement is not event:
                events[index] = replacement
                replaced += 1
        return replaced

    def clear(self, room_id: str) -> None:
        self._rooms.pop(room_id, None)

    def clear_all(self) -> None:
        self._rooms.clear()

    def count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, ()))

    def has_events(self, room_id: str) -> bool:
        return bool(self._rooms.get(room_id))
