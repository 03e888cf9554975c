"""Suppression of redundant room-key requests."""

from __future__ import annotations

import time
from collections.abc import Callable
from threading import Lock

from roomsync.core.settings import Settings, settings
from roomsync.models.key_request import KeyRequestKey, KeyRequestRecord


class KeyRequestThrottle:
    """Remembers when a key was last requested per ``(room_id, sender, event_id)``.

    A second request for the same key is refused while it is younger than
    ``window_seconds``. Records older than ``retention_seconds`` are purged
    before every check.
    """

    def __init__(
        self,
        window_seconds: float | None = None,
        retention_seconds: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        config: Settings | None = None,
    ) -> None:
        config = config or settings
        self.window_seconds = (
            window_seconds if window_seconds is not None else config.key_request_window_seconds
        )
        self.retention_seconds = (
            retention_seconds
            if retention_seconds is not None
            else config.key_request_retention_seconds
        )
        self._clock = clock
        self._records: dict[KeyRequestKey, KeyRequestRecord] = {}
        self._lock = Lock()

    def _purge(self, now: float) -> None:
        stale = [
            key
            for key, record in self._records.items()
            if record.age(now) > self.retention_seconds
        ]
        for key in stale:
            del self._records[key]

    def should_request(self, room_id: str, sender: str, event_id: str) -> bool:
        key = KeyRequestKey(room_id, sender, event_id)
        now = self._clock()
        with self._lock:
            self._purge(now)
            record = self._records.get(key)
            return record is None or record.age(now) >= self.window_seconds

    def record_request(self, room_id: str, sender: str, event_id: str) -> None:
        key = KeyRequestKey(room_id, sender, event_id)
        with self._lock:
            self._records[key] = KeyRequestRecord(key=key, last_requested_at=self._clock())

    def last_requested(self, room_id: str, sender: str, event_id: str) -> float | None:
        record = self._records.get(KeyRequestKey(room_id, sender, event_id))
        return record.last_requested_at if record is not None else None

    def __len__(self) -> int:
        return len(self._records)
