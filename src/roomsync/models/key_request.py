"""Key request bookkeeping records."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class KeyRequestKey:
    """Composite identity of a room-key request."""

    room_id: str
    sender: str
    event_id: str


@dataclass(frozen=True)
class KeyRequestRecord:
    key: KeyRequestKey
    last_requested_at: float

    def age(self, now: float) -> float:
        return now - self.last_requested_at
