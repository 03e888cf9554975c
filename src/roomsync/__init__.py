# src/roomsync/__init__.py
"""Timeline synchronization and end-to-end decryption pipeline for chat rooms."""

from roomsync.client import RoomSyncClient
from roomsync.models import (
    Decrypted,
    DecryptionOutcome,
    Event,
    SessionContext,
    Undecryptable,
    UndecryptableReason,
)

__all__ = [
    "Decrypted",
    "DecryptionOutcome",
    "Event",
    "RoomSyncClient",
    "SessionContext",
    "Undecryptable",
    "UndecryptableReason",
]
