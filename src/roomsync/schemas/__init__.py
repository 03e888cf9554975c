# src/roomsync/schemas/__init__.py
"""Pydantic schemas for homeserver responses."""

from .events import EncryptedContentSchema, MessageContentSchema, RoomEventSchema
from .responses import (
    JoinedMembersResponse,
    RoomMessagesResponse,
    SyncResponse,
)

__all__ = [
    "EncryptedContentSchema",
    "JoinedMembersResponse",
    "MessageContentSchema",
    "RoomEventSchema",
    "RoomMessagesResponse",
    "SyncResponse",
]
