# src/roomsync/models/__init__.py
"""Data model for the roomsync pipeline."""

from .event import (
    EVENT_TYPE_ENCRYPTED,
    EVENT_TYPE_MESSAGE,
    MSGTYPE_BAD_ENCRYPTED,
    MSGTYPE_TEXT,
    Event,
)
from .key_request import KeyRequestKey, KeyRequestRecord
from .outcome import (
    Decrypted,
    DecryptionOutcome,
    ResolvedEvent,
    Undecryptable,
    UndecryptableReason,
)
from .send_content import EncryptedContent, PlainContent, SendContent
from .session import SessionContext, SessionData, SessionStore

__all__ = [
    "EVENT_TYPE_ENCRYPTED",
    "EVENT_TYPE_MESSAGE",
    "MSGTYPE_BAD_ENCRYPTED",
    "MSGTYPE_TEXT",
    "Decrypted",
    "DecryptionOutcome",
    "EncryptedContent",
    "Event",
    "KeyRequestKey",
    "KeyRequestRecord",
    "PlainContent",
    "ResolvedEvent",
    "SendContent",
    "SessionContext",
    "SessionData",
    "SessionStore",
    "Undecryptable",
    "UndecryptableReason",
]
