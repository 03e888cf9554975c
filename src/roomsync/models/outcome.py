"""Decryption outcomes.

Every encrypted event handed to the decryption orchestrator resolves to
exactly one of :class:`Decrypted` or :class:`Undecryptable`. Both know how
to render themselves onto the original event as a display copy.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from roomsync.models.event import EVENT_TYPE_MESSAGE, MSGTYPE_BAD_ENCRYPTED, Event


class UndecryptableReason(Enum):
    """Closed taxonomy of reasons an event could not be decrypted."""

    MISSING_KEY = "missing_key"
    SESSION_EXPIRED = "session_expired"
    MALFORMED_EVENT = "malformed_event"
    ENGINE_UNAVAILABLE = "engine_unavailable"
    OTHER = "other"


_REASON_TEXT: dict[UndecryptableReason, str] = {
    UndecryptableReason.MISSING_KEY: (
        "Room key not available. This message was sent before you joined "
        "or from another device."
    ),
    UndecryptableReason.SESSION_EXPIRED: (
        "Session expired - this message was encrypted with an old session "
        "that is no longer available"
    ),
    UndecryptableReason.MALFORMED_EVENT: "Missing required encryption fields",
    UndecryptableReason.ENGINE_UNAVAILABLE: "Crypto engine not available",
    UndecryptableReason.OTHER: "Unknown decryption error",
}


@dataclass(frozen=True)
class Decrypted:
    """Successful decryption carrying the recovered event type and content."""

    content: Mapping[str, Any]
    event_type: str = EVENT_TYPE_MESSAGE

    def apply(self, event: Event) -> Event:
        return event.with_content(self.event_type, self.content)


@dataclass(frozen=True)
class Undecryptable:
    """Terminal failure; rendered as a tagged placeholder message."""

    reason: UndecryptableReason
    detail: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if self.reason is UndecryptableReason.OTHER and self.detail:
            return self.detail
        return _REASON_TEXT[self.reason]

    @property
    def body(self) -> str:
        return f"** Unable to decrypt: {self.message} **"

    def placeholder_content(self) -> dict[str, Any]:
        content: dict[str, Any] = {
            "msgtype": MSGTYPE_BAD_ENCRYPTED,
            "body": self.body,
            "reason": self.reason.value,
        }
        if self.detail:
            content["detail"] = self.detail
        content.update(self.extra)
        return content

    def apply(self, event: Event) -> Event:
        return event.with_content(EVENT_TYPE_MESSAGE, self.placeholder_content())


DecryptionOutcome = Decrypted | Undecryptable


@dataclass(frozen=True)
class ResolvedEvent:
    """Display event paired with the outcome that produced it.

    ``outcome`` is ``None`` for events that were not encrypted.
    """

    event: Event
    outcome: DecryptionOutcome | None = None
