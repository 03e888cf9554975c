"""Crypto engine collaborator boundary.

The Olm/Megolm state machine lives outside this package. This module fixes
the contract the pipelines consume and is the single place where raw engine
failures are classified into :class:`EngineErrorKind`. Nothing downstream
inspects exception messages.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class TrustPolicy(Enum):
    """Sender-device trust requirement applied during decryption."""

    UNTRUSTED = "untrusted"
    CROSS_SIGNED_OR_LEGACY = "cross_signed_or_legacy"
    CROSS_SIGNED = "cross_signed"


class EngineErrorKind(Enum):
    SESSION_EXPIRED = "session_expired"
    KEY_NOT_FOUND = "key_not_found"
    MALFORMED_EVENT = "malformed_event"
    ENGINE_DESTROYED = "engine_destroyed"
    PANIC = "panic"
    OTHER = "other"


class EngineError(RuntimeError):
    """Structured crypto engine failure."""

    def __init__(self, kind: EngineErrorKind, detail: str = "") -> None:
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail or kind.value

    @property
    def renewable(self) -> bool:
        """True when a fresh session may cure the failure."""
        return self.kind in (EngineErrorKind.SESSION_EXPIRED, EngineErrorKind.PANIC)


# Substrings observed in engine error messages, checked in order.
_MESSAGE_PATTERNS: tuple[tuple[str, EngineErrorKind], ...] = (
    ("session expired", EngineErrorKind.SESSION_EXPIRED),
    ("can't find the room key", EngineErrorKind.KEY_NOT_FOUND),
    ("room key not found", EngineErrorKind.KEY_NOT_FOUND),
    ("unknown inbound session", EngineErrorKind.KEY_NOT_FOUND),
    ("already been destroyed", EngineErrorKind.ENGINE_DESTROYED),
    ("missing required encryption fields", EngineErrorKind.MALFORMED_EVENT),
    ("invalid event structure", EngineErrorKind.MALFORMED_EVENT),
    ("invalid event content structure", EngineErrorKind.MALFORMED_EVENT),
    ("panicked", EngineErrorKind.PANIC),
)


def classify_engine_error(exc: BaseException) -> EngineError:
    """Map any exception raised by an engine call onto :class:`EngineError`."""
    if isinstance(exc, EngineError):
        return exc

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    for needle, kind in _MESSAGE_PATTERNS:
        if needle in lowered:
            return EngineError(kind, message)
    return EngineError(EngineErrorKind.OTHER, message)


@dataclass(frozen=True)
class ToDeviceRequest:
    """Outgoing to-device message produced by the engine.

    ``body`` maps user id to device id to content and is sent wrapped in a
    ``{"messages": ...}`` envelope.
    """

    event_type: str
    body: Mapping[str, Any]
    request_id: str | None = None

    @classmethod
    def from_raw(cls, event_type: str, body: str | Mapping[str, Any]) -> ToDeviceRequest:
        """Build a request from an engine body that may still be a JSON string."""
        if isinstance(body, str):
            parsed = json.loads(body) if body.strip() else {}
            if not isinstance(parsed, dict):
                raise ValueError("to-device body must be a JSON object")
            return cls(event_type=event_type, body=parsed)
        return cls(event_type=event_type, body=dict(body))


@dataclass(frozen=True)
class KeyRequestPair:
    key_request: ToDeviceRequest
    cancellation: ToDeviceRequest | None = None


@dataclass(frozen=True)
class DecryptedEvent:
    """Clear-text event JSON returned by a successful decrypt."""

    clear_event: str
    sender_curve25519_key: str | None = None
    forwarding_chain: Sequence[str] = field(default_factory=tuple)


@runtime_checkable
class CryptoEngine(Protocol):
    """Operations the pipelines need from the end-to-end crypto engine.

    Implementations may be blocking; callers run them off the event loop.
    Failures are raised as exceptions and classified with
    :func:`classify_engine_error`.
    """

    def encrypt(self, room_id: str, event_type: str, plaintext_json: str) -> str: ...

    def decrypt(
        self, room_id: str, event_json: str, trust_policy: TrustPolicy
    ) -> DecryptedEvent: ...

    def has_room_key(self, room_id: str) -> bool: ...

    def request_room_key(self, event_json: str, room_id: str) -> KeyRequestPair: ...

    def identity_keys(self) -> Mapping[str, str]: ...

    def receive_sync_changes(
        self, to_device_events: Sequence[Mapping[str, Any]], next_batch: str | None
    ) -> None: ...

    def update_tracked_users(self, user_ids: Sequence[str]) -> None: ...

    def share_room_key(self, room_id: str, user_ids: Sequence[str]) -> list[ToDeviceRequest]: ...
