"""Timeline event record."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

EVENT_TYPE_ENCRYPTED = "m.room.encrypted"
EVENT_TYPE_MESSAGE = "m.room.message"
MSGTYPE_TEXT = "m.text"
MSGTYPE_BAD_ENCRYPTED = "m.bad.encrypted"


@dataclass(frozen=True)
class Event:
    """A single room timeline item.

    Identity is ``event_id``. Display copies produced by decryption are new
    instances created through :meth:`with_content`; the original record is
    never mutated.
    """

    event_id: str
    type: str
    sender: str
    origin_server_ts: int
    content: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_encrypted(self) -> bool:
        return self.type == EVENT_TYPE_ENCRYPTED

    def with_content(self, event_type: str, content: Mapping[str, Any]) -> Event:
        """Return a display copy carrying ``event_type`` and ``content``."""
        return replace(self, type=event_type, content=dict(content))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.type,
            "sender": self.sender,
            "origin_server_ts": self.origin_server_ts,
            "content": dict(self.content),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Event:
        content = payload.get("content")
        return cls(
            event_id=str(payload["event_id"]),
            type=str(payload["type"]),
            sender=str(payload.get("sender", "")),
            origin_server_ts=int(payload.get("origin_server_ts", 0)),
            content=dict(content) if isinstance(content, Mapping) else {},
        )
