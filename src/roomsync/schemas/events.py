"""Event-related Pydantic schemas."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from roomsync.models.event import MSGTYPE_TEXT, Event


class RoomEventSchema(BaseModel):
    """Schema for a timeline event as returned by the server."""

    event_id: str
    type: str
    sender: str = ""
    origin_server_ts: int = 0
    content: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    def to_event(self) -> Event:
        return Event(
            event_id=self.event_id,
            type=self.type,
            sender=self.sender,
            origin_server_ts=self.origin_server_ts,
            content=self.content,
        )


class MessageContentSchema(BaseModel):
    """Schema for a plain ``m.room.message`` content block."""

    msgtype: str = MSGTYPE_TEXT
    body: str | None = None

    model_config = ConfigDict(extra="allow")

    @field_validator("body", mode="before")
    @classmethod
    def blank_body_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class EncryptedContentSchema(BaseModel):
    """Schema for the content of an ``m.room.encrypted`` event.

    ``ciphertext`` is a string for Megolm and a per-device mapping for Olm.
    """

    algorithm: str
    ciphertext: str | dict[str, Any]
    sender_key: str | None = None
    device_id: str | None = None
    session_id: str | None = None

    model_config = ConfigDict(extra="allow")

    @field_validator("algorithm")
    @classmethod
    def algorithm_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("algorithm must not be blank")
        return value
