"""Response envelopes for the client-server endpoints we consume."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from roomsync.schemas.events import RoomEventSchema


class RoomMessagesResponse(BaseModel):
    """``GET /rooms/{roomId}/messages`` page."""

    chunk: list[RoomEventSchema] = Field(default_factory=list)
    start: str | None = None
    end: str | None = None

    model_config = ConfigDict(extra="ignore")


class _Timeline(BaseModel):
    events: list[RoomEventSchema] = Field(default_factory=list)


class _JoinedRoom(BaseModel):
    timeline: _Timeline | None = None


class _Rooms(BaseModel):
    join: dict[str, _JoinedRoom] = Field(default_factory=dict)


class _ToDevice(BaseModel):
    events: list[dict[str, Any]] = Field(default_factory=list)


class SyncResponse(BaseModel):
    """``GET /sync`` response, restricted to the parts the pipeline reads."""

    next_batch: str | None = None
    rooms: _Rooms | None = None
    to_device: _ToDevice | None = None

    model_config = ConfigDict(extra="ignore")

    def joined_timelines(self) -> dict[str, list[RoomEventSchema]]:
        if self.rooms is None:
            return {}
        return {
            room_id: room.timeline.events
            for room_id, room in self.rooms.join.items()
            if room.timeline is not None and room.timeline.events
        }

    def to_device_events(self) -> list[dict[str, Any]]:
        return self.to_device.events if self.to_device is not None else []


class JoinedMembersResponse(BaseModel):
    """``GET /rooms/{roomId}/joined_members`` response."""

    joined: dict[str, dict[str, Any]] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    def user_ids(self) -> list[str]:
        return sorted(self.joined)
