# tests/conftest.py
from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any
from unittest.mock import AsyncMock

import pytest

from roomsync.core.retry import RetryPolicy
from roomsync.core.settings import Settings
from roomsync.models.event import EVENT_TYPE_ENCRYPTED, EVENT_TYPE_MESSAGE, Event
from roomsync.models.session import SessionContext
from roomsync.services.crypto_engine import (
    DecryptedEvent,
    KeyRequestPair,
    ToDeviceRequest,
    TrustPolicy,
)
from roomsync.services.key_throttle import KeyRequestThrottle
from roomsync.services.sync import SyncCoordinator
from roomsync.services.timeline_cache import TimelineCache
from roomsync.services.transport import HomeserverClient, TransportResponse

ROOM_ID = "!room:example.org"
OTHER_ROOM_ID = "!other:example.org"
HOMESERVER = "https://hs.example.org"

MEGOLM_CONTENT = {
    "algorithm": "m.megolm.v1.aes-sha2",
    "ciphertext": "AwgAEnACgAkLmt6qF84IK++J7UDH2Za1YVchHyprqTqsg",
    "sender_key": "curve-key",
    "device_id": "DEVICE",
    "session_id": "session-1",
}


def make_event(
    event_id: str,
    ts: int = 0,
    *,
    encrypted: bool = False,
    sender: str = "@alice:example.org",
    content: Mapping[str, Any] | None = None,
) -> Event:
    if content is None:
        content = MEGOLM_CONTENT if encrypted else {"msgtype": "m.text", "body": event_id}
    return Event(
        event_id=event_id,
        type=EVENT_TYPE_ENCRYPTED if encrypted else EVENT_TYPE_MESSAGE,
        sender=sender,
        origin_server_ts=ts,
        content=dict(content),
    )


def clear_event(body: str | None = "hello", **extra: Any) -> str:
    content: dict[str, Any] = {"msgtype": "m.text", **extra}
    if body is not None:
        content["body"] = body
    return json.dumps({"type": "m.room.message", "content": content, "room_id": ROOM_ID})


def _next(values: list[Any]) -> Any:
    """Consume scripted values; the last one repeats forever."""
    return values.pop(0) if len(values) > 1 else values[0]


class FakeEngine:
    """Scriptable stand-in for the crypto engine collaborator."""

    def __init__(self) -> None:
        self.has_key: list[bool | Exception] = [True]
        self.decrypt_results: list[str | Exception] = [clear_event()]
        self.encrypt_results: list[str | Exception] = [
            json.dumps({"algorithm": "m.megolm.v1.aes-sha2", "ciphertext": "CIPHER"})
        ]
        self.identity_error: Exception | None = None
        self.request_error: Exception | None = None
        self.share_requests = [
            ToDeviceRequest("m.room.encrypted", {"@bob:example.org": {"BOBDEV": {"c": 1}}})
        ]

        self.decrypt_calls: list[tuple[str, str, TrustPolicy]] = []
        self.encrypt_calls: list[tuple[str, str, str]] = []
        self.key_requests: list[tuple[str, str]] = []
        self.received: list[tuple[list[Any], str | None]] = []
        self.tracked: list[list[str]] = []
        self.shared: list[tuple[str, list[str]]] = []

    def encrypt(self, room_id: str, event_type: str, plaintext_json: str) -> str:
        self.encrypt_calls.append((room_id, event_type, plaintext_json))
        result = _next(self.encrypt_results)
        if isinstance(result, Exception):
            raise result
        return result

    def decrypt(self, room_id: str, event_json: str, trust_policy: TrustPolicy) -> DecryptedEvent:
        self.decrypt_calls.append((room_id, event_json, trust_policy))
        result = _next(self.decrypt_results)
        if isinstance(result, Exception):
            raise result
        return DecryptedEvent(clear_event=result)

    def has_room_key(self, room_id: str) -> bool:
        result = _next(self.has_key)
        if isinstance(result, Exception):
            raise result
        return result

    def request_room_key(self, event_json: str, room_id: str) -> KeyRequestPair:
        self.key_requests.append((event_json, room_id))
        if self.request_error is not None:
            raise self.request_error
        return KeyRequestPair(
            key_request=ToDeviceRequest(
                "m.room_key_request",
                {"@alice:example.org": {"*": {"action": "request"}}},
            ),
            cancellation=ToDeviceRequest(
                "m.room_key_request",
                {"@alice:example.org": {"*": {"action": "request_cancellation"}}},
            ),
        )

    def identity_keys(self) -> Mapping[str, str]:
        if self.identity_error is not None:
            raise self.identity_error
        return {"curve25519": "curve", "ed25519": "ed"}

    def receive_sync_changes(
        self, to_device_events: Sequence[Mapping[str, Any]], next_batch: str | None
    ) -> None:
        self.received.append((list(to_device_events), next_batch))

    def update_tracked_users(self, user_ids: Sequence[str]) -> None:
        self.tracked.append(list(user_ids))

    def share_room_key(self, room_id: str, user_ids: Sequence[str]) -> list[ToDeviceRequest]:
        self.shared.append((room_id, list(user_ids)))
        return list(self.share_requests)


@pytest.fixture()
def test_settings() -> Settings:
    """Settings with every delay removed so tests run instantly."""
    return Settings(
        key_resync_delay_seconds=0.0,
        session_renewal_delay_seconds=0.0,
        key_share_propagation_seconds=0.0,
        pre_decrypt_sync_enabled=False,
    )


@pytest.fixture()
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, delay_seconds=0.0, attempt_timeout_seconds=1.0)


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def context(engine: FakeEngine) -> SessionContext:
    return SessionContext(
        homeserver=HOMESERVER,
        access_token="secret-token",
        user_id="@me:example.org",
        device_id="MYDEVICE",
        engine=engine,
    )


@pytest.fixture()
def cache(test_settings: Settings) -> TimelineCache:
    return TimelineCache(config=test_settings)


@pytest.fixture()
def throttle(test_settings: Settings) -> KeyRequestThrottle:
    return KeyRequestThrottle(config=test_settings)


@pytest.fixture()
def mock_transport() -> AsyncMock:
    transport = AsyncMock(spec=HomeserverClient)
    transport.enabled = True
    transport.get.return_value = TransportResponse(status=200, body={})
    transport.put.return_value = TransportResponse(status=200, body={"event_id": "$sent"})
    transport.send_to_device.return_value = TransportResponse(status=200, body={})
    return transport


@pytest.fixture()
def mock_sync() -> AsyncMock:
    sync = AsyncMock(spec=SyncCoordinator)
    sync.resync_for_keys.return_value = True
    sync.sync_once.return_value = True
    return sync
