"""Per-event decrypt-or-recover orchestration.

Every encrypted event runs through a small state machine and always ends in
exactly one outcome::

    START          engine down -> ENGINE_UNAVAILABLE
                   malformed content -> MALFORMED_EVENT
                   no room key -> REQUEST_KEY
                   otherwise -> TRY_DECRYPT
    TRY_DECRYPT    ok -> Decrypted
                   session expired -> RENEW_SESSION
                   key not found -> REQUEST_KEY
                   anything else -> OTHER
    REQUEST_KEY    throttled -> MISSING_KEY
                   request sent + bounded resync -> one more TRY_DECRYPT
                   request or retry fails -> MISSING_KEY
    RENEW_SESSION  renewed -> one more TRY_DECRYPT
                   renewal or retry fails -> SESSION_EXPIRED

Each failure class gets at most one retry.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from pydantic import ValidationError

from roomsync.core.retry import RetryPolicy
from roomsync.core.settings import Settings, settings
from roomsync.models.event import EVENT_TYPE_MESSAGE, MSGTYPE_TEXT, Event
from roomsync.models.outcome import (
    Decrypted,
    DecryptionOutcome,
    ResolvedEvent,
    Undecryptable,
    UndecryptableReason,
)
from roomsync.schemas import EncryptedContentSchema, MessageContentSchema
from roomsync.services.crypto_engine import (
    CryptoEngine,
    DecryptedEvent,
    EngineError,
    EngineErrorKind,
    TrustPolicy,
    classify_engine_error,
)
from roomsync.services.key_throttle import KeyRequestThrottle
from roomsync.services.sync import SyncCoordinator
from roomsync.services.transport import HomeserverClient, TransportError

# Configure logger for this module
logger = logging.getLogger(__name__)

RenewSession = Callable[[str], Awaitable[bool]]

DECRYPT_TIMEOUT_DETAIL = "Decryption timed out"


def _engine_kind_to_reason(kind: EngineErrorKind) -> UndecryptableReason:
    if kind is EngineErrorKind.MALFORMED_EVENT:
        return UndecryptableReason.MALFORMED_EVENT
    if kind is EngineErrorKind.ENGINE_DESTROYED:
        return UndecryptableReason.ENGINE_UNAVAILABLE
    return UndecryptableReason.OTHER


def build_decrypted(result: DecryptedEvent) -> Decrypted:
    """Turn the engine's clear event into display content.

    A clear event normally looks like ``{"type": ..., "content": {...}}``.
    If the recovered content has no usable ``body`` the raw recovered text is
    substituted so the message is still shown.
    """
    raw = result.clear_event
    try:
        parsed: Any = json.loads(raw)
    except ValueError:
        logger.warning("Decrypted payload is not valid JSON, treating as plain text")
        parsed = raw

    event_type = EVENT_TYPE_MESSAGE
    if isinstance(parsed, dict) and isinstance(parsed.get("content"), dict):
        if isinstance(parsed.get("type"), str) and parsed["type"]:
            event_type = parsed["type"]
        content: Any = parsed["content"]
    else:
        content = parsed

    fallback_body = parsed if isinstance(parsed, str) else raw.strip().strip('"')

    try:
        message = MessageContentSchema.model_validate(content)
    except ValidationError:
        logger.warning("Decrypted content does not look like a message, repairing")
        return Decrypted(
            content={"msgtype": MSGTYPE_TEXT, "body": fallback_body},
            event_type=event_type,
        )

    if message.body is None:
        message = message.model_copy(update={"body": fallback_body})
    return Decrypted(content=message.model_dump(), event_type=event_type)


class DecryptionOrchestrator:
    """Resolves encrypted events into decrypted copies or tagged placeholders."""

    def __init__(
        self,
        transport: HomeserverClient,
        throttle: KeyRequestThrottle,
        sync: SyncCoordinator,
        *,
        renew_session: RenewSession | None = None,
        policy: RetryPolicy | None = None,
        trust_policy: TrustPolicy = TrustPolicy.UNTRUSTED,
        config: Settings | None = None,
    ) -> None:
        self.transport = transport
        self.throttle = throttle
        self.sync = sync
        self.renew_session = renew_session
        self.config = config or settings
        self.policy = policy or RetryPolicy.for_key_resync(self.config)
        self.trust_policy = trust_policy

    async def decrypt_events(
        self, room_id: str, events: Sequence[Event], engine: CryptoEngine | None
    ) -> list[Event]:
        """Return display copies of ``events`` in the same order."""
        return [resolved.event for resolved in await self.process(room_id, events, engine)]

    async def process(
        self, room_id: str, events: Sequence[Event], engine: CryptoEngine | None
    ) -> list[ResolvedEvent]:
        """Resolve every event, pairing each display copy with its outcome."""
        if not any(event.is_encrypted for event in events):
            return [ResolvedEvent(event) for event in events]

        engine_alive = engine is not None and await self._engine_alive(engine)
        if not engine_alive:
            logger.warning("Crypto engine unavailable, %d events left encrypted", len(events))

        resolved: list[ResolvedEvent] = []
        for event in events:
            if not event.is_encrypted:
                resolved.append(ResolvedEvent(event))
                continue

            outcome: DecryptionOutcome
            if engine is None or not engine_alive:
                outcome = Undecryptable(UndecryptableReason.ENGINE_UNAVAILABLE)
            else:
                outcome = await self.resolve(room_id, event, engine)
            resolved.append(ResolvedEvent(outcome.apply(event), outcome))

        decrypted = sum(1 for item in resolved if isinstance(item.outcome, Decrypted))
        logger.info("Room %s: decrypted %d of %d events", room_id, decrypted, len(events))
        return resolved

    async def resolve(self, room_id: str, event: Event, engine: CryptoEngine) -> DecryptionOutcome:
        """Run the state machine for one encrypted event."""
        try:
            return await self._start(room_id, event, engine)
        except Exception as exc:  # noqa: BLE001 - every event must resolve
            logger.error("Unexpected failure decrypting %s: %s", event.event_id, exc, exc_info=True)
            return Undecryptable(UndecryptableReason.OTHER, str(exc) or exc.__class__.__name__)

    async def _start(self, room_id: str, event: Event, engine: CryptoEngine) -> DecryptionOutcome:
        try:
            EncryptedContentSchema.model_validate(event.content)
        except ValidationError:
            logger.warning("Event %s is missing required encryption fields", event.event_id)
            return Undecryptable(UndecryptableReason.MALFORMED_EVENT)

        if not await self._has_room_key(room_id, engine):
            logger.debug("No room key for %s, requesting", event.event_id)
            return await self._request_key(room_id, event, engine, require_key=True)

        return await self._try_decrypt(room_id, event, engine)

    async def _try_decrypt(
        self, room_id: str, event: Event, engine: CryptoEngine
    ) -> DecryptionOutcome:
        result = await self._decrypt(room_id, event, engine)
        if isinstance(result, DecryptedEvent):
            return build_decrypted(result)

        logger.warning("Decryption of %s failed: %s", event.event_id, result.detail)
        if result.kind is EngineErrorKind.SESSION_EXPIRED:
            return await self._renew_and_retry(room_id, event, engine)
        if result.kind is EngineErrorKind.KEY_NOT_FOUND:
            return await self._request_key(room_id, event, engine, require_key=False)
        return Undecryptable(_engine_kind_to_reason(result.kind), result.detail)

    async def _request_key(
        self, room_id: str, event: Event, engine: CryptoEngine, *, require_key: bool
    ) -> DecryptionOutcome:
        if not self.throttle.should_request(room_id, event.sender, event.event_id):
            logger.debug("Key for %s requested recently, not asking again", event.event_id)
            return Undecryptable(
                UndecryptableReason.MISSING_KEY, extra={"key_request": "throttled"}
            )
        self.throttle.record_request(room_id, event.sender, event.event_id)

        try:
            pair = await asyncio.to_thread(engine.request_room_key, event.to_json(), room_id)
        except Exception as exc:  # noqa: BLE001 - engine boundary
            error = classify_engine_error(exc)
            logger.warning("Engine could not build key request: %s", error.detail)
            return Undecryptable(UndecryptableReason.MISSING_KEY, error.detail)

        if pair.cancellation is not None:
            # Cancellation is never sent.
            logger.debug("Not sending key request cancellation for %s", event.event_id)

        try:
            response = await self.transport.send_to_device(pair.key_request)
        except TransportError as e:
            logger.warning("Room key request for %s failed: %s", event.event_id, e)
            return Undecryptable(UndecryptableReason.MISSING_KEY, str(e))
        if not response.ok:
            logger.warning("Room key request for %s returned %d", event.event_id, response.status)

        await self.sync.resync_for_keys(
            self.policy.max_attempts, self.policy.attempt_timeout_seconds
        )

        if require_key and not await self._has_room_key(room_id, engine):
            return Undecryptable(UndecryptableReason.MISSING_KEY)

        result = await self._decrypt(room_id, event, engine)
        if isinstance(result, DecryptedEvent):
            logger.info("Decrypted %s after key request", event.event_id)
            return build_decrypted(result)
        logger.warning("Retry decryption of %s failed: %s", event.event_id, result.detail)
        return Undecryptable(UndecryptableReason.MISSING_KEY, result.detail)

    async def _renew_and_retry(
        self, room_id: str, event: Event, engine: CryptoEngine
    ) -> DecryptionOutcome:
        renewed = False
        if self.renew_session is not None:
            try:
                renewed = await self.renew_session(room_id)
            except Exception as exc:  # noqa: BLE001 - collaborator boundary
                logger.warning("Session renewal for %s failed: %s", room_id, exc)

        if not renewed:
            return Undecryptable(UndecryptableReason.SESSION_EXPIRED)

        if self.config.session_renewal_delay_seconds > 0:
            await asyncio.sleep(self.config.session_renewal_delay_seconds)

        result = await self._decrypt(room_id, event, engine)
        if isinstance(result, DecryptedEvent):
            return build_decrypted(result)
        return Undecryptable(UndecryptableReason.SESSION_EXPIRED, result.detail)

    async def _decrypt(
        self, room_id: str, event: Event, engine: CryptoEngine
    ) -> DecryptedEvent | EngineError:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(engine.decrypt, room_id, event.to_json(), self.trust_policy),
                self.config.decrypt_timeout_seconds,
            )
        except TimeoutError:
            return EngineError(EngineErrorKind.OTHER, DECRYPT_TIMEOUT_DETAIL)
        except Exception as exc:  # noqa: BLE001 - engine boundary
            return classify_engine_error(exc)

    async def _has_room_key(self, room_id: str, engine: CryptoEngine) -> bool:
        try:
            return bool(await asyncio.to_thread(engine.has_room_key, room_id))
        except Exception as exc:  # noqa: BLE001 - engine boundary
            logger.warning("Error checking room key validity: %s", exc)
            return False

    async def _engine_alive(self, engine: CryptoEngine) -> bool:
        try:
            await asyncio.to_thread(engine.identity_keys)
        except Exception as exc:  # noqa: BLE001 - engine boundary
            logger.error("Crypto engine is not functional: %s", exc)
            return False
        return True
