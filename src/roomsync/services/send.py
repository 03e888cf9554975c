"""Outgoing message pipeline.

Decides between a plaintext and an encrypted send, prepares the room's
outbound session, renews it once if the engine reports it expired, and
transmits under a client transaction id so that retries are idempotent.
A message destined for an encrypted room is never sent in plaintext.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

from roomsync.core.settings import Settings, settings
from roomsync.models.event import EVENT_TYPE_MESSAGE
from roomsync.models.send_content import (
    EncryptedContent,
    PlainContent,
    SendContent,
    text_payload,
)
from roomsync.models.session import SessionContext
from roomsync.services.crypto_engine import CryptoEngine, EngineError, classify_engine_error
from roomsync.services.room_encryption import EncryptionStateUnknown, RoomEncryptionService
from roomsync.services.transport import HomeserverClient, TransportError, room_path
from roomsync.utils.txn import new_txn_id

# Configure logger for this module
logger = logging.getLogger(__name__)

PROBE_BODY = "encryption_test"


class SendAborted(RuntimeError):
    """Internal signal that the message must not be transmitted."""


@dataclass
class _RenewalBudget:
    """At most one session renewal per send."""

    used: bool = False


class SendPipeline:
    """Sends a text message to a room, encrypting when the room requires it."""

    def __init__(
        self,
        transport: HomeserverClient,
        context: SessionContext,
        encryption: RoomEncryptionService,
        config: Settings | None = None,
    ) -> None:
        self.transport = transport
        self.context = context
        self.encryption = encryption
        self.config = config or settings

    async def send_message(
        self, room_id: str, body: str, skip_encryption_setup: bool = False
    ) -> bool:
        """Send ``body`` to ``room_id``.

        Args:
            room_id: Destination room.
            body: Message text.
            skip_encryption_setup: Assume the outbound session is already shared.

        Returns:
            True if the server accepted the event. Never raises.
        """
        try:
            content = await self.build_content(room_id, body, skip_encryption_setup)
        except SendAborted as e:
            logger.warning("Message to %s not sent: %s", room_id, e)
            return False

        return await self.transmit(room_id, content)

    async def build_content(
        self, room_id: str, body: str, skip_encryption_setup: bool = False
    ) -> SendContent:
        """Construct the envelope to transmit.

        Raises:
            SendAborted: The room is or may be encrypted but a ciphertext could not be
                produced.
        """
        try:
            encrypted = await self.encryption.encryption_state(room_id)
        except EncryptionStateUnknown as e:
            raise SendAborted(f"cannot tell whether the room is encrypted: {e}") from e
        if not encrypted:
            return PlainContent(body=body)

        engine = self.context.engine
        if engine is None:
            raise SendAborted("room is encrypted but no crypto engine is available")

        if not skip_encryption_setup:
            logger.debug("Ensuring encryption setup for room %s", room_id)
            if not await self.encryption.ensure_room_encryption(room_id):
                raise SendAborted("encryption setup failed for encrypted room")

        budget = _RenewalBudget()
        if self.config.send_probe_enabled:
            await self._encrypt_with_renewal(engine, room_id, PROBE_BODY, budget)
            logger.debug("Encryption probe for %s succeeded", room_id)

        ciphertext = await self._encrypt_with_renewal(engine, room_id, body, budget)
        try:
            return EncryptedContent.from_engine_output(ciphertext)
        except ValueError as e:
            raise SendAborted(f"engine returned an unusable ciphertext: {e}") from e

    async def _encrypt_with_renewal(
        self, engine: CryptoEngine, room_id: str, body: str, budget: _RenewalBudget
    ) -> str:
        plaintext = json.dumps(text_payload(body))
        try:
            return await self._encrypt(engine, room_id, plaintext)
        except EngineError as error:
            if not error.renewable or budget.used:
                raise SendAborted(f"encryption failed: {error.detail}") from error
            logger.info("Outbound session for %s expired, renewing", room_id)

        budget.used = True
        if not await self.encryption.renew_session(room_id):
            raise SendAborted("session renewal failed")
        if self.config.session_renewal_delay_seconds > 0:
            await asyncio.sleep(self.config.session_renewal_delay_seconds)

        try:
            return await self._encrypt(engine, room_id, plaintext)
        except EngineError as error:
            raise SendAborted(f"encryption failed after renewal: {error.detail}") from error

    @staticmethod
    async def _encrypt(engine: CryptoEngine, room_id: str, plaintext: str) -> str:
        try:
            return await asyncio.to_thread(engine.encrypt, room_id, EVENT_TYPE_MESSAGE, plaintext)
        except EngineError:
            raise
        except Exception as exc:  # noqa: BLE001 - engine boundary
            raise classify_engine_error(exc) from exc

    async def transmit(self, room_id: str, content: SendContent, txn_id: str | None = None) -> bool:
        """PUT the event under a transaction id; the same id makes a retry a no-op."""
        path = room_path(self.config, room_id, "send", content.event_type, txn_id or new_txn_id())
        try:
            response = await self.transport.put(
                path, content.payload(), timeout=self.config.send_timeout_seconds
            )
        except TransportError as e:
            logger.warning("Send to %s failed: %s", room_id, e)
            return False

        if not response.ok:
            logger.warning("Send to %s rejected with status %d", room_id, response.status)
            return False

        logger.info("Message sent to %s as %s", room_id, content.event_type)
        return True
