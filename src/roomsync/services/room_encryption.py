"""Room encryption state and outbound session setup."""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from roomsync.core.settings import Settings, settings
from roomsync.models.session import SessionContext
from roomsync.schemas import JoinedMembersResponse
from roomsync.services.crypto_engine import classify_engine_error
from roomsync.services.transport import HomeserverClient, TransportError, room_path

# Configure logger for this module
logger = logging.getLogger(__name__)

ENCRYPTION_STATE_TYPE = "m.room.encryption"
HTTP_NOT_FOUND = 404


class EncryptionStateUnknown(TransportError):
    """The server gave no definite answer about a room's encryption state."""


class RoomEncryptionService:
    """Answers "is this room encrypted" and prepares outbound Megolm sessions."""

    def __init__(
        self,
        transport: HomeserverClient,
        context: SessionContext,
        config: Settings | None = None,
    ) -> None:
        self.transport = transport
        self.context = context
        self.config = config or settings

    async def encryption_state(self, room_id: str) -> bool:
        """Return whether the room carries an encryption state event.

        Only a 2xx (encrypted) or a 404 (no such state, not encrypted) answer
        is definite.

        Raises:
            EncryptionStateUnknown: On network failure, timeout or any other status.
        """
        try:
            response = await self.transport.get(
                room_path(self.config, room_id, "state", ENCRYPTION_STATE_TYPE),
                timeout=self.config.encryption_state_timeout_seconds,
            )
        except TransportError as e:
            raise EncryptionStateUnknown(f"Encryption state lookup failed: {e}") from e

        if response.ok:
            encrypted = True
        elif response.status == HTTP_NOT_FOUND:
            encrypted = False
        else:
            raise EncryptionStateUnknown(
                f"Encryption state lookup returned status {response.status}"
            )
        logger.debug("Room %s is %s", room_id, "encrypted" if encrypted else "not encrypted")
        return encrypted

    async def is_room_encrypted(self, room_id: str) -> bool:
        """Return True only if the room is known to be encrypted."""
        try:
            return await self.encryption_state(room_id)
        except EncryptionStateUnknown as e:
            logger.warning("Encryption state unknown for room %s: %s", room_id, e)
            return False

    async def get_joined_members(self, room_id: str) -> list[str]:
        response = await self.transport.get(room_path(self.config, room_id, "joined_members"))
        if not response.ok:
            raise TransportError(
                f"Unexpected response ({response.status}) when listing members of {room_id}"
            )
        try:
            return JoinedMembersResponse.model_validate(response.body).user_ids()
        except ValidationError as e:
            raise TransportError(f"Malformed joined_members response: {e}") from e

    async def ensure_room_encryption(self, room_id: str) -> bool:
        """Make sure an outbound session exists and is shared with all members.

        Returns:
            True when the room key was shared; False on any failure.
        """
        engine = self.context.engine
        if engine is None:
            logger.warning("Cannot set up encryption for %s: no crypto engine", room_id)
            return False

        if not await self.is_room_encrypted(room_id):
            logger.warning("Room %s is not encrypted", room_id)
            return False

        try:
            members = await self.get_joined_members(room_id)
        except TransportError as e:
            logger.warning("Encryption setup for %s failed: %s", room_id, e)
            return False

        try:
            await asyncio.to_thread(engine.update_tracked_users, members)
            share_requests = await asyncio.to_thread(engine.share_room_key, room_id, members)
        except Exception as exc:  # noqa: BLE001 - engine boundary
            error = classify_engine_error(exc)
            logger.error("Engine failed to share room key for %s: %s", room_id, error.detail)
            return False

        logger.info("Sharing room key for %s in %d requests", room_id, len(share_requests))
        for request in share_requests:
            try:
                response = await self.transport.send_to_device(request)
            except TransportError as e:
                logger.warning("Room key share for %s failed: %s", room_id, e)
                return False
            if not response.ok:
                return False

        if share_requests and self.config.key_share_propagation_seconds > 0:
            await asyncio.sleep(self.config.key_share_propagation_seconds)

        logger.info("Room encryption setup completed for %s", room_id)
        return True

    async def renew_session(self, room_id: str) -> bool:
        """Replace an expired session by re-running the encryption setup."""
        logger.info("Renewing encryption session for %s", room_id)
        return await self.ensure_room_encryption(room_id)
