# src/roomsync/client.py
"""Facade wiring every pipeline to one explicit session context."""

from __future__ import annotations

from types import TracebackType
from typing import Any

import httpx

from roomsync.core.retry import RetryPolicy
from roomsync.core.settings import Settings, settings
from roomsync.models.event import Event
from roomsync.models.session import SessionContext, SessionStore
from roomsync.services.crypto_engine import CryptoEngine
from roomsync.services.decryption import DecryptionOrchestrator
from roomsync.services.key_throttle import KeyRequestThrottle
from roomsync.services.messages import MessagePipeline
from roomsync.services.room_encryption import RoomEncryptionService
from roomsync.services.send import SendPipeline
from roomsync.services.sync import SyncCoordinator, SyncWorker
from roomsync.services.timeline_cache import TimelineCache
from roomsync.services.transport import HomeserverClient


class RoomSyncClient:
    """Entry point for reading and sending room messages.

    Each client owns its own cache and throttle; nothing is shared through
    module globals, so several sessions can live in one process.
    """

    def __init__(
        self,
        context: SessionContext,
        *,
        config: Settings | None = None,
        session_store: SessionStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.context = context
        self.config = config or settings
        policy = policy or RetryPolicy.for_key_resync(self.config)

        self.transport = HomeserverClient(context, self.config, client=http_client)
        self.cache = TimelineCache(config=self.config)
        self.throttle = KeyRequestThrottle(config=self.config)
        self.sync = SyncCoordinator(
            self.transport,
            context,
            self.cache,
            policy=policy,
            session_store=session_store,
            config=self.config,
        )
        self.encryption = RoomEncryptionService(self.transport, context, self.config)
        self.orchestrator = DecryptionOrchestrator(
            self.transport,
            self.throttle,
            self.sync,
            renew_session=self.encryption.renew_session,
            policy=policy,
            config=self.config,
        )
        self.messages = MessagePipeline(
            self.transport, context, self.cache, self.orchestrator, self.sync, self.config
        )
        self.sender = SendPipeline(self.transport, context, self.encryption, self.config)
        self.worker = SyncWorker(self.sync, self.config)

    @classmethod
    def from_store(
        cls,
        session_store: SessionStore,
        engine: CryptoEngine | None = None,
        **kwargs: Any,
    ) -> RoomSyncClient | None:
        """Restore a client from persisted credentials, or None if nothing is stored."""
        data = session_store.load()
        if data is None:
            return None
        context = SessionContext.from_session_data(data, engine)
        return cls(context, session_store=session_store, **kwargs)

    async def get_room_messages(self, room_id: str, skip_decryption: bool = False) -> list[Event]:
        return await self.messages.get_room_messages(room_id, skip_decryption)

    async def send_message(
        self, room_id: str, body: str, skip_encryption_setup: bool = False
    ) -> bool:
        return await self.sender.send_message(room_id, body, skip_encryption_setup)

    async def start_sync(self) -> None:
        await self.worker.start()

    async def stop_sync(self) -> None:
        await self.worker.stop()

    async def close(self) -> None:
        await self.worker.stop()
        await self.transport.close()

    async def __aenter__(self) -> RoomSyncClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
