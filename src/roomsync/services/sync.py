"""Synchronization with the homeserver.

This module provides the SyncCoordinator, which performs ``/sync`` calls,
advances the sync token, folds new timeline events into the timeline cache
and hands to-device messages (room-key shares among them) to the crypto
engine. It also provides the bounded resync used after a room-key request
and a SyncWorker that keeps syncing in the background.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from roomsync.core.retry import RetryPolicy
from roomsync.core.settings import Settings, settings
from roomsync.models.session import SessionContext, SessionStore
from roomsync.schemas import SyncResponse
from roomsync.services.crypto_engine import classify_engine_error
from roomsync.services.timeline_cache import TimelineCache
from roomsync.services.transport import HomeserverClient, TransportError

# Configure logger for this module
logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Performs sync calls on behalf of the pipelines."""

    def __init__(
        self,
        transport: HomeserverClient,
        context: SessionContext,
        cache: TimelineCache,
        *,
        policy: RetryPolicy | None = None,
        session_store: SessionStore | None = None,
        config: Settings | None = None,
    ) -> None:
        self.transport = transport
        self.context = context
        self.cache = cache
        self.config = config or settings
        self.policy = policy or RetryPolicy.for_key_resync(self.config)
        self.session_store = session_store

    async def sync_once(self, timeout: float | None = None) -> bool:
        """Run one ``/sync`` round trip.

        Returns:
            True if the server answered with a usable sync response.
        """
        params: dict[str, str] = {}
        if self.context.sync_token:
            params["since"] = self.context.sync_token

        try:
            response = await self.transport.get(
                f"{self.config.api_prefix}/sync",
                params,
                timeout=timeout if timeout is not None else self.config.sync_timeout_seconds,
            )
        except TransportError as e:
            logger.warning("Sync request failed: %s", e)
            return False

        if not response.ok:
            logger.warning("Sync failed with status %d", response.status)
            return False

        try:
            sync = SyncResponse.model_validate(response.body)
        except ValidationError as e:
            logger.warning("Sync response did not match expected shape: %s", e)
            return False

        self._advance_token(sync.next_batch)
        await self._apply_timelines(sync)
        await self._apply_to_device(sync)
        return True

    def _advance_token(self, next_batch: str | None) -> None:
        if not next_batch:
            logger.warning("No next_batch token in sync response")
            return

        self.context.sync_token = next_batch
        logger.debug("Updated sync token: %s...", next_batch[:10])

        if self.session_store is None:
            return
        try:
            self.session_store.save(self.context.to_session_data())
        except (OSError, ValueError) as e:
            logger.error("Failed to persist sync token: %s", e, exc_info=True)

    async def _apply_timelines(self, sync: SyncResponse) -> None:
        for room_id, events in sync.joined_timelines().items():
            async with self.cache.room_lock(room_id):
                before = self.cache.count(room_id)
                self.cache.merge(room_id, [schema.to_event() for schema in events])
            logger.debug(
                "Room %s: %d timeline events received, cache %d -> %d",
                room_id,
                len(events),
                before,
                self.cache.count(room_id),
            )

    async def _apply_to_device(self, sync: SyncResponse) -> None:
        engine = self.context.engine
        events = sync.to_device_events()
        if engine is None or not events:
            return

        try:
            await asyncio.to_thread(engine.receive_sync_changes, events, sync.next_batch)
        except Exception as exc:  # noqa: BLE001 - engine boundary
            error = classify_engine_error(exc)
            logger.error("Engine rejected %d to-device events: %s", len(events), error.detail)
            return
        logger.info("Processed %d to-device events", len(events))

    async def resync_for_keys(
        self,
        max_attempts: int | None = None,
        per_attempt_timeout: float | None = None,
    ) -> bool:
        """Sync up to ``max_attempts`` times so pending key shares can arrive.

        A failed attempt is logged and counted but does not stop the loop.

        Returns:
            True if at least one attempt completed without a network error.
        """
        attempts = max_attempts if max_attempts is not None else self.policy.max_attempts
        timeout = (
            per_attempt_timeout
            if per_attempt_timeout is not None
            else self.policy.attempt_timeout_seconds
        )
        policy = RetryPolicy(
            max_attempts=max(1, attempts),
            delay_seconds=self.policy.delay_seconds,
            backoff_factor=self.policy.backoff_factor,
            attempt_timeout_seconds=timeout,
        )

        any_success = False
        for attempt in range(1, policy.max_attempts + 1):
            try:
                ok = await asyncio.wait_for(self.sync_once(timeout), timeout)
            except TimeoutError:
                logger.warning("Key resync %d/%d timed out", attempt, policy.max_attempts)
                ok = False

            if ok:
                any_success = True
                logger.debug("Key resync %d/%d succeeded", attempt, policy.max_attempts)
            else:
                logger.warning("Key resync %d/%d failed", attempt, policy.max_attempts)

            delay = policy.delay_after(attempt)
            if delay > 0:
                await asyncio.sleep(delay)

        return any_success


class SyncWorker:
    """Periodically syncs with the homeserver in the background."""

    def __init__(self, coordinator: SyncCoordinator, config: Settings | None = None) -> None:
        self.coordinator = coordinator
        self.config = config or coordinator.config
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background synchronization loop."""

        if not self.coordinator.transport.enabled:
            return

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background synchronization loop."""

        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(0.1, float(self.config.sync_interval_seconds))
        backoff = max(interval, float(self.config.sync_error_backoff_seconds))

        while not self._stopping.is_set():
            if await self._wait(interval):
                return

            ok = await self.coordinator.sync_once()
            if ok:
                logger.debug("Periodic sync completed")
                continue

            logger.warning("Periodic sync failed, backing off %.0fs", backoff)
            if await self._wait(backoff):
                return

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless stopped first. Returns True when stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), seconds)
        except TimeoutError:
            return False
        return True
