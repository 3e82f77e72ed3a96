"""Long-running calendar sync service.

``CalendarSyncService`` wires one store to its queue, worker, sync engine and
mutations, and owns the background tasks: the outbox worker's periodic flush
and a sync poller that runs ``run_sync_now`` on start, on every interval, and
whenever a reconnect is reported.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from calsync.config import SyncConfig
from calsync.core.logging import set_calendar_context
from calsync.google import CalendarRemote
from calsync.models import (
    CalendarEvent,
    ForcePushResult,
    OutboxJob,
    OutboxOperation,
    RecurrenceScope,
    RemoteCalendar,
    SendUpdates,
    SyncResult,
    SyncSettings,
    utcnow,
)
from calsync.mutations import EventInput, EventMutations
from calsync.outbox import DEFAULT_LIST_LIMIT, OutboxQueue, OutboxWorker
from calsync.store import SyncStore
from calsync.sync import SyncEngine

logger = logging.getLogger(__name__)


class CalendarSyncService:
    """Produced surface of the sync core for one local store."""

    def __init__(
        self,
        store: SyncStore,
        remote: CalendarRemote | None,
        *,
        sync_config: SyncConfig | None = None,
        holiday_calendar_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        config = sync_config or SyncConfig()
        self._store = store
        self._remote = remote
        self._sync_interval_seconds = config.sync_interval_s
        self.worker = OutboxWorker(
            store,
            remote,
            interval_seconds=config.outbox_interval_s,
            max_attempts=config.max_attempts,
            stuck_after=timedelta(minutes=config.stuck_job_minutes),
            clock=clock,
        )
        self.queue = OutboxQueue(store, on_enqueued=self.worker.request_flush, clock=clock)
        self.engine = SyncEngine(
            store,
            remote,
            self.queue,
            self.worker,
            holiday_calendar_id=holiday_calendar_id,
            force_push_batch_size=config.force_push_batch_size,
            clock=clock,
        )
        self.mutations = EventMutations(store, self.queue, clock=clock)
        self._sync_now_event = asyncio.Event()
        self._sync_task: asyncio.Task[None] | None = None

    # -- lifecycle --------------------------------------------------------

    async def start(self, *, default_calendar_id: str | None = None) -> None:
        """Start the worker timer and the sync poller (which syncs immediately)."""
        settings = await self.select_default_calendar(default_calendar_id)
        set_calendar_context(settings.selected_calendar_id)

        self.worker.start()
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(
                self._run_sync_poller(), name="calsync-sync-poller"
            )
        logger.info("Calendar sync service started (calendar=%s)", settings.selected_calendar_id)

    async def stop(self) -> None:
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
        self._sync_task = None
        await self.worker.stop()
        if self._remote is not None:
            await self._remote.shutdown()
        logger.info("Calendar sync service stopped")

    def notify_reconnected(self) -> None:
        """Schedule an immediate sync after connectivity returns."""
        self._sync_now_event.set()

    async def _run_sync_poller(self) -> None:
        logger.debug("Sync poller started (interval=%ss)", self._sync_interval_seconds)
        while True:
            try:
                await self.engine.run_sync_now()
            except Exception as exc:
                logger.error("Background sync failed: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(
                    self._sync_now_event.wait(), timeout=self._sync_interval_seconds
                )
                self._sync_now_event.clear()
                logger.debug("Sync poller: immediate sync requested")
            except TimeoutError:
                pass

    # -- outbox surface ---------------------------------------------------

    async def enqueue(
        self,
        operation: OutboxOperation | str,
        *,
        event_local_id: uuid.UUID | None = None,
        payload: object = None,
        depends_on: uuid.UUID | None = None,
    ) -> uuid.UUID:
        return await self.queue.enqueue(
            operation, event_local_id=event_local_id, payload=payload, depends_on=depends_on
        )

    async def process_outbox_now(self) -> int:
        return await self.worker.process_outbox_now()

    async def cancel_outbox_job(self, job_id: uuid.UUID) -> bool:
        return await self.worker.cancel_outbox_job(job_id)

    async def get_outbox_count(self) -> int:
        return await self.queue.get_outbox_count()

    async def list_outbox_jobs(
        self, *, limit: int = DEFAULT_LIST_LIMIT, include_completed: bool = False
    ) -> list[OutboxJob]:
        return await self.queue.list_outbox_jobs(limit=limit, include_completed=include_completed)

    # -- sync surface -----------------------------------------------------

    async def get_settings(self) -> SyncSettings:
        return await self._store.get_settings()

    async def select_default_calendar(self, calendar_id: str | None) -> SyncSettings:
        """Select *calendar_id* only when no calendar has been chosen yet."""
        settings = await self._store.get_settings()
        if settings.selected_calendar_id is None and calendar_id:
            await self._store.set_selected_calendar(calendar_id, None)
            settings = await self._store.get_settings()
        return settings

    async def run_sync_now(self) -> SyncResult:
        return await self.engine.run_sync_now()

    async def force_push_all(self) -> ForcePushResult:
        return await self.engine.force_push_all()

    async def request_full_backfill(self) -> None:
        await self._store.request_full_backfill()
        self._sync_now_event.set()

    async def list_calendars(self) -> list[RemoteCalendar]:
        if self._remote is None:
            return []
        return await self._remote.list_calendars()

    async def set_selected_calendar(self, calendar_id: str, summary: str | None = None) -> bool:
        changed = await self._store.set_selected_calendar(calendar_id, summary)
        set_calendar_context(calendar_id)
        if changed:
            logger.info("Selected calendar changed to %s; local cache reset", calendar_id)
            self._sync_now_event.set()
        return changed

    # -- mutations --------------------------------------------------------

    async def save_event(self, data: EventInput) -> CalendarEvent:
        return await self.mutations.save_event(data)

    async def delete_event(
        self,
        local_id: uuid.UUID,
        *,
        scope: RecurrenceScope = RecurrenceScope.ALL,
        send_updates: SendUpdates = SendUpdates.NONE,
        occurrence_start: datetime | None = None,
    ) -> bool:
        return await self.mutations.delete_event(
            local_id, scope=scope, send_updates=send_updates, occurrence_start=occurrence_start
        )
