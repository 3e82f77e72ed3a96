"""Pull/push reconciliation between the local store and the remote calendar.

``SyncEngine.run_sync_now`` drains the outbox, then pulls either every event
in the sync window (FULL) or only the changes since the stored sync token
(DELTA). An expired token silently degrades to a FULL pull.
``SyncEngine.force_push_all`` treats the local store as authoritative and
re-enqueues every non-holiday event.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from opentelemetry import trace

from calsync.errors import CalendarSyncTokenExpiredError
from calsync.google import CalendarRemote
from calsync.models import (
    HOLIDAY_EVENT_TYPE,
    CalendarEvent,
    DeletePayload,
    ForcePushResult,
    OutboxOperation,
    OutboxPayload,
    PatchPayload,
    RecurAllPayload,
    RecurThisPayload,
    SyncMode,
    SyncResult,
    build_payload,
    utcnow,
)
from calsync.outbox import OutboxQueue, OutboxWorker
from calsync.store import SyncStore

logger = logging.getLogger(__name__)

DEFAULT_FORCE_PUSH_BATCH_SIZE = 200
HOLIDAY_MONTHS_BACK = 3
HOLIDAY_MONTHS_AHEAD = 12


def _shift_month_start(value: datetime, months: int) -> datetime:
    index = value.year * 12 + (value.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=UTC)


def holiday_window(now: datetime) -> tuple[datetime, datetime]:
    """First day of the month three months back to the end of the month a year ahead."""
    start = _shift_month_start(now, -HOLIDAY_MONTHS_BACK)
    end = _shift_month_start(now, HOLIDAY_MONTHS_AHEAD + 1) - timedelta(microseconds=1)
    return start, end


def plan_force_push(event: CalendarEvent) -> tuple[OutboxOperation, OutboxPayload] | None:
    """Pick the outbox operation that re-asserts *event* remotely, or ``None`` to skip."""
    if event.is_deleted:
        if event.remote_id is None:
            return None
        return OutboxOperation.DELETE, DeletePayload(remote_id=event.remote_id)
    if event.is_override:
        if event.remote_id is None:
            return None
        return OutboxOperation.RECUR_THIS, RecurThisPayload(
            remote_id=event.remote_id,
            recurring_event_id=event.recurring_event_id,
            original_start_time=event.original_start_time,
        )
    if event.is_series_master:
        return OutboxOperation.RECUR_ALL, RecurAllPayload(remote_id=event.remote_id)
    if event.remote_id is None:
        return OutboxOperation.CREATE, build_payload(OutboxOperation.CREATE)
    return OutboxOperation.PATCH, PatchPayload(remote_id=event.remote_id)


class SyncEngine:
    """Orchestrates outbox drains, remote pulls, and the holiday calendar."""

    def __init__(
        self,
        store: SyncStore,
        remote: CalendarRemote | None,
        queue: OutboxQueue,
        worker: OutboxWorker,
        *,
        holiday_calendar_id: str | None = None,
        force_push_batch_size: int = DEFAULT_FORCE_PUSH_BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._remote = remote
        self._queue = queue
        self._worker = worker
        self._holiday_calendar_id = holiday_calendar_id
        self._force_push_batch_size = max(1, force_push_batch_size)
        self._clock = clock

    async def run_sync_now(self) -> SyncResult:
        settings = await self._store.get_settings()
        calendar_id = settings.selected_calendar_id
        if self._remote is None or not calendar_id or not await self._remote.is_authenticated():
            logger.debug("Sync skipped: remote unavailable or no calendar selected")
            return SyncResult(
                mode=SyncMode.SKIPPED,
                outbox_remaining=await self._store.count_active_jobs(),
            )

        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.sync.run") as span:
            pushed = await self._worker.process_outbox_now()

            # Token may have been cleared during the drain (calendar switch).
            settings = await self._store.get_settings()
            if settings.sync_token is None:
                mode = SyncMode.FULL
                pulled = await self._pull_full(calendar_id)
            else:
                try:
                    mode = SyncMode.DELTA
                    pulled = await self._pull(calendar_id, sync_token=settings.sync_token)
                except CalendarSyncTokenExpiredError:
                    logger.warning(
                        "Sync token for %s expired; falling back to a full pull", calendar_id
                    )
                    await self._store.set_sync_token(None)
                    mode = SyncMode.FULL
                    pulled = await self._pull_full(calendar_id)
            span.set_attribute("sync.mode", mode.value)

            await self.sync_holidays()

            remaining = await self._store.count_active_jobs()

        logger.info(
            "Sync finished: mode=%s pulled=%d pushed=%d outbox_remaining=%d",
            mode,
            pulled,
            pushed,
            remaining,
        )
        return SyncResult(
            mode=mode,
            pulled_events=pulled,
            pushed_outbox_jobs=pushed,
            outbox_remaining=remaining,
        )

    async def _pull_full(self, calendar_id: str) -> int:
        settings = await self._store.get_settings()
        window = settings.time_window
        if window is None:
            return await self._pull(calendar_id)
        return await self._pull(calendar_id, time_min=window[0], time_max=window[1])

    async def _pull(
        self,
        calendar_id: str,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> int:
        assert self._remote is not None
        pulled = 0
        next_sync_token: str | None = None
        page_token: str | None = None
        while True:
            page = await self._remote.pull_changes(
                calendar_id=calendar_id,
                sync_token=sync_token,
                time_min=time_min,
                time_max=time_max,
                page_token=page_token,
            )
            if page.events:
                pulled += await self._store.ingest_remote_snapshots(page.events)
            if page.next_sync_token is not None:
                next_sync_token = page.next_sync_token
            page_token = page.next_page_token
            if page_token is None:
                break

        if next_sync_token is not None:
            await self._store.set_sync_token(next_sync_token)
        else:
            logger.warning("Pull of %s returned no sync token; next sync will be FULL", calendar_id)
        return pulled

    async def sync_holidays(self) -> int:
        """Ingest the configured holiday calendar. Failures are logged, never raised."""
        if self._remote is None or not self._holiday_calendar_id:
            return 0
        time_min, time_max = holiday_window(self._clock())
        try:
            holidays = await self._remote.list_holidays(
                calendar_id=self._holiday_calendar_id, time_min=time_min, time_max=time_max
            )
            return await self._store.ingest_remote_snapshots(holidays)
        except Exception:
            logger.warning(
                "Holiday pull from %s failed", self._holiday_calendar_id, exc_info=True
            )
            return 0

    async def force_push_all(self) -> ForcePushResult:
        """Re-enqueue every non-holiday event so local state overwrites the remote."""
        enqueued = 0
        skipped = 0
        after = None
        while True:
            batch = await self._store.list_events_page(
                after=after,
                limit=self._force_push_batch_size,
                exclude_event_type=HOLIDAY_EVENT_TYPE,
            )
            if not batch:
                break
            after = batch[-1].local_id

            now = self._clock()
            await self._store.touch_local_edited([event.local_id for event in batch], now)
            for event in batch:
                plan = plan_force_push(event)
                if plan is None:
                    skipped += 1
                    continue
                operation, payload = plan
                await self._queue.enqueue(
                    operation, event_local_id=event.local_id, payload=payload
                )
                enqueued += 1

            if len(batch) < self._force_push_batch_size:
                break

        processed = await self._worker.process_outbox_now()
        logger.info(
            "Force push enqueued %d job(s), processed %d, skipped %d event(s)",
            enqueued,
            processed,
            skipped,
        )
        return ForcePushResult(
            enqueued_jobs=enqueued, processed_jobs=processed, skipped_events=skipped
        )
