"""Outbox queue and worker.

``OutboxQueue`` records outbound mutations durably and coalesces repeated
PATCHes for the same event. ``OutboxWorker`` drains due jobs against the
remote calendar with retry/backoff, conflict detection, a cancellation
cascade over dependent jobs, and recovery of jobs left RUNNING by a crash.

Only one drain pass runs at a time per worker. Flush requests that arrive
during a pass are folded into a single follow-up pass.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import uuid
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from opentelemetry import trace

from calsync.errors import ErrorKind, classify_error, summarize_error
from calsync.google import CalendarRemote
from calsync.models import (
    TERMINAL_STATUSES,
    OutboxJob,
    OutboxOperation,
    OutboxStatus,
    SyncState,
    build_payload,
    merge_payloads,
    payload_remote_id,
    utcnow,
)
from calsync.store import SyncStore

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 8
BACKOFF_LADDER_SECONDS = (60, 300, 900, 3600)
BACKOFF_JITTER_RATIO = 0.2
STUCK_JOB_AFTER = timedelta(minutes=5)
DEFAULT_INTERVAL_SECONDS = 60.0
DEFAULT_LIST_LIMIT = 80
MAX_LIST_LIMIT = 200

REASON_ORPHANED = "Cancelled: local event not found."
REASON_REMOTE_NEWER = "Cancelled: remote version is newer or equal."
REASON_USER = "Cancelled by user."
REASON_STUCK = "Recovered: job was stuck in RUNNING state."


def dependency_cancelled_reason(job_id: uuid.UUID) -> str:
    return f"Cancelled: dependency {job_id} was cancelled."


def backoff_delay(attempts: int, *, rand: Callable[[], float] = random.random) -> timedelta:
    """Delay before retry number *attempts* (1-indexed), jitter included.

    The base delay comes from ``BACKOFF_LADDER_SECONDS`` and up to 20% of it
    is added on top.
    """
    index = min(max(attempts, 1) - 1, len(BACKOFF_LADDER_SECONDS) - 1)
    base = BACKOFF_LADDER_SECONDS[index]
    return timedelta(seconds=base + base * BACKOFF_JITTER_RATIO * rand())


class JobOutcome(enum.StrEnum):
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    RATE_LIMITED = "RATE_LIMITED"


class OutboxQueue:
    """Durable insertion side of the outbox."""

    def __init__(
        self,
        store: SyncStore,
        *,
        on_enqueued: Callable[[], Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._on_enqueued = on_enqueued
        self._clock = clock

    async def enqueue(
        self,
        operation: OutboxOperation | str,
        *,
        event_local_id: uuid.UUID | None = None,
        payload: Any = None,
        depends_on: uuid.UUID | None = None,
    ) -> uuid.UUID:
        """Record a mutation and return the id of the job that carries it.

        A PATCH for an event that already has a non-terminal PATCH job is
        merged into that job (new fields win) and the job is re-queued.
        """
        op = OutboxOperation(operation)
        validated = build_payload(op, payload)
        now = self._clock()

        job_id: uuid.UUID | None = None
        if op == OutboxOperation.PATCH and event_local_id is not None:
            existing = await self._store.find_active_patch_job(event_local_id)
            if existing is not None:
                merged = merge_payloads(existing.payload, validated)
                await self._store.requeue_job(existing.id, merged, now=now)
                job_id = existing.id
                logger.debug("Coalesced PATCH for event %s into job %s", event_local_id, job_id)

        if job_id is None:
            job = OutboxJob(
                id=uuid.uuid4(),
                operation=op,
                status=OutboxStatus.QUEUED,
                payload=validated,
                next_retry_at=now,
                event_local_id=event_local_id,
                depends_on_outbox_id=depends_on,
                created_at=now,
                updated_at=now,
            )
            await self._store.insert_job(job)
            job_id = job.id
            logger.debug("Enqueued %s job %s for event %s", op, job_id, event_local_id)

        if event_local_id is not None:
            await self._store.update_sync_state(event_local_id, SyncState.PENDING)

        if self._on_enqueued is not None:
            self._on_enqueued()
        return job_id

    async def list_outbox_jobs(
        self, *, limit: int = DEFAULT_LIST_LIMIT, include_completed: bool = False
    ) -> list[OutboxJob]:
        clamped = max(1, min(int(limit), MAX_LIST_LIMIT))
        return await self._store.list_jobs(limit=clamped, include_completed=include_completed)

    async def get_outbox_count(self) -> int:
        return await self._store.count_active_jobs()


class OutboxWorker:
    """Drains due outbox jobs against a :class:`CalendarRemote`.

    The worker owns the ``is_processing``/``pending_flush`` guard and the
    periodic flush task; every other piece of state lives in the store so
    that a restarted worker resumes where the previous one stopped.
    """

    def __init__(
        self,
        store: SyncStore,
        remote: CalendarRemote | None,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = MAX_ATTEMPTS,
        stuck_after: timedelta = STUCK_JOB_AFTER,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._remote = remote
        self._interval_seconds = interval_seconds
        self._max_attempts = max_attempts
        self._stuck_after = stuck_after
        self._rand = rand
        self._clock = clock
        self._is_processing = False
        self._pending_flush = False
        self._flush_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_loop(), name="calsync-outbox-worker")

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def request_flush(self) -> None:
        """Ask the background loop for a pass without waiting for the timer."""
        self._flush_event.set()

    async def _run_loop(self) -> None:
        logger.debug("Outbox worker loop started (interval=%ss)", self._interval_seconds)
        while True:
            self._flush_event.clear()
            try:
                await self.process_outbox_now()
            except Exception as exc:
                logger.error("Outbox worker pass failed: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(self._flush_event.wait(), timeout=self._interval_seconds)
            except TimeoutError:
                pass

    # -- draining ---------------------------------------------------------

    async def process_outbox_now(self) -> int:
        """Drain all due jobs and return how many were processed.

        A call made while a pass is already running returns 0 immediately
        and schedules exactly one more pass after the current one.
        """
        if self._is_processing:
            self._pending_flush = True
            return 0

        self._is_processing = True
        processed = 0
        try:
            while True:
                self._pending_flush = False
                processed += await self._run_pass()
                if not self._pending_flush:
                    break
        finally:
            self._is_processing = False
        return processed

    async def _run_pass(self) -> int:
        if self._remote is None:
            return 0
        settings = await self._store.get_settings()
        calendar_id = settings.selected_calendar_id
        if not calendar_id:
            return 0

        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.outbox.pass") as span:
            await self.recover_stuck_jobs()

            processed = 0
            while True:
                job = await self._store.next_due_job(self._clock())
                if job is None:
                    break
                outcome = await self._process_job(job, calendar_id)
                processed += 1
                if outcome is JobOutcome.RATE_LIMITED:
                    logger.warning(
                        "Remote calendar is rate limiting; ending outbox pass after %d job(s)",
                        processed,
                    )
                    break
            span.set_attribute("outbox.processed", processed)

        if processed:
            logger.info("Outbox pass processed %d job(s)", processed)
        return processed

    async def _process_job(self, job: OutboxJob, calendar_id: str) -> JobOutcome:
        tracer = trace.get_tracer("calsync")
        with (
            structlog.contextvars.bound_contextvars(
                job_id=str(job.id), operation=job.operation.value
            ),
            tracer.start_as_current_span("calsync.outbox.job") as span,
        ):
            span.set_attribute("job.id", str(job.id))
            span.set_attribute("job.operation", job.operation.value)
            span.set_attribute("job.attempts", job.attempts)
            await self._store.mark_job_running(job.id)
            try:
                return await self._execute(job, calendar_id)
            except Exception as exc:
                span.record_exception(exc)
                return await self._handle_failure(job, exc)

    async def _execute(self, job: OutboxJob, calendar_id: str) -> JobOutcome:
        assert self._remote is not None
        event = (
            await self._store.get_event(job.event_local_id)
            if job.event_local_id is not None
            else None
        )
        remote_id = payload_remote_id(job.payload) or (event.remote_id if event else None)

        if job.operation != OutboxOperation.DELETE:
            if event is None:
                logger.warning("Outbox job %s references a missing local event", job.id)
                await self.cancel_job(job.id, REASON_ORPHANED)
                return JobOutcome.CANCELLED
            if event.is_deleted and remote_id is None:
                # Created and deleted locally before ever reaching the remote.
                await self._complete(job, None)
                return JobOutcome.DONE
        elif remote_id is None:
            await self._complete(job, None)
            return JobOutcome.DONE

        if remote_id is not None and job.operation != OutboxOperation.CREATE and event is not None:
            snapshot = await self._remote.fetch_snapshot(
                calendar_id=calendar_id, remote_id=remote_id
            )
            if snapshot is not None and snapshot.remote_updated_at >= event.local_edited_at:
                logger.info(
                    "Remote copy of %s is newer or equal; keeping remote version", remote_id
                )
                await self._store.ingest_remote_snapshots([snapshot])
                await self.cancel_job(job.id, REASON_REMOTE_NEWER)
                return JobOutcome.CANCELLED

        result = await self._remote.push_change(
            calendar_id=calendar_id,
            operation=job.operation,
            event=event,
            payload=job.payload,
        )
        await self._complete(job, result)
        return JobOutcome.DONE

    async def _complete(self, job: OutboxJob, result: Any) -> None:
        marked = await self._store.mark_job_done(job.id)
        if not marked:
            logger.debug("Job %s was re-queued while in flight; leaving it queued", job.id)
        if job.event_local_id is None:
            return

        event = await self._store.get_event(job.event_local_id)
        if event is None:
            return

        remaining = await self._store.count_active_jobs(job.event_local_id)
        state = SyncState.CLEAN if remaining == 0 else SyncState.PENDING

        remote_id = None
        remote_updated_at = None
        if result is not None:
            remote_updated_at = result.remote_updated_at
            # An override push may echo the series id; never adopt it as the instance id.
            if (
                event.remote_id is None
                and result.remote_id
                and result.remote_id != event.recurring_event_id
            ):
                remote_id = result.remote_id

        await self._store.update_sync_state(
            job.event_local_id,
            state,
            remote_id=remote_id,
            remote_updated_at=remote_updated_at,
        )

    async def _handle_failure(self, job: OutboxJob, exc: Exception) -> JobOutcome:
        kind = classify_error(exc)
        message = summarize_error(exc)
        attempts = job.attempts + 1

        if kind is ErrorKind.PERMANENT:
            logger.warning("Outbox job %s failed permanently (%s): %s", job.id, kind, message)
            await self.cancel_job(job.id, f"Permanently failed ({kind}): {message}")
            return JobOutcome.CANCELLED

        if attempts >= self._max_attempts:
            logger.warning(
                "Outbox job %s gave up after %d attempts: %s", job.id, attempts, message
            )
            await self.cancel_job(
                job.id, f"Permanently failed after {attempts} attempts: {message}"
            )
            return JobOutcome.CANCELLED

        next_retry_at = self._clock() + backoff_delay(attempts, rand=self._rand)
        await self._store.mark_job_failed(
            job.id, attempts=attempts, next_retry_at=next_retry_at, last_error=message
        )
        if job.event_local_id is not None:
            await self._store.update_sync_state(job.event_local_id, SyncState.ERROR)
        logger.warning(
            "Outbox job %s failed (%s, attempt %d); retrying at %s: %s",
            job.id,
            kind,
            attempts,
            next_retry_at.isoformat(),
            message,
        )
        if kind is ErrorKind.RATE_LIMITED:
            return JobOutcome.RATE_LIMITED
        return JobOutcome.FAILED

    # -- cancellation -----------------------------------------------------

    async def cancel_job(self, job_id: uuid.UUID, reason: str) -> list[uuid.UUID]:
        """Cancel *job_id* and, transitively, every non-terminal job depending on it.

        Returns the ids of all jobs cancelled, each exactly once. A root that is
        already terminal cancels nothing.
        """
        async with self._store.transaction() as tx:
            root = await tx.get_job(job_id)
            if root is None or root.status in TERMINAL_STATUSES:
                return []

            dependents: dict[uuid.UUID, list[OutboxJob]] = {}
            for active in await tx.list_active_jobs():
                if active.depends_on_outbox_id is not None:
                    dependents.setdefault(active.depends_on_outbox_id, []).append(active)

            touched: set[uuid.UUID] = set()
            if root.event_local_id is not None:
                touched.add(root.event_local_id)

            cancelled: list[uuid.UUID] = []
            visited: set[uuid.UUID] = set()
            work: deque[tuple[uuid.UUID, str]] = deque([(job_id, reason)])
            while work:
                current_id, current_reason = work.popleft()
                if current_id in visited:
                    continue
                visited.add(current_id)
                await tx.mark_job_cancelled(current_id, current_reason)
                cancelled.append(current_id)

                for child in dependents.get(current_id, ()):
                    if child.id in visited:
                        continue
                    if child.event_local_id is not None:
                        touched.add(child.event_local_id)
                        if child.operation == OutboxOperation.CREATE:
                            await tx.mark_rolled_back(child.event_local_id)
                        else:
                            await tx.update_sync_state(child.event_local_id, SyncState.ERROR)
                    work.append((child.id, dependency_cancelled_reason(current_id)))

            for local_id in touched:
                if await tx.count_active_jobs(local_id) == 0:
                    await tx.update_sync_state(local_id, SyncState.CLEAN)

        if len(cancelled) > 1:
            logger.warning(
                "Cancelled job %s and %d dependent job(s): %s",
                job_id,
                len(cancelled) - 1,
                reason,
            )
        return cancelled

    async def cancel_outbox_job(self, job_id: uuid.UUID) -> bool:
        """User-initiated cancellation. RUNNING and terminal jobs are left alone."""
        job = await self._store.get_job(job_id)
        if job is None or job.status in TERMINAL_STATUSES or job.status == OutboxStatus.RUNNING:
            return False
        await self.cancel_job(job_id, REASON_USER)
        return True

    async def recover_stuck_jobs(self) -> int:
        """Move jobs RUNNING for longer than the staleness window to FAILED."""
        stale_before = self._clock() - self._stuck_after
        recovered = await self._store.recover_stuck_jobs(
            stale_before=stale_before, reason=REASON_STUCK
        )
        for job in recovered:
            logger.warning(
                "Recovered outbox job %s stuck in RUNNING (attempts now %d)",
                job.id,
                job.attempts,
            )
        return len(recovered)
