"""Persistence for local events, outbox jobs, and sync settings.

``SyncStore`` is the contract consumed by the outbox and sync engine.
``PostgresSyncStore`` implements it on asyncpg against the tables created by
the ``calsync`` alembic chain. Multi-row updates (series splits, cancellation
cascades, calendar switches) run inside :meth:`SyncStore.transaction`.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any, Protocol

import asyncpg

from calsync.models import (
    CalendarEvent,
    OutboxJob,
    OutboxOperation,
    OutboxPayload,
    OutboxStatus,
    RemoteEventSnapshot,
    SyncSettings,
    SyncState,
    default_sync_window,
    dump_payload,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_PAST_DAYS = 1825
DEFAULT_WINDOW_FUTURE_DAYS = 365


class SyncStore(Protocol):
    """Persistence contract for the outbox worker and sync engine."""

    def transaction(self) -> AbstractAsyncContextManager[SyncStore]:
        """Run the enclosed operations atomically against the returned store."""
        ...

    # -- events -----------------------------------------------------------

    async def get_event(self, local_id: uuid.UUID) -> CalendarEvent | None: ...

    async def get_event_by_remote_id(
        self, remote_id: str, *, include_deleted: bool = False
    ) -> CalendarEvent | None: ...

    async def upsert_event(self, event: CalendarEvent) -> None:
        """Insert or fully overwrite the record keyed by ``local_id``."""
        ...

    async def update_sync_state(
        self,
        local_id: uuid.UUID,
        sync_state: SyncState,
        *,
        remote_id: str | None = None,
        remote_updated_at: datetime | None = None,
    ) -> None:
        """Set ``sync_state``; adopt *remote_id* only when the record has none.

        A remote id already owned by another record is not adopted.
        """
        ...

    async def mark_deleted(self, local_id: uuid.UUID, *, edited_at: datetime) -> bool:
        """Tombstone a live record and flag it PENDING. Returns False if nothing changed."""
        ...

    async def mark_rolled_back(self, local_id: uuid.UUID) -> None:
        """Tombstone a record whose remote creation will never happen."""
        ...

    async def tombstone_series_instances(
        self,
        series_remote_id: str,
        *,
        edited_at: datetime,
        starting_at: datetime | None = None,
    ) -> int: ...

    async def refresh_series_instances(
        self,
        series_remote_id: str,
        *,
        event_type: str,
        summary: str,
        description: str,
        location: str,
        timezone: str,
        edited_at: datetime,
    ) -> int: ...

    async def ingest_remote_snapshots(self, snapshots: Sequence[RemoteEventSnapshot]) -> int:
        """Upsert pulled snapshots by remote id; deleted snapshots tombstone."""
        ...

    async def list_events_page(
        self,
        *,
        after: uuid.UUID | None,
        limit: int,
        exclude_event_type: str | None = None,
    ) -> list[CalendarEvent]: ...

    async def touch_local_edited(
        self, local_ids: Sequence[uuid.UUID], edited_at: datetime
    ) -> None: ...

    # -- outbox -----------------------------------------------------------

    async def get_job(self, job_id: uuid.UUID) -> OutboxJob | None: ...

    async def insert_job(self, job: OutboxJob) -> None: ...

    async def find_active_patch_job(self, event_local_id: uuid.UUID) -> OutboxJob | None: ...

    async def requeue_job(
        self, job_id: uuid.UUID, payload: OutboxPayload, *, now: datetime
    ) -> None: ...

    async def mark_job_running(self, job_id: uuid.UUID) -> None: ...

    async def mark_job_done(self, job_id: uuid.UUID) -> bool:
        """Move a RUNNING job to DONE. Returns False if it was re-queued meanwhile."""
        ...

    async def mark_job_failed(
        self,
        job_id: uuid.UUID,
        *,
        attempts: int,
        next_retry_at: datetime,
        last_error: str,
    ) -> None: ...

    async def mark_job_cancelled(self, job_id: uuid.UUID, reason: str) -> None: ...

    async def next_due_job(self, now: datetime) -> OutboxJob | None: ...

    async def recover_stuck_jobs(
        self, *, stale_before: datetime, reason: str
    ) -> list[OutboxJob]: ...

    async def list_active_jobs(self) -> list[OutboxJob]: ...

    async def count_active_jobs(self, event_local_id: uuid.UUID | None = None) -> int: ...

    async def list_jobs(self, *, limit: int, include_completed: bool) -> list[OutboxJob]: ...

    # -- settings ---------------------------------------------------------

    async def get_settings(self) -> SyncSettings: ...

    async def set_sync_token(self, token: str | None) -> None: ...

    async def set_selected_calendar(self, calendar_id: str, summary: str | None) -> bool:
        """Select a calendar. A different id wipes jobs, events, and the sync token."""
        ...

    async def request_full_backfill(self) -> None: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_ACTIVE_STATUS_SQL = "('QUEUED', 'FAILED', 'RUNNING')"

_HAS_ACTIVE_JOB_SQL = f"""
    EXISTS (
        SELECT 1 FROM outbox_jobs j
        WHERE j.event_local_id = calendar_events.local_id
          AND j.status IN {_ACTIVE_STATUS_SQL}
    )
"""

_EVENT_COLUMNS = (
    "local_id, remote_id, event_type, summary, description, location, start_at, end_at, "
    "timezone, recurrence_rule, recurring_event_id, original_start_time, attendees, "
    "organizer_email, hangout_link, remote_updated_at, local_edited_at, sync_state, "
    "is_deleted, created_at, updated_at"
)

_JOB_COLUMNS = (
    "id, operation, status, attempts, next_retry_at, last_error, event_local_id, payload, "
    "depends_on_outbox_id, created_at, updated_at"
)


class PostgresSyncStore:
    """asyncpg-backed :class:`SyncStore`.

    Constructed with a pool; :meth:`transaction` yields a sibling store bound
    to a single connection for the duration of the transaction.
    """

    def __init__(
        self,
        db: asyncpg.Pool | Any,
        *,
        window_past_days: int = DEFAULT_WINDOW_PAST_DAYS,
        window_future_days: int = DEFAULT_WINDOW_FUTURE_DAYS,
        _bound: bool = False,
    ) -> None:
        self._db = db
        self._window_past_days = window_past_days
        self._window_future_days = window_future_days
        self._bound = _bound

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresSyncStore]:
        if self._bound:
            async with self._db.transaction():
                yield self
            return

        async with self._db.acquire() as conn:
            async with conn.transaction():
                yield PostgresSyncStore(
                    conn,
                    window_past_days=self._window_past_days,
                    window_future_days=self._window_future_days,
                    _bound=True,
                )

    # -- events -----------------------------------------------------------

    async def get_event(self, local_id: uuid.UUID) -> CalendarEvent | None:
        row = await self._db.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM calendar_events WHERE local_id = $1",
            local_id,
        )
        return CalendarEvent.from_row(row) if row is not None else None

    async def get_event_by_remote_id(
        self, remote_id: str, *, include_deleted: bool = False
    ) -> CalendarEvent | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_EVENT_COLUMNS} FROM calendar_events
            WHERE remote_id = $1 AND ($2 OR NOT is_deleted)
            """,
            remote_id,
            include_deleted,
        )
        return CalendarEvent.from_row(row) if row is not None else None

    async def upsert_event(self, event: CalendarEvent) -> None:
        await self._db.execute(
            """
            INSERT INTO calendar_events (
                local_id, remote_id, event_type, summary, description, location,
                start_at, end_at, timezone, recurrence_rule, recurring_event_id,
                original_start_time, attendees, organizer_email, hangout_link,
                remote_updated_at, local_edited_at, sync_state, is_deleted, created_at
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb,
                $14, $15, $16, $17, $18, $19, $20
            )
            ON CONFLICT (local_id) DO UPDATE SET
                remote_id = EXCLUDED.remote_id,
                event_type = EXCLUDED.event_type,
                summary = EXCLUDED.summary,
                description = EXCLUDED.description,
                location = EXCLUDED.location,
                start_at = EXCLUDED.start_at,
                end_at = EXCLUDED.end_at,
                timezone = EXCLUDED.timezone,
                recurrence_rule = EXCLUDED.recurrence_rule,
                recurring_event_id = EXCLUDED.recurring_event_id,
                original_start_time = EXCLUDED.original_start_time,
                attendees = EXCLUDED.attendees,
                organizer_email = EXCLUDED.organizer_email,
                hangout_link = EXCLUDED.hangout_link,
                remote_updated_at = EXCLUDED.remote_updated_at,
                local_edited_at = EXCLUDED.local_edited_at,
                sync_state = EXCLUDED.sync_state,
                is_deleted = EXCLUDED.is_deleted,
                updated_at = now()
            """,
            event.local_id,
            event.remote_id,
            event.event_type,
            event.summary,
            event.description,
            event.location,
            event.start_at,
            event.end_at,
            event.timezone,
            event.recurrence_rule,
            event.recurring_event_id,
            event.original_start_time,
            json.dumps(event.attendees),
            event.organizer_email,
            event.hangout_link,
            event.remote_updated_at,
            event.local_edited_at,
            event.sync_state.value,
            event.is_deleted,
            event.created_at,
        )

    async def update_sync_state(
        self,
        local_id: uuid.UUID,
        sync_state: SyncState,
        *,
        remote_id: str | None = None,
        remote_updated_at: datetime | None = None,
    ) -> None:
        await self._db.execute(
            """
            UPDATE calendar_events
            SET sync_state = $2,
                remote_id = CASE
                    WHEN remote_id IS NULL AND NOT EXISTS (
                        SELECT 1 FROM calendar_events other WHERE other.remote_id = $3
                    ) THEN $3
                    ELSE remote_id
                END,
                remote_updated_at = COALESCE($4, remote_updated_at),
                updated_at = now()
            WHERE local_id = $1
            """,
            local_id,
            sync_state.value,
            remote_id,
            remote_updated_at,
        )

    async def mark_deleted(self, local_id: uuid.UUID, *, edited_at: datetime) -> bool:
        status = await self._db.execute(
            """
            UPDATE calendar_events
            SET is_deleted = true, local_edited_at = $2, sync_state = 'PENDING', updated_at = now()
            WHERE local_id = $1 AND NOT is_deleted
            """,
            local_id,
            edited_at,
        )
        return _affected_rows(status) > 0

    async def mark_rolled_back(self, local_id: uuid.UUID) -> None:
        await self._db.execute(
            """
            UPDATE calendar_events
            SET is_deleted = true, sync_state = 'CLEAN', updated_at = now()
            WHERE local_id = $1
            """,
            local_id,
        )

    async def tombstone_series_instances(
        self,
        series_remote_id: str,
        *,
        edited_at: datetime,
        starting_at: datetime | None = None,
    ) -> int:
        status = await self._db.execute(
            """
            UPDATE calendar_events
            SET is_deleted = true, local_edited_at = $2, updated_at = now()
            WHERE recurring_event_id = $1
              AND NOT is_deleted
              AND ($3::timestamptz IS NULL OR start_at >= $3)
            """,
            series_remote_id,
            edited_at,
            starting_at,
        )
        return _affected_rows(status)

    async def refresh_series_instances(
        self,
        series_remote_id: str,
        *,
        event_type: str,
        summary: str,
        description: str,
        location: str,
        timezone: str,
        edited_at: datetime,
    ) -> int:
        status = await self._db.execute(
            """
            UPDATE calendar_events
            SET event_type = $2, summary = $3, description = $4, location = $5,
                timezone = $6, local_edited_at = $7, updated_at = now()
            WHERE recurring_event_id = $1 AND NOT is_deleted
            """,
            series_remote_id,
            event_type,
            summary,
            description,
            location,
            timezone,
            edited_at,
        )
        return _affected_rows(status)

    async def ingest_remote_snapshots(self, snapshots: Sequence[RemoteEventSnapshot]) -> int:
        ingested = 0
        for snapshot in snapshots:
            if snapshot.is_deleted:
                await self._db.execute(
                    f"""
                    UPDATE calendar_events
                    SET is_deleted = true,
                        remote_updated_at = $2,
                        sync_state = CASE WHEN {_HAS_ACTIVE_JOB_SQL}
                            THEN sync_state ELSE 'CLEAN' END,
                        updated_at = now()
                    WHERE remote_id = $1
                    """,
                    snapshot.remote_id,
                    snapshot.remote_updated_at,
                )
                ingested += 1
                continue

            if snapshot.start_at is None or snapshot.end_at is None:
                logger.debug("Skipping remote event %s without time bounds", snapshot.remote_id)
                continue

            await self._db.execute(
                f"""
                INSERT INTO calendar_events (
                    local_id, remote_id, event_type, summary, description, location,
                    start_at, end_at, timezone, recurrence_rule, recurring_event_id,
                    original_start_time, attendees, organizer_email, hangout_link,
                    remote_updated_at, local_edited_at, sync_state, is_deleted
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb,
                    $14, $15, $16, $16, 'CLEAN', false
                )
                ON CONFLICT (remote_id) DO UPDATE SET
                    event_type = EXCLUDED.event_type,
                    summary = EXCLUDED.summary,
                    description = EXCLUDED.description,
                    location = EXCLUDED.location,
                    start_at = EXCLUDED.start_at,
                    end_at = EXCLUDED.end_at,
                    timezone = EXCLUDED.timezone,
                    recurrence_rule = EXCLUDED.recurrence_rule,
                    recurring_event_id = EXCLUDED.recurring_event_id,
                    original_start_time = EXCLUDED.original_start_time,
                    attendees = EXCLUDED.attendees,
                    organizer_email = EXCLUDED.organizer_email,
                    hangout_link = EXCLUDED.hangout_link,
                    remote_updated_at = EXCLUDED.remote_updated_at,
                    local_edited_at = EXCLUDED.local_edited_at,
                    is_deleted = false,
                    sync_state = CASE WHEN {_HAS_ACTIVE_JOB_SQL}
                        THEN calendar_events.sync_state ELSE 'CLEAN' END,
                    updated_at = now()
                """,
                uuid.uuid4(),
                snapshot.remote_id,
                snapshot.event_type,
                snapshot.summary,
                snapshot.description,
                snapshot.location,
                snapshot.start_at,
                snapshot.end_at,
                snapshot.timezone,
                snapshot.recurrence_rule,
                snapshot.recurring_event_id,
                snapshot.original_start_time,
                json.dumps(snapshot.attendees),
                snapshot.organizer_email,
                snapshot.hangout_link,
                snapshot.remote_updated_at,
            )
            ingested += 1
        return ingested

    async def list_events_page(
        self,
        *,
        after: uuid.UUID | None,
        limit: int,
        exclude_event_type: str | None = None,
    ) -> list[CalendarEvent]:
        rows = await self._db.fetch(
            f"""
            SELECT {_EVENT_COLUMNS} FROM calendar_events
            WHERE ($1::uuid IS NULL OR local_id > $1)
              AND ($2::text IS NULL OR event_type <> $2)
            ORDER BY local_id
            LIMIT $3
            """,
            after,
            exclude_event_type,
            limit,
        )
        return [CalendarEvent.from_row(row) for row in rows]

    async def touch_local_edited(
        self, local_ids: Sequence[uuid.UUID], edited_at: datetime
    ) -> None:
        if not local_ids:
            return
        await self._db.execute(
            """
            UPDATE calendar_events SET local_edited_at = $2, updated_at = now()
            WHERE local_id = ANY($1::uuid[])
            """,
            list(local_ids),
            edited_at,
        )

    # -- outbox -----------------------------------------------------------

    async def get_job(self, job_id: uuid.UUID) -> OutboxJob | None:
        row = await self._db.fetchrow(
            f"SELECT {_JOB_COLUMNS} FROM outbox_jobs WHERE id = $1",
            job_id,
        )
        return OutboxJob.from_row(row) if row is not None else None

    async def insert_job(self, job: OutboxJob) -> None:
        await self._db.execute(
            """
            INSERT INTO outbox_jobs (
                id, operation, status, attempts, next_retry_at, last_error,
                event_local_id, payload, depends_on_outbox_id, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11)
            """,
            job.id,
            job.operation.value,
            job.status.value,
            job.attempts,
            job.next_retry_at,
            job.last_error,
            job.event_local_id,
            json.dumps(dump_payload(job.payload)),
            job.depends_on_outbox_id,
            job.created_at,
            job.updated_at,
        )

    async def find_active_patch_job(self, event_local_id: uuid.UUID) -> OutboxJob | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_JOB_COLUMNS} FROM outbox_jobs
            WHERE event_local_id = $1 AND operation = $2 AND status IN {_ACTIVE_STATUS_SQL}
            ORDER BY created_at ASC
            LIMIT 1
            """,
            event_local_id,
            OutboxOperation.PATCH.value,
        )
        return OutboxJob.from_row(row) if row is not None else None

    async def requeue_job(
        self, job_id: uuid.UUID, payload: OutboxPayload, *, now: datetime
    ) -> None:
        await self._db.execute(
            """
            UPDATE outbox_jobs
            SET payload = $2::jsonb, status = 'QUEUED', next_retry_at = $3,
                last_error = NULL, updated_at = now()
            WHERE id = $1
            """,
            job_id,
            json.dumps(dump_payload(payload)),
            now,
        )

    async def mark_job_running(self, job_id: uuid.UUID) -> None:
        await self._db.execute(
            "UPDATE outbox_jobs SET status = 'RUNNING', updated_at = now() WHERE id = $1",
            job_id,
        )

    async def mark_job_done(self, job_id: uuid.UUID) -> bool:
        status = await self._db.execute(
            """
            UPDATE outbox_jobs SET status = 'DONE', last_error = NULL, updated_at = now()
            WHERE id = $1 AND status = 'RUNNING'
            """,
            job_id,
        )
        return _affected_rows(status) > 0

    async def mark_job_failed(
        self,
        job_id: uuid.UUID,
        *,
        attempts: int,
        next_retry_at: datetime,
        last_error: str,
    ) -> None:
        await self._db.execute(
            """
            UPDATE outbox_jobs
            SET status = 'FAILED', attempts = $2, next_retry_at = $3, last_error = $4,
                updated_at = now()
            WHERE id = $1
            """,
            job_id,
            attempts,
            next_retry_at,
            last_error,
        )

    async def mark_job_cancelled(self, job_id: uuid.UUID, reason: str) -> None:
        await self._db.execute(
            """
            UPDATE outbox_jobs SET status = 'CANCELLED', last_error = $2, updated_at = now()
            WHERE id = $1
            """,
            job_id,
            reason,
        )

    async def next_due_job(self, now: datetime) -> OutboxJob | None:
        row = await self._db.fetchrow(
            """
            SELECT j.id, j.operation, j.status, j.attempts, j.next_retry_at, j.last_error,
                   j.event_local_id, j.payload, j.depends_on_outbox_id, j.created_at,
                   j.updated_at
            FROM outbox_jobs j
            LEFT JOIN outbox_jobs dep ON dep.id = j.depends_on_outbox_id
            WHERE j.status IN ('QUEUED', 'FAILED')
              AND j.next_retry_at <= $1
              AND (j.depends_on_outbox_id IS NULL OR dep.status = 'DONE')
            ORDER BY j.next_retry_at ASC, j.created_at ASC
            LIMIT 1
            """,
            now,
        )
        return OutboxJob.from_row(row) if row is not None else None

    async def recover_stuck_jobs(
        self, *, stale_before: datetime, reason: str
    ) -> list[OutboxJob]:
        rows = await self._db.fetch(
            f"""
            UPDATE outbox_jobs
            SET status = 'FAILED', attempts = attempts + 1, last_error = $2, updated_at = now()
            WHERE status = 'RUNNING' AND updated_at < $1
            RETURNING {_JOB_COLUMNS}
            """,
            stale_before,
            reason,
        )
        return [OutboxJob.from_row(row) for row in rows]

    async def list_active_jobs(self) -> list[OutboxJob]:
        rows = await self._db.fetch(
            f"""
            SELECT {_JOB_COLUMNS} FROM outbox_jobs
            WHERE status IN {_ACTIVE_STATUS_SQL}
            ORDER BY created_at ASC
            """
        )
        return [OutboxJob.from_row(row) for row in rows]

    async def count_active_jobs(self, event_local_id: uuid.UUID | None = None) -> int:
        count = await self._db.fetchval(
            f"""
            SELECT count(*) FROM outbox_jobs
            WHERE status IN {_ACTIVE_STATUS_SQL}
              AND ($1::uuid IS NULL OR event_local_id = $1)
            """,
            event_local_id,
        )
        return int(count or 0)

    async def list_jobs(self, *, limit: int, include_completed: bool) -> list[OutboxJob]:
        rows = await self._db.fetch(
            f"""
            SELECT {_JOB_COLUMNS} FROM outbox_jobs
            WHERE $1 OR status IN {_ACTIVE_STATUS_SQL}
            ORDER BY created_at DESC
            LIMIT $2
            """,
            include_completed,
            limit,
        )
        return [OutboxJob.from_row(row) for row in rows]

    # -- settings ---------------------------------------------------------

    async def get_settings(self) -> SyncSettings:
        window_start, window_end = default_sync_window(
            utcnow(),
            past_days=self._window_past_days,
            future_days=self._window_future_days,
        )
        await self._db.execute(
            """
            INSERT INTO sync_settings (id, sync_window_start, sync_window_end)
            VALUES (1, $1, $2)
            ON CONFLICT (id) DO NOTHING
            """,
            window_start,
            window_end,
        )
        row = await self._db.fetchrow(
            """
            SELECT sync_token, selected_calendar_id, selected_calendar_summary,
                   sync_window_start, sync_window_end, unbounded_window
            FROM sync_settings WHERE id = 1
            """
        )
        return SyncSettings.from_row(row)

    async def set_sync_token(self, token: str | None) -> None:
        await self.get_settings()
        await self._db.execute(
            "UPDATE sync_settings SET sync_token = $1, updated_at = now() WHERE id = 1",
            token,
        )

    async def set_selected_calendar(self, calendar_id: str, summary: str | None) -> bool:
        async with self.transaction() as tx:
            current = await tx.get_settings()
            changed = current.selected_calendar_id != calendar_id
            if changed:
                await tx._db.execute("DELETE FROM outbox_jobs")
                await tx._db.execute("DELETE FROM calendar_events")
                await tx._db.execute(
                    """
                    UPDATE sync_settings
                    SET selected_calendar_id = $1, selected_calendar_summary = $2,
                        sync_token = NULL, updated_at = now()
                    WHERE id = 1
                    """,
                    calendar_id,
                    summary,
                )
            else:
                await tx._db.execute(
                    """
                    UPDATE sync_settings SET selected_calendar_summary = $1, updated_at = now()
                    WHERE id = 1
                    """,
                    summary,
                )
        return changed

    async def request_full_backfill(self) -> None:
        await self.get_settings()
        await self._db.execute(
            """
            UPDATE sync_settings SET unbounded_window = true, sync_token = NULL, updated_at = now()
            WHERE id = 1
            """
        )


def _affected_rows(status: str) -> int:
    """Parse the row count from an asyncpg command tag such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


__all__ = [
    "DEFAULT_WINDOW_FUTURE_DAYS",
    "DEFAULT_WINDOW_PAST_DAYS",
    "OutboxStatus",
    "PostgresSyncStore",
    "SyncStore",
]
