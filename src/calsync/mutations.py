"""User-facing event mutations that feed the outbox.

Every save or delete updates the local store first and then enqueues the
outbox job(s) that propagate it. Recurring events honour a
:class:`~calsync.models.RecurrenceScope`: ``THIS`` edits one occurrence,
``ALL`` the whole series, and ``FUTURE`` splits the series at the edited
occurrence so the past half keeps its rule and a new series carries the edit.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from calsync.models import (
    DEFAULT_EVENT_TYPE,
    CalendarEvent,
    OutboxOperation,
    RecurrenceScope,
    SendUpdates,
    SyncState,
    utcnow,
)
from calsync.outbox import OutboxQueue
from calsync.rrule import normalize_rule, split_for_future, without_end
from calsync.store import SyncStore

logger = logging.getLogger(__name__)

DEFAULT_EVENT_DURATION = timedelta(hours=1)


def ensure_end_after_start(start_at: datetime, end_at: datetime) -> datetime:
    """Return *end_at*, or one hour after *start_at* when the range is empty or inverted."""
    if end_at > start_at:
        return end_at
    return start_at + DEFAULT_EVENT_DURATION


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class EventInput(BaseModel):
    """Validated input for :meth:`EventMutations.save_event`."""

    model_config = ConfigDict(extra="forbid")

    local_id: uuid.UUID | None = None
    event_type: str = DEFAULT_EVENT_TYPE
    summary: str
    description: str = ""
    location: str = ""
    start_at: datetime
    end_at: datetime
    timezone: str = "UTC"
    recurrence_rule: str | None = None
    recurring_event_id: str | None = None
    original_start_time: datetime | None = None
    attendees: list[str] = Field(default_factory=list)
    send_updates: SendUpdates = SendUpdates.NONE
    scope: RecurrenceScope = RecurrenceScope.ALL

    @field_validator("event_type")
    @classmethod
    def _normalize_event_type(cls, value: str) -> str:
        return value.strip() or DEFAULT_EVENT_TYPE

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip() or "UTC"
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return normalized

    @field_validator("recurrence_rule")
    @classmethod
    def _normalize_rule(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_rule(value) or None

    @field_validator("recurring_event_id")
    @classmethod
    def _normalize_series_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("start_at", "end_at", "original_start_time")
    @classmethod
    def _normalize_instants(cls, value: datetime | None) -> datetime | None:
        return _utc(value) if value is not None else None

    @field_validator("attendees")
    @classmethod
    def _normalize_attendees(cls, value: list[str]) -> list[str]:
        return [email.strip() for email in value if email.strip()]


def _payload(send_updates: SendUpdates, **fields: Any) -> dict[str, Any]:
    """Payload mapping without unset (``None``) fields, so coalescing never erases ids."""
    body = {key: value for key, value in fields.items() if value is not None}
    body["send_updates"] = send_updates
    return body


class EventMutations:
    """Applies user edits to the store and enqueues their outbox jobs."""

    def __init__(
        self,
        store: SyncStore,
        queue: OutboxQueue,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._clock = clock

    def _build(
        self,
        data: EventInput,
        existing: CalendarEvent | None,
        now: datetime,
        **overrides: Any,
    ) -> CalendarEvent:
        fields: dict[str, Any] = {
            "event_type": data.event_type,
            "summary": data.summary,
            "description": data.description,
            "location": data.location,
            "start_at": data.start_at,
            "end_at": ensure_end_after_start(data.start_at, data.end_at),
            "timezone": data.timezone,
            "recurrence_rule": data.recurrence_rule,
            "attendees": list(data.attendees),
            "local_edited_at": now,
            "sync_state": SyncState.PENDING,
            "is_deleted": False,
        }
        if existing is None:
            fields["local_id"] = data.local_id or uuid.uuid4()
            fields["recurring_event_id"] = data.recurring_event_id
            fields["original_start_time"] = data.original_start_time
            fields["created_at"] = now
            fields["updated_at"] = now
            fields.update(overrides)
            return CalendarEvent(**fields)

        if data.recurring_event_id is not None:
            fields["recurring_event_id"] = data.recurring_event_id
        if data.original_start_time is not None:
            fields["original_start_time"] = data.original_start_time
        fields.update(overrides)
        return dataclasses.replace(existing, **fields)

    # -- save -------------------------------------------------------------

    async def save_event(self, data: EventInput) -> CalendarEvent:
        """Create or update an event and enqueue the matching outbox job(s).

        Returns the record the caller should display: for a FUTURE split
        that is the newly created continuing series.
        """
        now = self._clock()
        existing = await self._store.get_event(data.local_id) if data.local_id else None

        if existing is None:
            event = self._build(data, None, now)
            await self._store.upsert_event(event)
            await self._queue.enqueue(
                OutboxOperation.CREATE,
                event_local_id=event.local_id,
                payload=_payload(data.send_updates),
            )
            return event

        recurring = bool(
            existing.recurrence_rule or existing.recurring_event_id or data.recurrence_rule
        )
        type_changed = recurring and data.event_type != existing.event_type
        scope = RecurrenceScope.ALL if type_changed else data.scope

        if not recurring or scope == RecurrenceScope.ALL:
            return await self._save_series(data, existing, now, recurring=recurring)
        if scope == RecurrenceScope.THIS:
            return await self._save_occurrence(data, existing, now)
        if existing.is_series_master:
            return await self._split_master(data, existing, now)
        if existing.recurring_event_id is not None:
            future = await self._split_from_instance(data, existing, now)
            if future is not None:
                return future

        logger.debug("No rule to split for %s; saving whole series", existing.local_id)
        event = self._build(data, existing, now)
        await self._store.upsert_event(event)
        await self._queue.enqueue(
            OutboxOperation.RECUR_ALL,
            event_local_id=event.local_id,
            payload=_payload(data.send_updates),
        )
        return event

    async def _save_series(
        self,
        data: EventInput,
        existing: CalendarEvent,
        now: datetime,
        *,
        recurring: bool,
    ) -> CalendarEvent:
        event = self._build(data, existing, now)
        series_id = existing.recurring_event_id or existing.remote_id

        async with self._store.transaction() as tx:
            await tx.upsert_event(event)
            if recurring and series_id:
                await tx.refresh_series_instances(
                    series_id,
                    event_type=event.event_type,
                    summary=event.summary,
                    description=event.description,
                    location=event.location,
                    timezone=event.timezone,
                    edited_at=now,
                )
                if existing.recurring_event_id:
                    master = await tx.get_event_by_remote_id(series_id)
                    if master is not None and master.event_type != event.event_type:
                        await tx.upsert_event(
                            dataclasses.replace(master, event_type=event.event_type)
                        )

        if recurring:
            operation = OutboxOperation.RECUR_ALL
            target = event.recurring_event_id or event.remote_id
        else:
            operation = OutboxOperation.PATCH
            target = event.remote_id
        await self._queue.enqueue(
            operation,
            event_local_id=event.local_id,
            payload=_payload(
                data.send_updates,
                remote_id=target,
                recurring_event_id=event.recurring_event_id,
                original_start_time=event.original_start_time,
            ),
        )
        return event

    async def _save_occurrence(
        self, data: EventInput, existing: CalendarEvent, now: datetime
    ) -> CalendarEvent:
        needs_synthetic_override = (
            existing.is_series_master
            and existing.remote_id is not None
            and existing.original_start_time is None
        )
        if needs_synthetic_override:
            # Editing one occurrence of a master: detach it as its own record.
            event = self._build(
                data,
                None,
                now,
                local_id=uuid.uuid4(),
                remote_id=None,
                recurrence_rule=None,
                recurring_event_id=existing.remote_id,
                original_start_time=data.original_start_time or data.start_at,
            )
        else:
            event = self._build(data, existing, now)

        await self._store.upsert_event(event)
        await self._queue.enqueue(
            OutboxOperation.RECUR_THIS,
            event_local_id=event.local_id,
            payload=_payload(
                data.send_updates,
                remote_id=event.remote_id,
                recurring_event_id=event.recurring_event_id,
                original_start_time=event.original_start_time,
            ),
        )
        return event

    async def _split_master(
        self, data: EventInput, existing: CalendarEvent, now: datetime
    ) -> CalendarEvent:
        assert existing.recurrence_rule is not None
        boundary = data.original_start_time or data.start_at
        truncated = split_for_future(existing.recurrence_rule, boundary)
        future = self._build(
            data,
            None,
            now,
            local_id=uuid.uuid4(),
            recurring_event_id=None,
            original_start_time=None,
            recurrence_rule=data.recurrence_rule or existing.recurrence_rule,
            organizer_email=existing.organizer_email,
            hangout_link=existing.hangout_link,
        )

        async with self._store.transaction() as tx:
            await tx.upsert_event(
                dataclasses.replace(
                    existing,
                    recurrence_rule=truncated,
                    local_edited_at=now,
                    sync_state=SyncState.PENDING,
                    is_deleted=False,
                )
            )
            await tx.upsert_event(future)

        split_job_id = await self._queue.enqueue(
            OutboxOperation.RECUR_FUTURE,
            event_local_id=existing.local_id,
            payload=_payload(
                data.send_updates, remote_id=existing.remote_id, split_boundary=boundary
            ),
        )
        await self._queue.enqueue(
            OutboxOperation.CREATE,
            event_local_id=future.local_id,
            payload=_payload(data.send_updates),
            depends_on=split_job_id if existing.remote_id else None,
        )
        logger.info(
            "Split series %s at %s into new series %s",
            existing.local_id,
            boundary.isoformat(),
            future.local_id,
        )
        return future

    async def _split_from_instance(
        self, data: EventInput, existing: CalendarEvent, now: datetime
    ) -> CalendarEvent | None:
        series_id = existing.recurring_event_id
        assert series_id is not None
        master = await self._store.get_event_by_remote_id(series_id)
        rule = (
            data.recurrence_rule
            or (master.recurrence_rule if master is not None else None)
            or existing.recurrence_rule
        )
        if not rule:
            return None

        boundary = existing.original_start_time or existing.start_at
        future = self._build(
            data,
            None,
            now,
            local_id=uuid.uuid4(),
            remote_id=None,
            recurring_event_id=None,
            original_start_time=None,
            recurrence_rule=without_end(rule),
        )

        async with self._store.transaction() as tx:
            if master is not None:
                await tx.upsert_event(
                    dataclasses.replace(
                        master,
                        recurrence_rule=split_for_future(rule, boundary),
                        local_edited_at=now,
                        sync_state=SyncState.PENDING,
                    )
                )
            await tx.tombstone_series_instances(series_id, edited_at=now, starting_at=boundary)
            await tx.upsert_event(future)

        split_job_id = await self._queue.enqueue(
            OutboxOperation.RECUR_FUTURE,
            event_local_id=master.local_id if master is not None else existing.local_id,
            payload=_payload(data.send_updates, remote_id=series_id, split_boundary=boundary),
        )
        await self._queue.enqueue(
            OutboxOperation.CREATE,
            event_local_id=future.local_id,
            payload=_payload(data.send_updates),
            depends_on=split_job_id,
        )
        return future

    # -- delete -----------------------------------------------------------

    async def delete_event(
        self,
        local_id: uuid.UUID,
        *,
        scope: RecurrenceScope = RecurrenceScope.ALL,
        send_updates: SendUpdates = SendUpdates.NONE,
        occurrence_start: datetime | None = None,
    ) -> bool:
        """Soft-delete an event (or part of its series) and enqueue the removal.

        Returns False when the event does not exist or was already deleted.
        """
        existing = await self._store.get_event(local_id)
        if existing is None:
            return False

        now = self._clock()
        recurring = bool(existing.recurrence_rule or existing.recurring_event_id)
        if not recurring:
            scope = RecurrenceScope.ALL

        if scope == RecurrenceScope.ALL:
            series_id = existing.recurring_event_id or existing.remote_id
            async with self._store.transaction() as tx:
                removed = await tx.mark_deleted(local_id, edited_at=now)
                if removed and recurring and series_id:
                    await tx.tombstone_series_instances(series_id, edited_at=now)
            if removed:
                await self._queue.enqueue(
                    OutboxOperation.DELETE,
                    event_local_id=local_id,
                    payload=_payload(send_updates, remote_id=series_id),
                )
            return removed

        if scope == RecurrenceScope.THIS:
            removed = await self._store.mark_deleted(local_id, edited_at=now)
            if removed:
                series_id = (
                    existing.remote_id if existing.is_series_master else existing.recurring_event_id
                )
                await self._queue.enqueue(
                    OutboxOperation.DELETE,
                    event_local_id=local_id,
                    payload=_payload(
                        send_updates,
                        remote_id=existing.remote_id,
                        recurring_event_id=series_id,
                        original_start_time=existing.original_start_time or existing.start_at,
                    ),
                )
            return removed

        boundary = occurrence_start or existing.original_start_time or existing.start_at
        if existing.is_series_master:
            await self._truncate_series(existing, boundary, now, send_updates)
            return True

        if existing.recurring_event_id is not None:
            master = await self._store.get_event_by_remote_id(existing.recurring_event_id)
            if master is not None and master.recurrence_rule:
                await self._truncate_series(master, boundary, now, send_updates)
                return True

        removed = await self._store.mark_deleted(local_id, edited_at=now)
        if removed:
            await self._queue.enqueue(
                OutboxOperation.DELETE,
                event_local_id=local_id,
                payload=_payload(send_updates, remote_id=existing.remote_id),
            )
        return removed

    async def _truncate_series(
        self,
        master: CalendarEvent,
        boundary: datetime,
        now: datetime,
        send_updates: SendUpdates,
    ) -> None:
        assert master.recurrence_rule is not None
        async with self._store.transaction() as tx:
            await tx.upsert_event(
                dataclasses.replace(
                    master,
                    recurrence_rule=split_for_future(master.recurrence_rule, boundary),
                    local_edited_at=now,
                    sync_state=SyncState.PENDING,
                )
            )
            if master.remote_id:
                await tx.tombstone_series_instances(
                    master.remote_id, edited_at=now, starting_at=boundary
                )

        await self._queue.enqueue(
            OutboxOperation.RECUR_FUTURE,
            event_local_id=master.local_id,
            payload=_payload(send_updates, remote_id=master.remote_id, split_boundary=boundary),
        )
