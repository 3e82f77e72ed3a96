"""Data models for local calendar sync.

``CalendarEvent`` and ``OutboxJob`` map 1:1 to the ``calendar_events`` and
``outbox_jobs`` tables and round-trip through ``to_dict``/``from_dict`` and
``from_row``. Outbox payloads form a tagged union keyed by ``operation``;
each variant carries only the fields its push needs.
"""

from __future__ import annotations

import enum
import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from calsync.errors import OutboxPayloadError

DEFAULT_EVENT_TYPE = "default"
HOLIDAY_EVENT_TYPE = "holiday"


class SyncState(enum.StrEnum):
    """Propagation state of a local event."""

    CLEAN = "CLEAN"
    PENDING = "PENDING"
    ERROR = "ERROR"


class OutboxStatus(enum.StrEnum):
    """Lifecycle status of an outbox job."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES = frozenset({OutboxStatus.QUEUED, OutboxStatus.FAILED, OutboxStatus.RUNNING})
TERMINAL_STATUSES = frozenset({OutboxStatus.DONE, OutboxStatus.CANCELLED})


class OutboxOperation(enum.StrEnum):
    """Mutation kinds propagated to the remote calendar."""

    CREATE = "CREATE"
    PATCH = "PATCH"
    DELETE = "DELETE"
    RECUR_THIS = "RECUR_THIS"
    RECUR_ALL = "RECUR_ALL"
    RECUR_FUTURE = "RECUR_FUTURE"


class SyncMode(enum.StrEnum):
    FULL = "FULL"
    DELTA = "DELTA"
    SKIPPED = "SKIPPED"


class RecurrenceScope(enum.StrEnum):
    """Which part of a recurring series an edit or delete applies to."""

    THIS = "THIS"
    ALL = "ALL"
    FUTURE = "FUTURE"


class SendUpdates(enum.StrEnum):
    """Google ``sendUpdates`` policy for attendee notifications."""

    ALL = "all"
    EXTERNAL_ONLY = "externalOnly"
    NONE = "none"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _parse_uuid(value: Any) -> uuid.UUID:
    """Parse a UUID from a string or UUID object."""
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _parse_optional_uuid(value: Any) -> uuid.UUID | None:
    if value is None:
        return None
    return _parse_uuid(value)


def _parse_datetime(value: Any) -> datetime:
    """Parse a datetime from a string or datetime object, normalised to UTC."""
    if isinstance(value, datetime):
        return _as_utc(value)
    return _as_utc(datetime.fromisoformat(str(value)))


def _parse_optional_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    return _parse_datetime(value)


def _parse_jsonb(value: Any) -> Any:
    """Parse a JSONB value (may be a string or an already-decoded object)."""
    if isinstance(value, str | bytes):
        return json.loads(value)
    return value


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Outbox payloads
# ---------------------------------------------------------------------------


class _PayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    send_updates: SendUpdates = SendUpdates.NONE


class CreatePayload(_PayloadBase):
    """Insert the referenced local event as a new remote event."""

    operation: Literal["CREATE"] = "CREATE"


class _TargetedPayload(_PayloadBase):
    remote_id: str | None = None
    recurring_event_id: str | None = None
    original_start_time: datetime | None = None

    @field_validator("remote_id", "recurring_event_id")
    @classmethod
    def _normalize_remote_ids(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_validator("original_start_time")
    @classmethod
    def _normalize_original_start(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value) if value is not None else None


class PatchPayload(_TargetedPayload):
    operation: Literal["PATCH"] = "PATCH"


class DeletePayload(_TargetedPayload):
    operation: Literal["DELETE"] = "DELETE"


class RecurThisPayload(_TargetedPayload):
    """Edit one occurrence; resolved via ``recurring_event_id`` when ``remote_id`` is unknown."""

    operation: Literal["RECUR_THIS"] = "RECUR_THIS"


class RecurAllPayload(_TargetedPayload):
    operation: Literal["RECUR_ALL"] = "RECUR_ALL"


class RecurFuturePayload(_PayloadBase):
    """Truncate the remote series master so it ends before ``split_boundary``."""

    operation: Literal["RECUR_FUTURE"] = "RECUR_FUTURE"
    remote_id: str | None = None
    split_boundary: datetime

    @field_validator("split_boundary")
    @classmethod
    def _normalize_boundary(cls, value: datetime) -> datetime:
        return _as_utc(value)


OutboxPayload = Annotated[
    CreatePayload
    | PatchPayload
    | DeletePayload
    | RecurThisPayload
    | RecurAllPayload
    | RecurFuturePayload,
    Field(discriminator="operation"),
]

_PAYLOAD_ADAPTER: TypeAdapter[OutboxPayload] = TypeAdapter(OutboxPayload)


def build_payload(operation: OutboxOperation | str, payload: Any = None) -> OutboxPayload:
    """Build the payload variant for *operation* from a mapping or model.

    Raises:
        OutboxPayloadError: When the payload does not validate for the
            operation, or a model of another operation is supplied.
    """
    op = OutboxOperation(operation)
    if isinstance(payload, _PayloadBase):
        if payload.operation != op:
            raise OutboxPayloadError(
                f"Payload for {payload.operation} cannot be enqueued as {op}"
            )
        return payload

    data = dict(payload or {})
    tagged = data.pop("operation", op)
    if tagged != op:
        raise OutboxPayloadError(f"Payload tagged {tagged} cannot be enqueued as {op}")
    try:
        return _PAYLOAD_ADAPTER.validate_python({"operation": op.value, **data})
    except ValidationError as exc:
        raise OutboxPayloadError(f"Invalid {op} payload: {exc}") from exc


def dump_payload(payload: OutboxPayload) -> dict[str, Any]:
    """Serialise a payload for storage, keeping only fields that were set."""
    body = payload.model_dump(mode="json", exclude_unset=True, exclude={"operation"})
    return {"operation": payload.operation, **body}


def load_payload(data: Any) -> OutboxPayload:
    decoded = _parse_jsonb(data) or {}
    try:
        return _PAYLOAD_ADAPTER.validate_python(decoded)
    except ValidationError as exc:
        raise OutboxPayloadError(f"Stored outbox payload is invalid: {exc}") from exc


def merge_payloads(current: OutboxPayload, update: OutboxPayload) -> OutboxPayload:
    """Field-wise union of two payloads of the same operation; *update* wins."""
    if current.operation != update.operation:
        raise OutboxPayloadError(
            f"Cannot merge {update.operation} payload into {current.operation} payload"
        )
    return load_payload({**dump_payload(current), **dump_payload(update)})


def payload_remote_id(payload: OutboxPayload) -> str | None:
    return getattr(payload, "remote_id", None)


# ---------------------------------------------------------------------------
# Local records
# ---------------------------------------------------------------------------


@dataclass
class CalendarEvent:
    """A locally stored calendar event.

    ``local_id`` never changes. ``remote_id`` stays ``None`` until the first
    successful push. Deletion is a tombstone (``is_deleted``), never a row
    removal, while outbox jobs may reference the record.
    """

    local_id: uuid.UUID
    summary: str
    start_at: datetime
    end_at: datetime
    local_edited_at: datetime
    timezone: str = "UTC"
    event_type: str = DEFAULT_EVENT_TYPE
    description: str = ""
    location: str = ""
    remote_id: str | None = None
    recurrence_rule: str | None = None
    recurring_event_id: str | None = None
    original_start_time: datetime | None = None
    attendees: list[str] = field(default_factory=list)
    organizer_email: str | None = None
    hangout_link: str | None = None
    remote_updated_at: datetime | None = None
    sync_state: SyncState = SyncState.CLEAN
    is_deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_series_master(self) -> bool:
        return bool(self.recurrence_rule) and self.recurring_event_id is None

    @property
    def is_override(self) -> bool:
        return self.recurring_event_id is not None

    @property
    def is_holiday(self) -> bool:
        return self.event_type == HOLIDAY_EVENT_TYPE

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dictionary."""
        return {
            "local_id": str(self.local_id),
            "remote_id": self.remote_id,
            "event_type": self.event_type,
            "summary": self.summary,
            "description": self.description,
            "location": self.location,
            "start_at": self.start_at.isoformat(),
            "end_at": self.end_at.isoformat(),
            "timezone": self.timezone,
            "recurrence_rule": self.recurrence_rule,
            "recurring_event_id": self.recurring_event_id,
            "original_start_time": _isoformat(self.original_start_time),
            "attendees": list(self.attendees),
            "organizer_email": self.organizer_email,
            "hangout_link": self.hangout_link,
            "remote_updated_at": _isoformat(self.remote_updated_at),
            "local_edited_at": self.local_edited_at.isoformat(),
            "sync_state": self.sync_state.value,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CalendarEvent:
        return cls(
            local_id=_parse_uuid(data["local_id"]),
            remote_id=data.get("remote_id"),
            event_type=data.get("event_type") or DEFAULT_EVENT_TYPE,
            summary=data["summary"],
            description=data.get("description") or "",
            location=data.get("location") or "",
            start_at=_parse_datetime(data["start_at"]),
            end_at=_parse_datetime(data["end_at"]),
            timezone=data.get("timezone") or "UTC",
            recurrence_rule=data.get("recurrence_rule"),
            recurring_event_id=data.get("recurring_event_id"),
            original_start_time=_parse_optional_datetime(data.get("original_start_time")),
            attendees=list(_parse_jsonb(data.get("attendees")) or []),
            organizer_email=data.get("organizer_email"),
            hangout_link=data.get("hangout_link"),
            remote_updated_at=_parse_optional_datetime(data.get("remote_updated_at")),
            local_edited_at=_parse_datetime(data["local_edited_at"]),
            sync_state=SyncState(data.get("sync_state") or SyncState.CLEAN),
            is_deleted=bool(data.get("is_deleted", False)),
            created_at=_parse_optional_datetime(data.get("created_at")) or utcnow(),
            updated_at=_parse_optional_datetime(data.get("updated_at")) or utcnow(),
        )

    @classmethod
    def from_row(cls, row: Any) -> CalendarEvent:
        """Reconstruct an event from a database row (asyncpg Record or mapping)."""
        return cls.from_dict(dict(row))


@dataclass
class OutboxJob:
    """One pending outbound mutation.

    Maps 1:1 to the ``outbox_jobs`` table; this is the durable shape that
    must survive process restarts unchanged.
    """

    id: uuid.UUID
    operation: OutboxOperation
    status: OutboxStatus
    payload: OutboxPayload
    next_retry_at: datetime
    attempts: int = 0
    last_error: str | None = None
    event_local_id: uuid.UUID | None = None
    depends_on_outbox_id: uuid.UUID | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.payload.operation != self.operation:
            raise OutboxPayloadError(
                f"Outbox job {self.id} is {self.operation} but carries a "
                f"{self.payload.operation} payload"
            )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dictionary."""
        return {
            "id": str(self.id),
            "operation": self.operation.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "next_retry_at": self.next_retry_at.isoformat(),
            "last_error": self.last_error,
            "event_local_id": str(self.event_local_id) if self.event_local_id else None,
            "payload": dump_payload(self.payload),
            "depends_on_outbox_id": (
                str(self.depends_on_outbox_id) if self.depends_on_outbox_id else None
            ),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OutboxJob:
        """Reconstruct a job from a dictionary (e.g. from ``to_dict()``)."""
        return cls(
            id=_parse_uuid(data["id"]),
            operation=OutboxOperation(data["operation"]),
            status=OutboxStatus(data["status"]),
            attempts=int(data.get("attempts") or 0),
            next_retry_at=_parse_datetime(data["next_retry_at"]),
            last_error=data.get("last_error"),
            event_local_id=_parse_optional_uuid(data.get("event_local_id")),
            payload=load_payload(data["payload"]),
            depends_on_outbox_id=_parse_optional_uuid(data.get("depends_on_outbox_id")),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
        )

    @classmethod
    def from_row(cls, row: Any) -> OutboxJob:
        """Reconstruct a job from a database row (asyncpg Record or mapping)."""
        return cls.from_dict(dict(row))


def default_sync_window(
    now: datetime,
    *,
    past_days: int = 1825,
    future_days: int = 365,
) -> tuple[datetime, datetime]:
    return now - timedelta(days=past_days), now + timedelta(days=future_days)


@dataclass
class SyncSettings:
    """Singleton sync settings row."""

    sync_window_start: datetime
    sync_window_end: datetime
    sync_token: str | None = None
    selected_calendar_id: str | None = None
    selected_calendar_summary: str | None = None
    unbounded_window: bool = False

    @property
    def time_window(self) -> tuple[datetime, datetime] | None:
        """Bounds for a FULL pull, or ``None`` when a full backfill was requested."""
        if self.unbounded_window:
            return None
        return self.sync_window_start, self.sync_window_end

    @classmethod
    def from_row(cls, row: Any) -> SyncSettings:
        return cls(
            sync_window_start=_parse_datetime(row["sync_window_start"]),
            sync_window_end=_parse_datetime(row["sync_window_end"]),
            sync_token=row["sync_token"],
            selected_calendar_id=row["selected_calendar_id"],
            selected_calendar_summary=row["selected_calendar_summary"],
            unbounded_window=bool(row["unbounded_window"]),
        )


# ---------------------------------------------------------------------------
# Remote shapes
# ---------------------------------------------------------------------------


class RemoteEventSnapshot(BaseModel):
    """Provider-neutral view of one remote event (or its deletion)."""

    model_config = ConfigDict(extra="forbid")

    remote_id: str = Field(min_length=1)
    remote_updated_at: datetime
    is_deleted: bool = False
    event_type: str = DEFAULT_EVENT_TYPE
    summary: str = ""
    description: str = ""
    location: str = ""
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str = "UTC"
    recurrence_rule: str | None = None
    recurring_event_id: str | None = None
    original_start_time: datetime | None = None
    attendees: list[str] = Field(default_factory=list)
    organizer_email: str | None = None
    hangout_link: str | None = None

    @field_validator("remote_updated_at", "start_at", "end_at", "original_start_time")
    @classmethod
    def _normalize_instants(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value) if value is not None else None


class PushResult(BaseModel):
    """What the remote reported after applying a push."""

    model_config = ConfigDict(extra="forbid")

    remote_id: str | None = None
    remote_updated_at: datetime | None = None


class SyncPage(BaseModel):
    """One page of a remote pull."""

    model_config = ConfigDict(extra="forbid")

    events: list[RemoteEventSnapshot] = Field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None

    @field_validator("next_page_token", "next_sync_token")
    @classmethod
    def _normalize_tokens(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class RemoteCalendar(BaseModel):
    """A writable calendar on the remote account."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    summary: str
    primary: bool = False
    access_role: Literal["owner", "writer"]


class SyncResult(BaseModel):
    mode: SyncMode
    pulled_events: int = 0
    pushed_outbox_jobs: int = 0
    outbox_remaining: int = 0


class ForcePushResult(BaseModel):
    enqueued_jobs: int = 0
    processed_jobs: int = 0
    skipped_events: int = 0
