"""Remote calendar contract and the Google Calendar v3 implementation.

This module defines:
- ``CalendarRemote``: the remote-service interface consumed by the outbox
  worker and the sync engine
- ``GoogleCalendarRemote``: httpx client with OAuth refresh-token handling
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from calsync.errors import (
    CalendarCredentialError,
    CalendarRequestError,
    CalendarSyncError,
    CalendarSyncTokenExpiredError,
    CalendarTokenRefreshError,
    CalendarTransportError,
    OutboxPayloadError,
    RecurrenceRuleError,
    RecurringInstanceNotFoundError,
)
from calsync.models import (
    DEFAULT_EVENT_TYPE,
    HOLIDAY_EVENT_TYPE,
    CalendarEvent,
    OutboxOperation,
    OutboxPayload,
    PushResult,
    RecurFuturePayload,
    RecurThisPayload,
    RemoteCalendar,
    RemoteEventSnapshot,
    SyncPage,
    payload_remote_id,
    utcnow,
)
from calsync.rrule import RRULE_PREFIX, normalize_rule, split_for_future, to_remote_recurrence

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
EVENT_TYPE_PRIVATE_KEY = "calsyncEventType"
SYNC_PAGE_SIZE = 2500
LIST_PAGE_SIZE = 250
INSTANCE_MATCH_TOLERANCE = timedelta(seconds=1)
INSTANCE_SEARCH_RADIUS = timedelta(days=1)
WRITABLE_ACCESS_ROLES = ("owner", "writer")


class CalendarRemote(abc.ABC):
    """Remote calendar service consumed by the outbox worker and sync engine.

    Every failing call raises a :class:`~calsync.errors.CalendarSyncError`
    subclass (or ``RecurrenceRuleError``) that ``classify_error`` understands.
    """

    @abc.abstractmethod
    async def is_authenticated(self) -> bool:
        """Return whether the remote currently holds usable credentials."""
        ...

    @abc.abstractmethod
    async def fetch_snapshot(
        self, *, calendar_id: str, remote_id: str
    ) -> RemoteEventSnapshot | None:
        """Fetch the current remote state of one event, or ``None`` if unknown."""
        ...

    @abc.abstractmethod
    async def push_change(
        self,
        *,
        calendar_id: str,
        operation: OutboxOperation,
        event: CalendarEvent | None,
        payload: OutboxPayload,
    ) -> PushResult:
        """Apply one outbox job to the remote calendar."""
        ...

    @abc.abstractmethod
    async def pull_changes(
        self,
        *,
        calendar_id: str,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        page_token: str | None = None,
    ) -> SyncPage:
        """Fetch one page of changes.

        Raises:
            CalendarSyncTokenExpiredError: When *sync_token* is no longer
                valid and the caller must fall back to a full pull.
        """
        ...

    @abc.abstractmethod
    async def list_holidays(
        self, *, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[RemoteEventSnapshot]: ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[RemoteCalendar]:
        """Return calendars the account can write to."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release remote resources."""
        ...


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise CalendarCredentialError("Credential JSON must decode to a JSON object")

        credential_data = {
            key: _extract_google_credential_value(payload, key)
            for key in ("client_id", "client_secret", "refresh_token")
        }

        missing = sorted(key for key, value in credential_data.items() if value is None)
        if missing:
            raise CalendarCredentialError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )

        invalid = sorted(
            key
            for key, value in credential_data.items()
            if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            raise CalendarCredentialError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(invalid)}"
            )

        return cls(**credential_data)

    @classmethod
    def from_env(cls, env_var: str) -> GoogleOAuthCredentials:
        raw_value = os.environ.get(env_var)
        if raw_value is None or not raw_value.strip():
            raise CalendarCredentialError(f"Environment variable {env_var} is not set")
        return cls.from_json(raw_value)


class _GoogleOAuthClient:
    """Refresh-token OAuth helper with access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()
        self._rejected = False

    @property
    def is_rejected(self) -> bool:
        """True once the token endpoint has refused the refresh token."""
        return self._rejected

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTransportError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            error = CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}",
                status_code=response.status_code,
            )
            if not error.is_retryable:
                self._rejected = True
            raise error

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in")
        # Refresh a minute early.
        refresh_ttl_seconds = max(_coerce_expires_in_seconds(expires_in_raw) - 60, 30)

        self._rejected = False
        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


def _extract_google_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise CalendarSyncError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_rfc3339_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return _parse_google_datetime(value)
    except CalendarSyncError:
        return None


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_event_boundary(
    payload: Any,
    *,
    fallback_timezone: str,
) -> tuple[datetime, str] | None:
    """Parse a ``start``/``end``/``originalStartTime`` object (timed or all-day)."""
    if not isinstance(payload, dict):
        return None

    timezone = _normalize_optional_text(payload.get("timeZone")) or fallback_timezone

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), timezone

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value)
        except ValueError as exc:
            raise CalendarSyncError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        local_midnight = datetime(
            parsed_date.year,
            parsed_date.month,
            parsed_date.day,
            tzinfo=_coerce_zoneinfo(timezone),
        )
        return local_midnight, timezone

    return None


def _extract_google_recurrence_rule(payload: Any) -> str | None:
    if not isinstance(payload, list):
        return None
    for entry in payload:
        if isinstance(entry, str) and entry.strip().upper().startswith(RRULE_PREFIX):
            return normalize_rule(entry) or None
    return None


def _extract_event_type(payload: Any) -> str:
    if not isinstance(payload, dict):
        return DEFAULT_EVENT_TYPE
    private_payload = payload.get("private")
    if not isinstance(private_payload, dict):
        return DEFAULT_EVENT_TYPE
    event_type = _normalize_optional_text(private_payload.get(EVENT_TYPE_PRIVATE_KEY))
    return event_type or DEFAULT_EVENT_TYPE


def _extract_attendee_emails(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    emails: list[str] = []
    for entry in payload:
        email = entry.get("email") if isinstance(entry, dict) else entry
        normalized = _normalize_optional_text(email)
        if normalized:
            emails.append(normalized)
    return emails


def _extract_google_organizer(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    return _normalize_optional_text(payload.get("email"))


def google_event_to_snapshot(
    payload: dict[str, Any],
    *,
    fallback_timezone: str = "UTC",
    inherited_rule: str | None = None,
) -> RemoteEventSnapshot | None:
    """Convert a Google event resource into a :class:`RemoteEventSnapshot`.

    Cancelled events become deletion snapshots. Returns ``None`` for
    resources without an id, or live events without start/end bounds.
    """
    remote_id = _normalize_optional_text(payload.get("id"))
    if remote_id is None:
        return None

    remote_updated_at = _parse_google_rfc3339_optional(payload.get("updated")) or utcnow()
    recurring_event_id = _normalize_optional_text(payload.get("recurringEventId"))
    original_start = _parse_google_event_boundary(
        payload.get("originalStartTime"), fallback_timezone=fallback_timezone
    )
    original_start_time = original_start[0] if original_start else None

    status = _normalize_optional_text(payload.get("status"))
    if status is not None and status.lower() == "cancelled":
        return RemoteEventSnapshot(
            remote_id=remote_id,
            remote_updated_at=remote_updated_at,
            is_deleted=True,
            recurring_event_id=recurring_event_id,
            original_start_time=original_start_time,
        )

    start = _parse_google_event_boundary(payload.get("start"), fallback_timezone=fallback_timezone)
    end = _parse_google_event_boundary(payload.get("end"), fallback_timezone=fallback_timezone)
    if start is None or end is None:
        logger.debug("Google event %s has no start/end; ignoring", remote_id)
        return None

    recurrence_rule = _extract_google_recurrence_rule(payload.get("recurrence"))
    if recurrence_rule is None and recurring_event_id is not None:
        recurrence_rule = inherited_rule

    return RemoteEventSnapshot(
        remote_id=remote_id,
        remote_updated_at=remote_updated_at,
        event_type=_extract_event_type(payload.get("extendedProperties")),
        summary=_normalize_optional_text(payload.get("summary")) or "",
        description=_normalize_optional_text(payload.get("description")) or "",
        location=_normalize_optional_text(payload.get("location")) or "",
        start_at=start[0],
        end_at=end[0],
        timezone=start[1],
        recurrence_rule=recurrence_rule,
        recurring_event_id=recurring_event_id,
        original_start_time=original_start_time,
        attendees=_extract_attendee_emails(payload.get("attendees")),
        organizer_email=_extract_google_organizer(payload.get("organizer")),
        hangout_link=_normalize_optional_text(payload.get("hangoutLink")),
    )


def build_google_event_body(
    event: CalendarEvent, *, recurrence_rule: str | None = None
) -> dict[str, Any]:
    """Build the full insert/patch body for a local event."""
    body: dict[str, Any] = {
        "summary": event.summary,
        "description": event.description,
        "location": event.location,
        "start": {"dateTime": _google_rfc3339(event.start_at), "timeZone": event.timezone},
        "end": {"dateTime": _google_rfc3339(event.end_at), "timeZone": event.timezone},
        "attendees": [{"email": email} for email in event.attendees],
        "extendedProperties": {"private": {EVENT_TYPE_PRIVATE_KEY: event.event_type}},
    }
    if recurrence_rule:
        body["recurrence"] = [to_remote_recurrence(recurrence_rule)]
    return body


def _push_result(payload: dict[str, Any]) -> PushResult:
    return PushResult(
        remote_id=_normalize_optional_text(payload.get("id")),
        remote_updated_at=_parse_google_rfc3339_optional(payload.get("updated")),
    )


# ---------------------------------------------------------------------------
# Google implementation
# ---------------------------------------------------------------------------


class GoogleCalendarRemote(CalendarRemote):
    """Google Calendar v3 REST client with OAuth refresh-token authentication."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._oauth = _GoogleOAuthClient(credentials, self._http_client)

    async def is_authenticated(self) -> bool:
        # Local check only; the first real request performs the refresh.
        return not self._oauth.is_rejected

    # -- transport --------------------------------------------------------

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method, path=path, params=params, json_body=json_body
        )
        return self._decode_response(response)

    def _decode_response(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarSyncError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarSyncError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )
        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )
        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTransportError(f"Google Calendar request failed: {exc}") from exc

    @staticmethod
    def _events_path(calendar_id: str, remote_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if remote_id is not None:
            path = f"{path}/{quote(remote_id, safe='')}"
        return path

    # -- reads ------------------------------------------------------------

    async def _get_event_json(self, calendar_id: str, remote_id: str) -> dict[str, Any] | None:
        response = await self._request_with_bearer(
            method="GET", path=self._events_path(calendar_id, remote_id)
        )
        if response.status_code == 404:
            return None
        return self._decode_response(response)

    async def fetch_snapshot(
        self, *, calendar_id: str, remote_id: str
    ) -> RemoteEventSnapshot | None:
        payload = await self._get_event_json(calendar_id, remote_id)
        if payload is None:
            return None
        return google_event_to_snapshot(payload)

    async def pull_changes(
        self,
        *,
        calendar_id: str,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        page_token: str | None = None,
    ) -> SyncPage:
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": True,
            "maxResults": SYNC_PAGE_SIZE,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            if time_min is not None:
                params["timeMin"] = _google_rfc3339(time_min)
            if time_max is not None:
                params["timeMax"] = _google_rfc3339(time_max)
        if page_token is not None:
            params["pageToken"] = page_token

        response = await self._request_with_bearer(
            method="GET", path=self._events_path(calendar_id), params=params
        )
        if response.status_code == 410 and sync_token is not None:
            raise CalendarSyncTokenExpiredError(
                f"Sync token expired for calendar '{calendar_id}'; full re-sync required"
            )
        payload = self._decode_response(response)

        master_rules: dict[str, str | None] = {}
        events: list[RemoteEventSnapshot] = []
        for item in payload.get("items") or []:
            if not isinstance(item, dict):
                continue
            inherited_rule = await self._inherited_rule(calendar_id, item, master_rules)
            snapshot = google_event_to_snapshot(item, inherited_rule=inherited_rule)
            if snapshot is not None:
                events.append(snapshot)

        return SyncPage(
            events=events,
            next_page_token=payload.get("nextPageToken"),
            next_sync_token=payload.get("nextSyncToken"),
        )

    async def _inherited_rule(
        self,
        calendar_id: str,
        item: dict[str, Any],
        master_rules: dict[str, str | None],
    ) -> str | None:
        """Look up the series RRULE for an expanded instance, once per master."""
        series_id = _normalize_optional_text(item.get("recurringEventId"))
        if series_id is None or item.get("recurrence"):
            return None
        status = _normalize_optional_text(item.get("status"))
        if status is not None and status.lower() == "cancelled":
            return None

        if series_id not in master_rules:
            master = await self._get_event_json(calendar_id, series_id)
            master_rules[series_id] = (
                _extract_google_recurrence_rule(master.get("recurrence")) if master else None
            )
        return master_rules[series_id]

    async def list_holidays(
        self, *, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[RemoteEventSnapshot]:
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": SYNC_PAGE_SIZE,
            "timeMin": _google_rfc3339(time_min),
            "timeMax": _google_rfc3339(time_max),
        }
        holidays: list[RemoteEventSnapshot] = []
        while True:
            payload = await self._request_google_json(
                "GET", self._events_path(calendar_id), params=params
            )
            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                snapshot = google_event_to_snapshot(item)
                if snapshot is not None and not snapshot.is_deleted:
                    holidays.append(snapshot.model_copy(update={"event_type": HOLIDAY_EVENT_TYPE}))

            next_page_token = payload.get("nextPageToken")
            if not next_page_token:
                return holidays
            params["pageToken"] = next_page_token

    async def list_calendars(self) -> list[RemoteCalendar]:
        params: dict[str, Any] = {"minAccessRole": "writer", "maxResults": LIST_PAGE_SIZE}
        calendars: list[RemoteCalendar] = []
        while True:
            payload = await self._request_google_json(
                "GET", "/users/me/calendarList", params=params
            )
            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                calendar_id = _normalize_optional_text(item.get("id"))
                summary = _normalize_optional_text(item.get("summary"))
                access_role = item.get("accessRole")
                if not calendar_id or not summary or access_role not in WRITABLE_ACCESS_ROLES:
                    continue
                calendars.append(
                    RemoteCalendar(
                        id=calendar_id,
                        summary=summary,
                        primary=item.get("primary") is True,
                        access_role=access_role,
                    )
                )

            next_page_token = payload.get("nextPageToken")
            if not next_page_token:
                break
            params["pageToken"] = next_page_token

        calendars.sort(key=lambda calendar: (not calendar.primary, calendar.summary.casefold()))
        return calendars

    # -- writes -----------------------------------------------------------

    async def push_change(
        self,
        *,
        calendar_id: str,
        operation: OutboxOperation,
        event: CalendarEvent | None,
        payload: OutboxPayload,
    ) -> PushResult:
        params = {"sendUpdates": payload.send_updates.value}
        remote_id = payload_remote_id(payload) or (event.remote_id if event else None)

        if operation == OutboxOperation.DELETE:
            if remote_id is None:
                return PushResult()
            await self._delete_event(calendar_id, remote_id, params)
            return PushResult(remote_id=remote_id, remote_updated_at=utcnow())

        if operation == OutboxOperation.RECUR_FUTURE:
            if remote_id is None:
                return PushResult()
            assert isinstance(payload, RecurFuturePayload)
            master = await self._get_event_json(calendar_id, remote_id)
            if master is None:
                raise CalendarRequestError(
                    status_code=404, message=f"Recurring series {remote_id} not found"
                )
            rule = _extract_google_recurrence_rule(master.get("recurrence"))
            if rule is None:
                raise RecurrenceRuleError(f"Remote series {remote_id} has no RRULE to split")
            truncated = split_for_future(rule, payload.split_boundary)
            response = await self._request_google_json(
                "PATCH",
                self._events_path(calendar_id, remote_id),
                params=params,
                json_body={"recurrence": [to_remote_recurrence(truncated)]},
            )
            return _push_result(response)

        if event is None:
            raise OutboxPayloadError(f"{operation} requires a local event")

        if operation == OutboxOperation.RECUR_THIS and remote_id is None:
            assert isinstance(payload, RecurThisPayload)
            remote_id = await self._resolve_instance_id(
                calendar_id,
                payload.recurring_event_id or event.recurring_event_id,
                payload.original_start_time or event.original_start_time,
            )

        recurrence_rule = event.recurrence_rule if event.is_series_master else None
        if operation == OutboxOperation.RECUR_ALL and remote_id and not recurrence_rule:
            master = await self._get_event_json(calendar_id, remote_id)
            if master is not None:
                recurrence_rule = _extract_google_recurrence_rule(master.get("recurrence"))

        body = build_google_event_body(event, recurrence_rule=recurrence_rule)
        if operation == OutboxOperation.CREATE or remote_id is None:
            response = await self._request_google_json(
                "POST", self._events_path(calendar_id), params=params, json_body=body
            )
        else:
            response = await self._request_google_json(
                "PATCH", self._events_path(calendar_id, remote_id), params=params, json_body=body
            )
        return _push_result(response)

    async def _delete_event(
        self, calendar_id: str, remote_id: str, params: dict[str, Any]
    ) -> None:
        response = await self._request_with_bearer(
            method="DELETE", path=self._events_path(calendar_id, remote_id), params=params
        )
        # Already gone remotely.
        if response.status_code in (404, 410):
            logger.debug("Remote event %s already deleted", remote_id)
            return
        self._decode_response(response)

    async def _resolve_instance_id(
        self,
        calendar_id: str,
        series_id: str | None,
        original_start_time: datetime | None,
    ) -> str:
        """Find the remote id of the occurrence of *series_id* at *original_start_time*."""
        if series_id is None or original_start_time is None:
            raise RecurringInstanceNotFoundError(
                "Cannot resolve a recurring instance without series id and original start"
            )

        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(original_start_time - INSTANCE_SEARCH_RADIUS),
            "timeMax": _google_rfc3339(original_start_time + INSTANCE_SEARCH_RADIUS),
            "showDeleted": False,
            "maxResults": LIST_PAGE_SIZE,
        }
        while True:
            payload = await self._request_google_json(
                "GET", f"{self._events_path(calendar_id, series_id)}/instances", params=params
            )
            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                boundary = _parse_google_event_boundary(
                    item.get("originalStartTime"), fallback_timezone="UTC"
                )
                instance_id = _normalize_optional_text(item.get("id"))
                if boundary is None or instance_id is None:
                    continue
                if abs(boundary[0] - original_start_time) <= INSTANCE_MATCH_TOLERANCE:
                    return instance_id

            next_page_token = payload.get("nextPageToken")
            if not next_page_token:
                break
            params["pageToken"] = next_page_token

        raise RecurringInstanceNotFoundError(
            f"No occurrence of series {series_id} starts at {original_start_time.isoformat()}"
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
