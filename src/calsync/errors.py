"""Error hierarchy and failure classification for calendar sync.

Every failure raised while pushing an outbox job is mapped onto one of three
kinds which drive the retry policy of the outbox worker:

- ``RATE_LIMITED``: the remote asked us to slow down (HTTP 429).
- ``PERMANENT``: retrying cannot succeed (a rejected refresh token, forbidden,
  not found, or a local precondition that will never hold).
- ``TRANSIENT``: everything else, including transport errors and 5xx from
  either the Calendar API or the token endpoint.
"""

from __future__ import annotations

import enum
import re

RATE_LIMITED_STATUS_CODE = 429
PERMANENT_STATUS_CODES = frozenset({401, 403, 404})
LAST_ERROR_MAX_LENGTH = 500


class ErrorKind(enum.StrEnum):
    """Failure classes used by the outbox retry policy."""

    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    RATE_LIMITED = "RATE_LIMITED"


class CalendarSyncError(RuntimeError):
    """Base error raised by calendar sync components."""


class CalendarCredentialError(CalendarSyncError):
    """Raised when Google credential JSON is missing or invalid."""


class CalendarTokenRefreshError(CalendarSyncError):
    """Raised when the token endpoint answers a refresh-token exchange with an error.

    ``status_code`` is None when the endpoint answered 2xx with an unusable body.
    Network failures during the exchange raise :class:`CalendarTransportError`.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.status_code is not None and (
            self.status_code == RATE_LIMITED_STATUS_CODE or self.status_code >= 500
        )


class CalendarRequestError(CalendarSyncError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CalendarTransportError(CalendarSyncError):
    """Raised when the HTTP transport fails before a response is received."""


class CalendarSyncTokenExpiredError(CalendarSyncError):
    """Raised when a sync token is expired or invalid; caller should do a full sync."""


class RecurringInstanceNotFoundError(CalendarSyncError):
    """Raised when a single occurrence of a remote series cannot be resolved."""


class OutboxPayloadError(CalendarSyncError):
    """Raised when an outbox payload does not fit its operation."""


class RecurrenceRuleError(ValueError):
    """Raised when an RRULE or split boundary is malformed."""


_PERMANENT_ERROR_TYPES: tuple[type[BaseException], ...] = (
    CalendarCredentialError,
    RecurringInstanceNotFoundError,
    OutboxPayloadError,
    RecurrenceRuleError,
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised during a push onto an :class:`ErrorKind`."""
    if isinstance(exc, CalendarRequestError):
        if exc.status_code == RATE_LIMITED_STATUS_CODE:
            return ErrorKind.RATE_LIMITED
        if exc.status_code in PERMANENT_STATUS_CODES:
            return ErrorKind.PERMANENT
        return ErrorKind.TRANSIENT
    if isinstance(exc, CalendarTokenRefreshError):
        return ErrorKind.TRANSIENT if exc.is_retryable else ErrorKind.PERMANENT
    if isinstance(exc, _PERMANENT_ERROR_TYPES):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


def _redact_credential_values(message: str) -> str:
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", redacted)


def summarize_error(exc: BaseException, *, limit: int = LAST_ERROR_MAX_LENGTH) -> str:
    """Render *exc* as a single redacted line suitable for ``last_error``."""
    raw = str(exc) or type(exc).__name__
    return " ".join(_redact_credential_values(raw).split())[:limit]
