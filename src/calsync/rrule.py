"""RRULE helpers used when a recurring series is split "this and following".

Rules are handled as ordered ``KEY=VALUE`` segments. Serialisation emits the
well-known keys in a fixed order followed by any remaining keys sorted by
name, so rewritten rules are stable and comparable.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta

from calsync.errors import RecurrenceRuleError

RRULE_PREFIX = "RRULE:"
RRULE_KEY_ORDER = ("FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "BYSETPOS", "UNTIL", "COUNT", "WKST")


def normalize_rule(rule: str) -> str:
    """Strip surrounding whitespace and an optional ``RRULE:`` prefix."""
    trimmed = rule.strip()
    if trimmed.upper().startswith(RRULE_PREFIX):
        return trimmed[len(RRULE_PREFIX) :]
    return trimmed


def to_remote_recurrence(rule: str) -> str:
    """Return *rule* with the ``RRULE:`` prefix Google expects."""
    return f"{RRULE_PREFIX}{normalize_rule(rule)}"


def parse_segments(rule: str) -> dict[str, str]:
    """Parse an RRULE into an insertion-ordered ``{KEY: value}`` mapping.

    Keys are upper-cased. Tokens without a key or value are ignored.
    """
    segments: dict[str, str] = {}
    normalized = normalize_rule(rule)
    if not normalized:
        return segments

    for token in normalized.split(";"):
        key, _, value = token.partition("=")
        key = key.strip().upper()
        value = value.strip()
        if not key or not value:
            continue
        segments[key] = value
    return segments


def serialize_segments(segments: Mapping[str, str]) -> str:
    ordered = [f"{key}={segments[key]}" for key in RRULE_KEY_ORDER if segments.get(key)]
    remaining = sorted(
        (key, value) for key, value in segments.items() if key not in RRULE_KEY_ORDER and value
    )
    ordered.extend(f"{key}={value}" for key, value in remaining)
    return ";".join(ordered)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_until(value: datetime) -> str:
    """Format an instant as an RRULE ``UNTIL`` value (``YYYYMMDDTHHMMSSZ``)."""
    return _as_utc(value).strftime("%Y%m%dT%H%M%SZ")


def _require_frequency(rule: str, segments: Mapping[str, str]) -> None:
    if not segments.get("FREQ"):
        raise RecurrenceRuleError(f"RRULE missing FREQ: {rule}")


def with_until(rule: str, until: datetime) -> str:
    """End *rule* at *until*, dropping any ``COUNT`` limit."""
    segments = parse_segments(rule)
    _require_frequency(rule, segments)
    segments.pop("COUNT", None)
    segments["UNTIL"] = format_until(until)
    return serialize_segments(segments)


def without_end(rule: str) -> str:
    """Remove both ``UNTIL`` and ``COUNT`` so the series runs open-ended."""
    segments = parse_segments(rule)
    segments.pop("UNTIL", None)
    segments.pop("COUNT", None)
    return serialize_segments(segments)


def split_for_future(rule: str, boundary: datetime) -> str:
    """Truncate *rule* so its last occurrence is strictly before *boundary*.

    The rule ends one second before the boundary and loses any occurrence
    count. The continuing half of the series is the caller's to create.
    """
    if not isinstance(boundary, datetime):
        raise RecurrenceRuleError(f"Invalid split boundary: {boundary!r}")
    return with_until(rule, _as_utc(boundary) - timedelta(seconds=1))
