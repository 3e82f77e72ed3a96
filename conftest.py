"""Root conftest: shared fixtures for the calsync test suite.

Unit tests run against ``InMemorySyncStore`` and ``ScriptedRemote`` driven by
a ``ManualClock``. Integration tests get a fresh, migrated PostgreSQL
database per usage from a session-scoped testcontainer.
"""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from calsync.models import CalendarEvent, SyncState
from calsync.testing import InMemorySyncStore, ScriptedRemote

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None
logger = logging.getLogger(__name__)

CALENDAR_ID = "work@example.com"
T0 = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)

_TESTCONTAINER_STOP_RETRY_ATTEMPTS = 4
_TESTCONTAINER_STOP_BASE_DELAY_SECONDS = 0.1
_TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS = (
    "did not receive an exit event",
    "tried to kill container",
    "no such container",
    "removal of container",
    "is already in progress",
    "is dead or marked for removal",
)


# ---------------------------------------------------------------------------
# Unit-test doubles
# ---------------------------------------------------------------------------


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
async def store(clock: ManualClock) -> InMemorySyncStore:
    """In-memory store with ``CALENDAR_ID`` already selected."""
    store = InMemorySyncStore(clock=clock)
    await store.set_selected_calendar(CALENDAR_ID, "Work")
    return store


@pytest.fixture
def remote(clock: ManualClock) -> ScriptedRemote:
    return ScriptedRemote(clock=clock)


@pytest.fixture
def make_event(clock: ManualClock) -> Callable[..., CalendarEvent]:
    """Factory for local events starting one day after the clock."""

    def _make(**overrides: Any) -> CalendarEvent:
        start_at = overrides.pop("start_at", clock() + timedelta(days=1))
        fields: dict[str, Any] = {
            "local_id": uuid.uuid4(),
            "summary": "Planning",
            "start_at": start_at,
            "end_at": start_at + timedelta(hours=1),
            "local_edited_at": clock(),
            "sync_state": SyncState.PENDING,
        }
        fields.update(overrides)
        return CalendarEvent(**fields)

    return _make


# ---------------------------------------------------------------------------
# Testcontainers
# ---------------------------------------------------------------------------


def _iter_exception_messages(exc: BaseException) -> Iterator[str]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))

        message = str(current).strip()
        if message:
            yield message.lower()

        explanation = getattr(current, "explanation", None)
        if explanation:
            if isinstance(explanation, bytes):
                explanation_text = explanation.decode("utf-8", errors="replace")
            else:
                explanation_text = str(explanation)
            explanation_text = explanation_text.strip()
            if explanation_text:
                yield explanation_text.lower()

        if current.__cause__ is not None:
            current = current.__cause__
            continue

        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue

        current = None


def _is_transient_docker_teardown_error(exc: BaseException) -> bool:
    return any(
        marker in message
        for message in _iter_exception_messages(exc)
        for marker in _TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS
    )


def _retry_testcontainer_stop(
    stop_call: Callable[[], None],
    *,
    max_attempts: int = _TESTCONTAINER_STOP_RETRY_ATTEMPTS,
    base_delay_seconds: float = _TESTCONTAINER_STOP_BASE_DELAY_SECONDS,
) -> None:
    """Retry transient Docker teardown races with bounded backoff."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    delay = base_delay_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            stop_call()
            return
        except Exception as exc:
            if attempt >= max_attempts or not _is_transient_docker_teardown_error(exc):
                raise
            logger.warning(
                "Transient Docker API teardown race (attempt %s/%s): %s",
                attempt,
                max_attempts,
                exc,
            )
            time.sleep(delay)
            delay *= 2


def _patch_testcontainers_stop_with_retry() -> None:
    """Patch testcontainers stop() to tolerate transient Docker daemon races."""
    try:
        from testcontainers.core.container import DockerContainer
    except Exception:
        return

    if getattr(DockerContainer.stop, "_calsync_retry_patch", False):
        return

    original_stop = DockerContainer.stop

    def _stop_with_retry(self: Any, force: bool = True, delete_volume: bool = True) -> None:
        _retry_testcontainer_stop(
            lambda: original_stop(self, force=force, delete_volume=delete_volume)
        )

    setattr(_stop_with_retry, "_calsync_retry_patch", True)
    DockerContainer.stop = _stop_with_retry


_patch_testcontainers_stop_with_retry()


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``provisioned_postgres_pool`` usage provisions a new database with a
    random name, so rows never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, migrated database and asyncpg pool for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from calsync.config import DatabaseConfig
    from calsync.db import SyncDatabase
    from calsync.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        config = DatabaseConfig(
            name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        db = SyncDatabase(config)
        await db.provision()
        await run_migrations(config.url)
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
