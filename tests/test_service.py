"""Tests for CalendarSyncService wiring and lifecycle."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest

from calsync.config import SyncConfig
from calsync.core.logging import _calendar_context, get_calendar_context
from calsync.models import OutboxOperation, OutboxStatus, RemoteCalendar, SyncMode
from calsync.mutations import EventInput
from calsync.service import CalendarSyncService
from calsync.testing import InMemorySyncStore
from conftest import CALENDAR_ID, T0

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_calendar_context():
    token = _calendar_context.set(None)
    yield
    _calendar_context.reset(token)


@pytest.fixture
def service(store, remote, clock):
    return CalendarSyncService(store, remote, clock=clock)


async def _wait_for(predicate, *, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class TestWiring:
    def test_components_share_configuration(self, store, remote, clock):
        config = SyncConfig(max_attempts=3, force_push_batch_size=10)
        service = CalendarSyncService(store, remote, sync_config=config, clock=clock)

        assert service.worker._max_attempts == 3
        assert service.engine._force_push_batch_size == 10

    async def test_enqueue_requests_a_flush(self, service, store, make_event):
        event = make_event()
        await store.upsert_event(event)

        job_id = await service.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)

        assert service.worker._flush_event.is_set()
        assert await service.get_outbox_count() == 1
        [job] = await service.list_outbox_jobs()
        assert job.id == job_id

        assert await service.process_outbox_now() == 1
        assert store.jobs[job_id].status == OutboxStatus.DONE


class TestLifecycle:
    async def test_start_syncs_immediately_and_stop_shuts_down(self, service, remote):
        await service.start()
        try:
            await _wait_for(lambda: remote.pull_calls)
        finally:
            await service.stop()

        assert remote.pull_calls[0]["calendar_id"] == CALENDAR_ID
        assert remote.is_shut_down
        assert get_calendar_context() == CALENDAR_ID

    async def test_start_selects_default_calendar(self, remote, clock):
        store = InMemorySyncStore(clock=clock)
        service = CalendarSyncService(store, remote, clock=clock)

        await service.start(default_calendar_id="team@example.com")
        await service.stop()

        assert store.settings.selected_calendar_id == "team@example.com"

    async def test_stop_without_start(self, service, remote):
        await service.stop()
        assert remote.is_shut_down

    async def test_stop_without_remote(self, store, clock):
        service = CalendarSyncService(store, None, clock=clock)
        await service.stop()


class TestCalendarSelection:
    async def test_default_calendar_applies_only_when_unset(self, remote, clock):
        store = InMemorySyncStore(clock=clock)
        service = CalendarSyncService(store, remote, clock=clock)

        first = await service.select_default_calendar("team@example.com")
        second = await service.select_default_calendar("other@example.com")

        assert first.selected_calendar_id == "team@example.com"
        assert second.selected_calendar_id == "team@example.com"

    async def test_missing_default_leaves_settings_alone(self, remote, clock):
        service = CalendarSyncService(InMemorySyncStore(clock=clock), remote, clock=clock)
        settings = await service.select_default_calendar(None)
        assert settings.selected_calendar_id is None

    async def test_switching_calendar_clears_local_state(self, service, store, make_event):
        event = make_event()
        await store.upsert_event(event)
        await service.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        await store.set_sync_token("token-1")

        changed = await service.set_selected_calendar("team@example.com", "Team")

        assert changed
        assert store.events == {}
        assert store.jobs == {}
        settings = await service.get_settings()
        assert settings.sync_token is None
        assert settings.selected_calendar_summary == "Team"
        assert get_calendar_context() == "team@example.com"

    async def test_reselecting_same_calendar_keeps_state(self, service, store, make_event):
        await store.upsert_event(make_event())

        changed = await service.set_selected_calendar(CALENDAR_ID, "Work (renamed)")

        assert not changed
        assert len(store.events) == 1
        assert (await service.get_settings()).selected_calendar_summary == "Work (renamed)"

    async def test_list_calendars(self, service, remote):
        remote.calendars = [
            RemoteCalendar(id=CALENDAR_ID, summary="Work", primary=True, access_role="owner")
        ]
        assert [entry.id for entry in await service.list_calendars()] == [CALENDAR_ID]

    async def test_list_calendars_without_remote(self, store, clock):
        service = CalendarSyncService(store, None, clock=clock)
        assert await service.list_calendars() == []


class TestSyncSurface:
    async def test_run_sync_now(self, service):
        result = await service.run_sync_now()
        assert result.mode == SyncMode.FULL

    async def test_run_sync_without_remote_is_skipped(self, store, clock):
        service = CalendarSyncService(store, None, clock=clock)
        result = await service.run_sync_now()
        assert result.mode == SyncMode.SKIPPED

    async def test_request_full_backfill(self, service, store):
        await store.set_sync_token("token-1")

        await service.request_full_backfill()

        settings = await service.get_settings()
        assert settings.unbounded_window
        assert settings.sync_token is None

    async def test_force_push_all(self, service, store, make_event, remote):
        await store.upsert_event(make_event())

        result = await service.force_push_all()

        assert result.enqueued_jobs == 1
        assert result.processed_jobs == 1
        assert [op for op, _, _ in remote.pushes] == [OutboxOperation.CREATE]


class TestMutationSurface:
    async def test_save_and_delete(self, service, store):
        start = T0 + timedelta(days=2)
        saved = await service.save_event(
            EventInput(summary="Review", start_at=start, end_at=start + timedelta(hours=1))
        )

        assert store.events[saved.local_id].summary == "Review"
        [job] = await service.list_outbox_jobs()
        assert job.operation == OutboxOperation.CREATE

        assert await service.delete_event(saved.local_id)
        assert store.events[saved.local_id].is_deleted

    async def test_delete_unknown_event(self, service):
        assert not await service.delete_event(uuid.uuid4())
