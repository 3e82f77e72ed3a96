"""Tests for the outbox queue, the worker drain loop, and the cancellation cascade."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import httpx
import pytest

from calsync.errors import CalendarRequestError, CalendarTransportError
from calsync.google import GoogleCalendarRemote, GoogleOAuthCredentials
from calsync.models import (
    OutboxOperation,
    OutboxStatus,
    RemoteEventSnapshot,
    SendUpdates,
    SyncState,
)
from calsync.outbox import (
    BACKOFF_LADDER_SECONDS,
    REASON_ORPHANED,
    REASON_REMOTE_NEWER,
    REASON_STUCK,
    REASON_USER,
    OutboxQueue,
    OutboxWorker,
    backoff_delay,
    dependency_cancelled_reason,
)
from calsync.testing import ScriptedRemote

pytestmark = pytest.mark.unit


@pytest.fixture
def worker(store, remote, clock):
    return OutboxWorker(store, remote, rand=lambda: 0.0, clock=clock)


@pytest.fixture
def queue(store, worker, clock):
    return OutboxQueue(store, on_enqueued=worker.request_flush, clock=clock)


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    def test_ladder_without_jitter(self):
        delays = [backoff_delay(n, rand=lambda: 0.0) for n in range(1, 7)]
        assert [d.total_seconds() for d in delays] == [60, 300, 900, 3600, 3600, 3600]

    def test_jitter_adds_at_most_twenty_percent(self):
        for attempts, base in enumerate(BACKOFF_LADDER_SECONDS, start=1):
            assert backoff_delay(attempts, rand=lambda: 1.0).total_seconds() == pytest.approx(
                base * 1.2
            )

    def test_non_decreasing_across_ladder(self):
        delays = [backoff_delay(n, rand=lambda: 0.5) for n in range(1, 6)]
        assert delays == sorted(delays)


# ---------------------------------------------------------------------------
# Enqueue & coalescing
# ---------------------------------------------------------------------------


class TestEnqueue:
    async def test_enqueue_marks_event_pending_and_requests_flush(self, store, make_event, clock):
        flushes = []
        queue = OutboxQueue(store, on_enqueued=lambda: flushes.append(True), clock=clock)
        event = make_event(remote_id="evt-1", sync_state=SyncState.CLEAN)
        await store.upsert_event(event)

        job_id = await queue.enqueue(
            OutboxOperation.PATCH, event_local_id=event.local_id, payload={"remote_id": "evt-1"}
        )

        job = await store.get_job(job_id)
        assert job.status == OutboxStatus.QUEUED
        assert job.next_retry_at == clock()
        assert (await store.get_event(event.local_id)).sync_state == SyncState.PENDING
        assert flushes == [True]

    async def test_patches_coalesce_into_one_job(self, store, queue, make_event):
        event = make_event(remote_id="evt-1")
        await store.upsert_event(event)

        first = await queue.enqueue(
            OutboxOperation.PATCH, event_local_id=event.local_id, payload={"remote_id": "evt-1"}
        )
        second = await queue.enqueue(
            OutboxOperation.PATCH,
            event_local_id=event.local_id,
            payload={"send_updates": SendUpdates.ALL},
        )

        assert first == second
        active = await store.list_active_jobs()
        assert len(active) == 1
        assert active[0].payload.remote_id == "evt-1"
        assert active[0].payload.send_updates is SendUpdates.ALL

    async def test_coalescing_requeues_failed_job(self, store, queue, make_event, clock):
        event = make_event(remote_id="evt-1")
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.PATCH, event_local_id=event.local_id)
        await store.mark_job_failed(
            job_id,
            attempts=3,
            next_retry_at=clock() + timedelta(hours=1),
            last_error="backend error",
        )

        clock.advance(minutes=1)
        again = await queue.enqueue(OutboxOperation.PATCH, event_local_id=event.local_id)

        job = await store.get_job(again)
        assert again == job_id
        assert job.status == OutboxStatus.QUEUED
        assert job.next_retry_at == clock()
        assert job.last_error is None
        assert job.attempts == 3

    async def test_other_operations_never_coalesce(self, store, queue, make_event):
        event = make_event()
        await store.upsert_event(event)
        await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        await queue.enqueue(OutboxOperation.RECUR_ALL, event_local_id=event.local_id)
        assert await queue.get_outbox_count() == 2

    async def test_list_outbox_jobs_clamps_limit(self, store, queue, worker, make_event):
        for _ in range(3):
            event = make_event()
            await store.upsert_event(event)
            await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)

        assert len(await queue.list_outbox_jobs(limit=0)) == 1
        assert len(await queue.list_outbox_jobs(limit=500)) == 3

        await worker.process_outbox_now()
        assert await queue.list_outbox_jobs() == []
        completed = await queue.list_outbox_jobs(include_completed=True)
        assert {job.status for job in completed} == {OutboxStatus.DONE}


# ---------------------------------------------------------------------------
# Draining
# ---------------------------------------------------------------------------


class TestProcessOutbox:
    async def test_create_end_to_end(self, store, queue, worker, remote, make_event, clock):
        event = make_event()
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)

        assert await worker.process_outbox_now() == 1

        job = await store.get_job(job_id)
        stored = await store.get_event(event.local_id)
        assert job.status == OutboxStatus.DONE
        assert stored.sync_state == SyncState.CLEAN
        assert stored.remote_id == "remote-1"
        assert stored.remote_updated_at == clock()
        assert remote.events["remote-1"].summary == "Planning"

    async def test_skips_without_remote_or_calendar(self, store, make_event, clock):
        event = make_event()
        await store.upsert_event(event)
        await OutboxQueue(store, clock=clock).enqueue(
            OutboxOperation.CREATE, event_local_id=event.local_id
        )

        assert await OutboxWorker(store, None, clock=clock).process_outbox_now() == 0
        assert await store.count_active_jobs() == 1

    async def test_dependency_blocks_until_done(
        self, store, queue, worker, remote, make_event, clock
    ):
        first, second = make_event(), make_event()
        await store.upsert_event(first)
        await store.upsert_event(second)
        parent = await queue.enqueue(OutboxOperation.CREATE, event_local_id=first.local_id)
        child = await queue.enqueue(
            OutboxOperation.CREATE, event_local_id=second.local_id, depends_on=parent
        )
        remote.push_errors.append(CalendarRequestError(status_code=503, message="backend"))

        assert await worker.process_outbox_now() == 1
        assert (await store.get_job(parent)).status == OutboxStatus.FAILED
        assert (await store.get_job(child)).status == OutboxStatus.QUEUED

        clock.advance(seconds=61)
        assert await worker.process_outbox_now() == 2
        assert [push[1].local_id for push in remote.pushes] == [
            first.local_id,
            first.local_id,
            second.local_id,
        ]
        assert (await store.get_job(child)).status == OutboxStatus.DONE

    async def test_remote_wins_on_equal_timestamp(
        self, store, queue, worker, remote, make_event, clock
    ):
        event = make_event(remote_id="evt-1", summary="Local title", local_edited_at=clock())
        await store.upsert_event(event)
        remote.add_event(
            RemoteEventSnapshot(
                remote_id="evt-1",
                remote_updated_at=clock(),
                summary="Remote title",
                start_at=event.start_at,
                end_at=event.end_at,
            )
        )
        job_id = await queue.enqueue(
            OutboxOperation.PATCH, event_local_id=event.local_id, payload={"remote_id": "evt-1"}
        )

        await worker.process_outbox_now()

        job = await store.get_job(job_id)
        stored = await store.get_event(event.local_id)
        assert job.status == OutboxStatus.CANCELLED
        assert job.last_error == REASON_REMOTE_NEWER
        assert stored.summary == "Remote title"
        assert stored.sync_state == SyncState.CLEAN
        assert remote.pushes == []

    async def test_newer_local_edit_is_pushed(
        self, store, queue, worker, remote, make_event, clock
    ):
        event = make_event(remote_id="evt-1", summary="Local title")
        await store.upsert_event(event)
        remote.add_event(
            RemoteEventSnapshot(
                remote_id="evt-1",
                remote_updated_at=clock() - timedelta(minutes=1),
                summary="Stale remote",
                start_at=event.start_at,
                end_at=event.end_at,
            )
        )
        job_id = await queue.enqueue(
            OutboxOperation.PATCH, event_local_id=event.local_id, payload={"remote_id": "evt-1"}
        )

        await worker.process_outbox_now()

        assert (await store.get_job(job_id)).status == OutboxStatus.DONE
        assert remote.events["evt-1"].summary == "Local title"
        assert (await store.get_event(event.local_id)).remote_id == "evt-1"

    async def test_missing_local_event_cancels_job(self, store, queue, worker, remote):
        job_id = await queue.enqueue(OutboxOperation.PATCH, event_local_id=uuid.uuid4())

        await worker.process_outbox_now()

        job = await store.get_job(job_id)
        assert job.status == OutboxStatus.CANCELLED
        assert job.last_error == REASON_ORPHANED
        assert remote.pushes == []

    async def test_delete_without_remote_id_completes_without_push(
        self, store, queue, worker, remote, make_event
    ):
        event = make_event(is_deleted=True)
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.DELETE, event_local_id=event.local_id)

        await worker.process_outbox_now()

        assert (await store.get_job(job_id)).status == OutboxStatus.DONE
        assert remote.pushes == []

    async def test_create_for_tombstoned_record_is_a_no_op(
        self, store, queue, worker, remote, make_event
    ):
        event = make_event()
        await store.upsert_event(event)
        create = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        await store.mark_deleted(event.local_id, edited_at=event.local_edited_at)

        await worker.process_outbox_now()

        assert (await store.get_job(create)).status == OutboxStatus.DONE
        assert (await store.get_event(event.local_id)).sync_state == SyncState.CLEAN
        assert remote.pushes == []

    async def test_permanent_failure_cancels(self, store, queue, worker, remote, make_event):
        event = make_event()
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        remote.push_errors.append(CalendarRequestError(status_code=403, message="forbidden"))

        await worker.process_outbox_now()

        job = await store.get_job(job_id)
        assert job.status == OutboxStatus.CANCELLED
        assert job.last_error.startswith("Permanently failed (PERMANENT)")
        assert "forbidden" in job.last_error

    async def test_transient_failure_backs_off(
        self, store, queue, worker, remote, make_event, clock
    ):
        event = make_event()
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        remote.push_errors.append(CalendarTransportError("connection reset"))

        assert await worker.process_outbox_now() == 1

        job = await store.get_job(job_id)
        assert job.status == OutboxStatus.FAILED
        assert job.attempts == 1
        assert job.next_retry_at == clock() + timedelta(seconds=60)
        assert job.last_error == "connection reset"
        assert (await store.get_event(event.local_id)).sync_state == SyncState.ERROR

    async def test_gives_up_after_max_attempts(self, store, remote, make_event, clock):
        worker = OutboxWorker(store, remote, max_attempts=2, rand=lambda: 0.0, clock=clock)
        queue = OutboxQueue(store, clock=clock)
        event = make_event()
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        remote.push_errors.extend(
            [CalendarTransportError("reset"), CalendarTransportError("reset again")]
        )

        await worker.process_outbox_now()
        clock.advance(minutes=2)
        await worker.process_outbox_now()

        job = await store.get_job(job_id)
        assert job.status == OutboxStatus.CANCELLED
        assert job.last_error == "Permanently failed after 2 attempts: reset again"

    async def test_rate_limit_stops_the_pass(self, store, queue, worker, remote, make_event):
        events = [make_event(), make_event()]
        job_ids = []
        for event in events:
            await store.upsert_event(event)
            job_ids.append(
                await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
            )
        remote.push_errors.append(CalendarRequestError(status_code=429, message="slow down"))

        assert await worker.process_outbox_now() == 1

        assert len(remote.pushes) == 1
        assert (await store.get_job(job_ids[0])).status == OutboxStatus.FAILED
        assert (await store.get_job(job_ids[1])).status == OutboxStatus.QUEUED


    async def test_job_whose_dependency_was_purged_runs(
        self, store, queue, worker, remote, make_event
    ):
        parent_event, child_event = make_event(), make_event()
        await store.upsert_event(parent_event)
        await store.upsert_event(child_event)
        parent = await queue.enqueue(OutboxOperation.CREATE, event_local_id=parent_event.local_id)
        await store.mark_job_running(parent)
        await store.mark_job_done(parent)
        child = await queue.enqueue(
            OutboxOperation.CREATE, event_local_id=child_event.local_id, depends_on=parent
        )
        del store.jobs[parent]

        assert await worker.process_outbox_now() == 1

        assert (await store.get_job(child)).status == OutboxStatus.DONE
        assert len(remote.pushes) == 1


class TestTokenRefreshOutage:
    async def test_unreachable_token_endpoint_is_retried_not_cancelled(
        self, store, make_event, clock
    ):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("network unreachable", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        credentials = GoogleOAuthCredentials(
            client_id="cid", client_secret="secret", refresh_token="rtok"
        )
        remote = GoogleCalendarRemote(credentials, http_client=client)
        worker = OutboxWorker(store, remote, rand=lambda: 0.0, clock=clock)
        queue = OutboxQueue(store, clock=clock)

        master = make_event(remote_id="series-1", recurrence_rule="FREQ=DAILY")
        future = make_event(start_at=master.start_at + timedelta(days=3))
        await store.upsert_event(master)
        await store.upsert_event(future)
        split = await queue.enqueue(
            OutboxOperation.RECUR_FUTURE,
            event_local_id=master.local_id,
            payload={"remote_id": "series-1", "split_boundary": future.start_at},
        )
        create = await queue.enqueue(
            OutboxOperation.CREATE, event_local_id=future.local_id, depends_on=split
        )

        try:
            assert await worker.process_outbox_now() == 1
        finally:
            await client.aclose()

        split_job = await store.get_job(split)
        assert split_job.status == OutboxStatus.FAILED
        assert split_job.attempts == 1
        assert split_job.next_retry_at == clock() + timedelta(seconds=60)
        assert split_job.last_error.startswith("Google OAuth token refresh request failed")
        assert (await store.get_job(create)).status == OutboxStatus.QUEUED
        assert not (await store.get_event(future.local_id)).is_deleted
        assert await remote.is_authenticated() is True


class TestStuckRecovery:
    async def test_stale_running_job_moves_to_failed(self, store, queue, worker, make_event, clock):
        event = make_event()
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        await store.mark_job_running(job_id)

        clock.advance(minutes=6)
        assert await worker.recover_stuck_jobs() == 1

        job = await store.get_job(job_id)
        assert job.status == OutboxStatus.FAILED
        assert job.attempts == 1
        assert job.last_error == REASON_STUCK

    async def test_recent_running_job_is_left_alone(self, store, queue, worker, make_event, clock):
        event = make_event()
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        await store.mark_job_running(job_id)

        clock.advance(minutes=4)
        assert await worker.recover_stuck_jobs() == 0
        assert (await store.get_job(job_id)).status == OutboxStatus.RUNNING

    async def test_pass_recovers_then_completes(
        self, store, queue, worker, remote, make_event, clock
    ):
        event = make_event()
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        await store.mark_job_running(job_id)

        clock.advance(minutes=6)
        assert await worker.process_outbox_now() == 1

        job = await store.get_job(job_id)
        assert job.status == OutboxStatus.DONE
        assert job.attempts == 1
        assert len(remote.pushes) == 1


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellationCascade:
    async def test_cascade_cancels_subtree_once(self, store, queue, worker, make_event):
        master, future, other = make_event(), make_event(), make_event(remote_id="evt-3")
        for event in (master, future, other):
            await store.upsert_event(event)
        split = await queue.enqueue(
            OutboxOperation.RECUR_FUTURE,
            event_local_id=master.local_id,
            payload={"split_boundary": master.start_at},
        )
        create = await queue.enqueue(
            OutboxOperation.CREATE, event_local_id=future.local_id, depends_on=split
        )
        patch = await queue.enqueue(
            OutboxOperation.PATCH, event_local_id=other.local_id, depends_on=create
        )

        cancelled = await worker.cancel_job(split, "Permanently failed (PERMANENT): gone")

        assert cancelled == [split, create, patch]
        assert (await store.get_job(split)).last_error == "Permanently failed (PERMANENT): gone"
        assert (await store.get_job(create)).last_error == dependency_cancelled_reason(split)
        assert (await store.get_job(patch)).last_error == dependency_cancelled_reason(create)

        rolled_back = await store.get_event(future.local_id)
        assert rolled_back.is_deleted
        assert rolled_back.sync_state == SyncState.CLEAN
        assert (await store.get_event(master.local_id)).sync_state == SyncState.CLEAN

    async def test_cancelling_again_is_a_no_op(self, store, queue, worker, make_event, clock):
        master, future = make_event(), make_event()
        await store.upsert_event(master)
        await store.upsert_event(future)
        split = await queue.enqueue(
            OutboxOperation.RECUR_FUTURE,
            event_local_id=master.local_id,
            payload={"split_boundary": master.start_at},
        )
        create = await queue.enqueue(
            OutboxOperation.CREATE, event_local_id=future.local_id, depends_on=split
        )
        await worker.cancel_job(split, "first reason")
        rolled_back = await store.get_event(future.local_id)
        clock.advance(minutes=5)

        assert await worker.cancel_job(split, "second reason") == []
        assert await worker.cancel_job(create, "second reason") == []

        assert (await store.get_job(split)).last_error == "first reason"
        assert (await store.get_job(create)).last_error == dependency_cancelled_reason(split)
        again = await store.get_event(future.local_id)
        assert again.is_deleted
        assert again.sync_state == rolled_back.sync_state
        assert again.updated_at == rolled_back.updated_at

    async def test_cancelling_inner_node_leaves_ancestors(self, store, queue, worker, make_event):
        first, second, third = make_event(), make_event(), make_event()
        for event in (first, second, third):
            await store.upsert_event(event)
        root = await queue.enqueue(OutboxOperation.CREATE, event_local_id=first.local_id)
        middle = await queue.enqueue(
            OutboxOperation.CREATE, event_local_id=second.local_id, depends_on=root
        )
        leaf = await queue.enqueue(
            OutboxOperation.CREATE, event_local_id=third.local_id, depends_on=middle
        )

        assert await worker.cancel_job(middle, "boom") == [middle, leaf]

        assert (await store.get_job(root)).status == OutboxStatus.QUEUED
        assert await worker.cancel_job(root, "later") == [root]

    async def test_event_with_other_active_work_keeps_error(
        self, store, queue, worker, make_event
    ):
        parent_event, child_event = make_event(), make_event(remote_id="evt-2")
        await store.upsert_event(parent_event)
        await store.upsert_event(child_event)
        parent = await queue.enqueue(OutboxOperation.CREATE, event_local_id=parent_event.local_id)
        await queue.enqueue(
            OutboxOperation.RECUR_ALL, event_local_id=child_event.local_id, depends_on=parent
        )
        unrelated = await queue.enqueue(
            OutboxOperation.DELETE, event_local_id=child_event.local_id
        )

        await worker.cancel_job(parent, "boom")

        assert (await store.get_event(child_event.local_id)).sync_state == SyncState.ERROR
        assert (await store.get_job(unrelated)).status == OutboxStatus.QUEUED

    async def test_terminal_dependents_are_untouched(self, store, queue, worker, make_event):
        event = make_event()
        await store.upsert_event(event)
        parent = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        child = await queue.enqueue(
            OutboxOperation.PATCH, event_local_id=event.local_id, depends_on=parent
        )
        await store.mark_job_running(child)
        await store.mark_job_done(child)

        assert await worker.cancel_job(parent, "boom") == [parent]
        assert (await store.get_job(child)).status == OutboxStatus.DONE

    async def test_user_cancel(self, store, queue, worker, make_event):
        event = make_event()
        await store.upsert_event(event)
        queued = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)

        assert await worker.cancel_outbox_job(queued) is True
        job = await store.get_job(queued)
        assert job.status == OutboxStatus.CANCELLED
        assert job.last_error == REASON_USER

        assert await worker.cancel_outbox_job(queued) is False
        assert await worker.cancel_outbox_job(uuid.uuid4()) is False

    async def test_user_cannot_cancel_running_job(self, store, queue, worker, make_event):
        event = make_event()
        await store.upsert_event(event)
        job_id = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)
        await store.mark_job_running(job_id)

        assert await worker.cancel_outbox_job(job_id) is False
        assert (await store.get_job(job_id)).status == OutboxStatus.RUNNING


# ---------------------------------------------------------------------------
# Concurrency guard & background loop
# ---------------------------------------------------------------------------


class _ReentrantRemote(ScriptedRemote):
    """Runs a hook the first time a push happens, before applying it."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.hook = None

    async def push_change(self, **kwargs):
        if self.hook is not None:
            hook, self.hook = self.hook, None
            await hook()
        return await super().push_change(**kwargs)


class TestConcurrencyGuard:
    async def test_flush_during_pass_runs_one_more_pass(self, store, make_event, clock):
        remote = _ReentrantRemote(clock=clock)
        worker = OutboxWorker(store, remote, rand=lambda: 0.0, clock=clock)
        queue = OutboxQueue(store, clock=clock)
        event = make_event()
        await store.upsert_event(event)
        await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)

        passes = 0
        original_pass = worker._run_pass

        async def counting_pass():
            nonlocal passes
            passes += 1
            return await original_pass()

        worker._run_pass = counting_pass
        nested_results = []

        async def flush_twice():
            assert worker.is_processing
            nested_results.append(await worker.process_outbox_now())
            nested_results.append(await worker.process_outbox_now())

        remote.hook = flush_twice

        assert await worker.process_outbox_now() == 1
        assert nested_results == [0, 0]
        assert passes == 2
        assert not worker.is_processing

    async def test_background_loop_processes_on_flush(self, store, remote, make_event, clock):
        worker = OutboxWorker(store, remote, interval_seconds=3600, clock=clock)
        queue = OutboxQueue(store, on_enqueued=worker.request_flush, clock=clock)
        worker.start()
        try:
            event = make_event()
            await store.upsert_event(event)
            job_id = await queue.enqueue(OutboxOperation.CREATE, event_local_id=event.local_id)

            for _ in range(100):
                if (await store.get_job(job_id)).status == OutboxStatus.DONE:
                    break
                await asyncio.sleep(0.01)
            assert (await store.get_job(job_id)).status == OutboxStatus.DONE
        finally:
            await worker.stop()
