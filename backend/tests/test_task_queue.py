# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Priority Queue Tests

Tests for:
- Enqueue with caller-supplied job ids
- Priority ordering (1 = most urgent, FIFO within a priority)
- Claiming, completion and delayed retry with exponential backoff
- Removal of not-yet-started jobs

Run with: pytest tests/test_task_queue.py -v
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from core.exceptions import QueueError
from core.task_queue import TaskQueue, TaskWorker, TaskHandlerRegistry, backoff_delay
from models.background_task import BackgroundTask, TaskStatus
from services.schedule.cron_utils import ensure_utc, utcnow


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def registry():
    registry = TaskHandlerRegistry()
    registry.register("noop", AsyncMock(return_value={}))
    return registry


@pytest.fixture
def queue(session_factory, registry):
    return TaskQueue(name="test", session_factory=session_factory, registry=registry)


@pytest.fixture
def worker(session_factory, registry):
    return TaskWorker(worker_id=0, registry=registry, session_factory=session_factory, poll_interval=0.01)


def _get_job(db_session, job_id):
    db_session.expire_all()
    return db_session.query(BackgroundTask).filter(BackgroundTask.job_id == job_id).one()


# =============================================================================
# Enqueue & Listing
# =============================================================================

class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_with_job_id(self, queue):
        job_id = await queue.enqueue("execute-scheduled-workflow", {"scheduleId": "sch-1"}, job_id="schedule:sch-1:1")

        assert job_id == "schedule:sch-1:1"
        status = await queue.get_status(job_id)
        assert status["status"] == TaskStatus.WAITING
        assert status["payload"] == {"scheduleId": "sch-1"}

    @pytest.mark.asyncio
    async def test_generated_job_id(self, queue):
        job_id = await queue.enqueue("noop", {})
        assert job_id.startswith("noop:")

    @pytest.mark.asyncio
    async def test_duplicate_job_id_is_rejected(self, queue):
        await queue.enqueue("noop", {}, job_id="dup")

        with pytest.raises(QueueError) as exc_info:
            await queue.enqueue("noop", {}, job_id="dup")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_delayed_enqueue(self, queue):
        await queue.enqueue("noop", {}, job_id="later", delay_ms=60000)

        jobs = await queue.list_pending()
        assert jobs[0].status == TaskStatus.DELAYED
        assert jobs[0].run_at > utcnow()

    @pytest.mark.asyncio
    async def test_list_pending_orders_by_priority_then_age(self, queue):
        await queue.enqueue("noop", {}, job_id="a", priority=5)
        await queue.enqueue("noop", {}, job_id="b", priority=1)
        await queue.enqueue("noop", {}, job_id="c", priority=10)
        await queue.enqueue("noop", {}, job_id="d", priority=1)

        assert [job.job_id for job in await queue.list_pending()] == ["b", "d", "a", "c"]

    @pytest.mark.asyncio
    async def test_list_pending_filters_by_type(self, queue):
        await queue.enqueue("execute-scheduled-workflow", {}, job_id="a")
        await queue.enqueue("other", {}, job_id="b")

        jobs = await queue.list_pending(task_type="other")
        assert [job.job_id for job in jobs] == ["b"]

    @pytest.mark.asyncio
    async def test_queue_stats(self, queue):
        await queue.enqueue("noop", {}, job_id="a")
        await queue.enqueue("noop", {}, job_id="b", delay_ms=1000)

        stats = await queue.get_queue_stats()
        assert stats[TaskStatus.WAITING] == 1
        assert stats[TaskStatus.DELAYED] == 1
        assert stats[TaskStatus.ACTIVE] == 0
        assert stats["queue"] == "test"
        assert stats["workers_running"] is False


class TestRemoval:

    @pytest.mark.asyncio
    async def test_remove_waiting_job(self, queue, db_session):
        await queue.enqueue("noop", {}, job_id="a")

        jobs = await queue.list_pending()
        assert await jobs[0].remove() is True

        assert _get_job(db_session, "a").status == TaskStatus.CANCELLED
        assert await queue.list_pending() == []

    @pytest.mark.asyncio
    async def test_active_job_cannot_be_removed(self, queue, worker):
        await queue.enqueue("noop", {}, job_id="a")
        jobs = await queue.list_pending()

        await worker.claim_next()

        assert await jobs[0].remove() is False

    @pytest.mark.asyncio
    async def test_unknown_job(self, queue):
        assert await queue.cancel_task("missing") is False


# =============================================================================
# Worker
# =============================================================================

class TestWorker:

    @pytest.mark.asyncio
    async def test_claims_most_urgent_first(self, queue, worker):
        await queue.enqueue("noop", {}, job_id="low", priority=10)
        await queue.enqueue("noop", {}, job_id="urgent", priority=1)

        job = await worker.claim_next()

        assert job.job_id == "urgent"
        assert job.status == TaskStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_empty_queue(self, worker):
        assert await worker.claim_next() is None

    @pytest.mark.asyncio
    async def test_delayed_job_waits_for_run_at(self, queue, worker):
        await queue.enqueue("noop", {}, job_id="later", delay_ms=60000)

        assert await worker.claim_next() is None

    @pytest.mark.asyncio
    async def test_successful_execution(self, queue, worker, registry, db_session):
        handler = AsyncMock(return_value={"ok": True})
        registry.register("noop", handler)
        await queue.enqueue("noop", {"x": 1}, job_id="a")

        job = await worker.claim_next()
        await worker.execute(job)

        handler.assert_awaited_once_with({"x": 1}, "a")
        stored = _get_job(db_session, "a")
        assert stored.status == TaskStatus.COMPLETED
        assert stored.result == {"ok": True}
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_single_attempt_fails_immediately(self, queue, worker, registry, db_session):
        registry.register("noop", AsyncMock(side_effect=RuntimeError("boom")))
        await queue.enqueue("noop", {}, job_id="a", max_retries=1)

        await worker.execute(await worker.claim_next())

        stored = _get_job(db_session, "a")
        assert stored.status == TaskStatus.FAILED
        assert stored.retry_count == 1
        assert "RuntimeError: boom" in stored.error

    @pytest.mark.asyncio
    async def test_retry_with_exponential_backoff(self, queue, worker, registry, db_session):
        registry.register("noop", AsyncMock(side_effect=RuntimeError("boom")))
        await queue.enqueue("noop", {}, job_id="a", max_retries=3, backoff_delay_ms=1000)

        # Attempt 1 -> delayed ~1s
        before = utcnow()
        await worker.execute(await worker.claim_next())
        stored = _get_job(db_session, "a")
        assert stored.status == TaskStatus.DELAYED
        assert stored.retry_count == 1
        delay = ensure_utc(stored.run_at) - before
        assert timedelta(seconds=1) <= delay < timedelta(seconds=2)

        # Not claimable until the backoff elapses
        assert await worker.claim_next() is None
        stored.run_at = utcnow() - timedelta(seconds=1)
        db_session.commit()

        # Attempt 2 -> delayed ~2s
        before = utcnow()
        await worker.execute(await worker.claim_next())
        stored = _get_job(db_session, "a")
        assert stored.status == TaskStatus.DELAYED
        assert stored.retry_count == 2
        delay = ensure_utc(stored.run_at) - before
        assert timedelta(seconds=2) <= delay < timedelta(seconds=3)

        stored.run_at = utcnow() - timedelta(seconds=1)
        db_session.commit()

        # Attempt 3 -> failed
        await worker.execute(await worker.claim_next())
        stored = _get_job(db_session, "a")
        assert stored.status == TaskStatus.FAILED
        assert stored.retry_count == 3

    @pytest.mark.asyncio
    async def test_job_without_handler_stays_queued(self, queue, worker, db_session):
        await queue.enqueue("execute-scheduled-workflow", {}, job_id="a")

        assert await worker.claim_next() is None

        stored = _get_job(db_session, "a")
        assert stored.status == TaskStatus.WAITING
        assert stored.retry_count == 0

    @pytest.mark.asyncio
    async def test_worker_without_handlers_claims_nothing(self, queue, session_factory):
        await queue.enqueue("noop", {}, job_id="a")
        idle = TaskWorker(worker_id=1, registry=TaskHandlerRegistry(), session_factory=session_factory)

        assert await idle.claim_next() is None

    @pytest.mark.asyncio
    async def test_handler_removed_after_claim_fails_job(self, queue, worker, registry, db_session):
        await queue.enqueue("noop", {}, job_id="a")
        job = await worker.claim_next()
        worker.registry = TaskHandlerRegistry()

        await worker.execute(job)

        stored = _get_job(db_session, "a")
        assert stored.status == TaskStatus.FAILED
        assert "No handler registered" in stored.error


class TestBackoff:

    @pytest.mark.parametrize("attempt,expected_ms", [(1, 1000), (2, 2000), (3, 4000), (4, 8000)])
    def test_doubles_per_attempt(self, attempt, expected_ms):
        assert backoff_delay(1000, attempt) == timedelta(milliseconds=expected_ms)
