# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Canvas Deletion Reclaimer Tests

Run with: pytest tests/test_canvas_reclaimer.py -v
"""

from datetime import timedelta

import pytest

from core.task_queue import TaskQueue, TaskHandlerRegistry
from models.workflow_schedule import WorkflowSchedule, WorkflowScheduleRecord, ScheduleRecordStatus
from services.schedule.canvas_reclaimer import CanvasDeletionReclaimer, CANVAS_DELETED_MESSAGE
from services.schedule.cron_utils import utcnow
from services.schedule.events import CanvasDeletedEvent
from services.schedule.priority_service import count_active_schedules


@pytest.fixture
def queue(session_factory):
    return TaskQueue(name="test", session_factory=session_factory, registry=TaskHandlerRegistry())


@pytest.fixture
def reclaimer(queue, session_factory):
    return CanvasDeletionReclaimer(queue=queue, session_factory=session_factory)


@pytest.fixture
def canvas_schedule(make_user, make_schedule):
    make_user()
    return make_schedule(next_run_at=utcnow() + timedelta(hours=1))


def _records_by_status(session_factory, schedule_id="sch-1"):
    db = session_factory()
    try:
        return {
            r.status: r
            for r in db.query(WorkflowScheduleRecord).filter(WorkflowScheduleRecord.schedule_id == schedule_id)
        }
    finally:
        db.close()


class TestHandleCanvasDeleted:

    @pytest.mark.asyncio
    async def test_schedule_is_released(self, reclaimer, session_factory, canvas_schedule):
        await reclaimer.handle_canvas_deleted(CanvasDeletedEvent(canvas_id="canvas-1", uid="user-1"))

        db = session_factory()
        try:
            schedule = db.query(WorkflowSchedule).filter(WorkflowSchedule.schedule_id == "sch-1").first()
            assert schedule.deleted_at is not None
            assert schedule.is_enabled is False
            assert schedule.next_run_at is None
            assert count_active_schedules(db, "user-1") == 0
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_queued_records_fail_running_records_finish(self, reclaimer, session_factory,
                                                              canvas_schedule, make_record):
        make_record(status=ScheduleRecordStatus.SCHEDULED)
        make_record(status=ScheduleRecordStatus.PENDING)
        make_record(status=ScheduleRecordStatus.PROCESSING)
        make_record(status=ScheduleRecordStatus.RUNNING)

        await reclaimer.handle_canvas_deleted(CanvasDeletedEvent(canvas_id="canvas-1", uid="user-1"))

        db = session_factory()
        try:
            records = db.query(WorkflowScheduleRecord).order_by(WorkflowScheduleRecord.pk).all()
        finally:
            db.close()

        assert [r.status for r in records] == ["failed", "failed", "processing", "running"]
        for record in records[:2]:
            assert record.failure_reason == "canvas_deleted"
            assert record.error_details["reason"] == CANVAS_DELETED_MESSAGE
            assert "deletedAt" in record.error_details
            assert record.completed_at is not None
        for record in records[2:]:
            assert record.failure_reason is None

    @pytest.mark.asyncio
    async def test_finished_records_are_untouched(self, reclaimer, session_factory, canvas_schedule, make_record):
        make_record(status=ScheduleRecordStatus.SUCCESS)

        await reclaimer.handle_canvas_deleted(CanvasDeletedEvent(canvas_id="canvas-1", uid="user-1"))

        assert set(_records_by_status(session_factory)) == {"success"}

    @pytest.mark.asyncio
    async def test_queued_jobs_are_removed(self, reclaimer, queue, canvas_schedule):
        await queue.enqueue("execute-scheduled-workflow", {"scheduleId": "sch-1"}, job_id="schedule:sch-1:1")
        await queue.enqueue("execute-scheduled-workflow", {"scheduleId": "sch-9"}, job_id="schedule:sch-9:1")

        await reclaimer.handle_canvas_deleted(CanvasDeletedEvent(canvas_id="canvas-1", uid="user-1"))

        assert [job.job_id for job in await queue.list_pending()] == ["schedule:sch-9:1"]

    @pytest.mark.asyncio
    async def test_other_owner_is_not_affected(self, reclaimer, session_factory, canvas_schedule):
        await reclaimer.handle_canvas_deleted(CanvasDeletedEvent(canvas_id="canvas-1", uid="someone-else"))

        db = session_factory()
        try:
            assert count_active_schedules(db, "user-1") == 1
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_canvas_without_schedules(self, reclaimer, queue):
        await reclaimer.handle_canvas_deleted(CanvasDeletedEvent(canvas_id="nothing", uid="user-1"))

        assert await queue.list_pending() == []

    @pytest.mark.asyncio
    async def test_repeated_signal_is_noop(self, reclaimer, session_factory, canvas_schedule, make_record):
        make_record(status=ScheduleRecordStatus.PENDING)
        event = CanvasDeletedEvent(canvas_id="canvas-1", uid="user-1")

        await reclaimer.handle_canvas_deleted(event)
        first = _records_by_status(session_factory)["failed"].completed_at

        await reclaimer.handle_canvas_deleted(event)

        assert _records_by_status(session_factory)["failed"].completed_at == first

    @pytest.mark.asyncio
    async def test_works_without_queue(self, session_factory, canvas_schedule):
        reclaimer = CanvasDeletionReclaimer(session_factory=session_factory)

        await reclaimer.handle_canvas_deleted(CanvasDeletedEvent(canvas_id="canvas-1", uid="user-1"))

        db = session_factory()
        try:
            assert count_active_schedules(db, "user-1") == 0
        finally:
            db.close()
