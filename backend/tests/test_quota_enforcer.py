# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Schedule Quota Enforcer Tests

Run with: pytest tests/test_quota_enforcer.py -v
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from core.task_queue import TaskQueue, TaskHandlerRegistry
from models.background_task import TaskStatus
from models.workflow_schedule import WorkflowSchedule, WorkflowScheduleRecord, ScheduleRecordStatus
from services.schedule.cron_utils import utcnow
from services.schedule.email_templates import SUBJECT_LIMIT_EXCEEDED
from services.schedule.quota_enforcer import ScheduleQuotaEnforcer, remove_queued_jobs


@pytest.fixture
def queue(session_factory):
    return TaskQueue(name="test", session_factory=session_factory, registry=TaskHandlerRegistry())


@pytest.fixture
def enforcer(queue, notification_service, session_factory):
    return ScheduleQuotaEnforcer(queue, notification_service, session_factory, origin="https://app.example.com/")


@pytest.fixture
def seven_schedules(make_user, make_schedule):
    """sch-0 is the oldest, sch-6 the newest."""
    make_user()
    for i in range(7):
        make_schedule(
            schedule_id=f"sch-{i}",
            canvas_id=f"canvas-{i}",
            name=f"Schedule {i}",
            next_run_at=utcnow() + timedelta(hours=1),
            created_offset=100 - i
        )


def _enabled_ids(session_factory, uid="user-1"):
    db = session_factory()
    try:
        rows = db.query(WorkflowSchedule.schedule_id).filter(
            WorkflowSchedule.uid == uid,
            WorkflowSchedule.is_enabled.is_(True)
        ).all()
        return sorted(row[0] for row in rows)
    finally:
        db.close()


class TestEnforce:

    @pytest.mark.asyncio
    async def test_within_limit_is_noop(self, enforcer, session_factory, seven_schedules, notification_service):
        result = await enforcer.enforce("user-1", "sch-0", 20)

        assert result.enforced is False
        assert result.active_count == 7
        assert len(_enabled_ids(session_factory)) == 7
        notification_service.send_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disables_newest_excess(self, enforcer, session_factory, seven_schedules, notification_service):
        """Seven active with a limit of five leaves exactly five enabled."""
        result = await enforcer.enforce("user-1", "sch-0", 5)

        assert result.enforced is True
        assert sorted(result.disabled_schedule_ids) == ["sch-5", "sch-6"]
        assert _enabled_ids(session_factory) == ["sch-0", "sch-1", "sch-2", "sch-3", "sch-4"]

        db = session_factory()
        try:
            disabled = db.query(WorkflowSchedule).filter(WorkflowSchedule.schedule_id == "sch-6").first()
            assert disabled.next_run_at is None
        finally:
            db.close()

        notification_service.send_email.assert_awaited_once()
        kwargs = notification_service.send_email.await_args.kwargs
        assert kwargs["to"] == "owner@example.com"
        assert kwargs["subject"] == SUBJECT_LIMIT_EXCEEDED
        assert "Schedule 5" in kwargs["html"] and "Schedule 6" in kwargs["html"]
        assert "https://app.example.com/workflow-list" in kwargs["html"]
        assert result.notified is True

    @pytest.mark.asyncio
    async def test_triggering_schedule_is_exempt(self, enforcer, session_factory, seven_schedules):
        """The schedule being triggered survives even when it is the newest."""
        await enforcer.enforce("user-1", "sch-6", 5)

        enabled = _enabled_ids(session_factory)
        assert "sch-6" in enabled
        assert len(enabled) == 5
        assert "sch-5" not in enabled and "sch-4" not in enabled

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, enforcer, session_factory, seven_schedules, notification_service):
        await enforcer.enforce("user-1", "sch-0", 5)
        second = await enforcer.enforce("user-1", "sch-0", 5)

        assert second.enforced is False
        assert second.active_count == 5
        assert len(_enabled_ids(session_factory)) == 5
        notification_service.send_email.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_single_victim_links_to_its_workflow(self, enforcer, seven_schedules, notification_service):
        await enforcer.enforce("user-1", "sch-0", 6)

        html = notification_service.send_email.await_args.kwargs["html"]
        assert "https://app.example.com/workflow/canvas-6" in html

    @pytest.mark.asyncio
    async def test_fails_open_records_of_disabled_schedules(self, enforcer, session_factory,
                                                            seven_schedules, make_record):
        make_record(schedule_id="sch-6", status=ScheduleRecordStatus.SCHEDULED)
        make_record(schedule_id="sch-6", status=ScheduleRecordStatus.PENDING)
        make_record(schedule_id="sch-6", status=ScheduleRecordStatus.PROCESSING)
        make_record(schedule_id="sch-6", status=ScheduleRecordStatus.RUNNING)
        make_record(schedule_id="sch-6", status=ScheduleRecordStatus.SUCCESS)
        make_record(schedule_id="sch-0", status=ScheduleRecordStatus.SCHEDULED)

        result = await enforcer.enforce("user-1", "sch-0", 6)

        assert result.failed_record_count == 3

        db = session_factory()
        try:
            statuses = sorted(
                (r.status, r.failure_reason)
                for r in db.query(WorkflowScheduleRecord).filter(WorkflowScheduleRecord.schedule_id == "sch-6")
            )
            untouched = db.query(WorkflowScheduleRecord).filter(
                WorkflowScheduleRecord.schedule_id == "sch-0"
            ).one()
        finally:
            db.close()

        assert statuses == [
            ("failed", "schedule_limit_exceeded"),
            ("failed", "schedule_limit_exceeded"),
            ("failed", "schedule_limit_exceeded"),
            ("running", None),
            ("success", None),
        ]
        assert untouched.status == "scheduled"

    @pytest.mark.asyncio
    async def test_removes_queued_jobs(self, enforcer, queue, seven_schedules):
        await queue.enqueue("execute-scheduled-workflow", {"scheduleId": "sch-6"}, job_id="schedule:sch-6:1")
        await queue.enqueue("execute-scheduled-workflow", {"scheduleId": "sch-0"}, job_id="schedule:sch-0:1")

        result = await enforcer.enforce("user-1", "sch-0", 6)

        assert result.removed_job_count == 1
        assert (await queue.get_status("schedule:sch-6:1"))["status"] == TaskStatus.CANCELLED
        assert [job.job_id for job in await queue.list_pending()] == ["schedule:sch-0:1"]

    @pytest.mark.asyncio
    async def test_email_failure_does_not_undo_enforcement(self, enforcer, session_factory,
                                                           seven_schedules, notification_service):
        notification_service.send_email = AsyncMock(side_effect=RuntimeError("smtp down"))

        result = await enforcer.enforce("user-1", "sch-0", 5)

        assert result.notified is False
        assert len(_enabled_ids(session_factory)) == 5

    @pytest.mark.asyncio
    async def test_user_without_email_is_not_notified(self, enforcer, make_user, make_schedule,
                                                      notification_service):
        make_user(uid="user-2", email=None)
        make_schedule(schedule_id="a", uid="user-2", created_offset=5)
        make_schedule(schedule_id="b", uid="user-2", created_offset=1)

        result = await enforcer.enforce("user-2", "a", 1)

        assert result.disabled_schedule_ids == ["b"]
        notification_service.send_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deleted_schedules_do_not_count(self, enforcer, make_user, make_schedule):
        make_user()
        make_schedule(schedule_id="a", created_offset=5)
        make_schedule(schedule_id="b", deleted_at=utcnow(), created_offset=1)

        result = await enforcer.enforce("user-1", "a", 1)

        assert result.active_count == 1
        assert result.enforced is False


class TestRemoveQueuedJobs:

    @pytest.mark.asyncio
    async def test_only_waiting_and_delayed_jobs_are_removed(self, queue):
        await queue.enqueue("execute-scheduled-workflow", {"scheduleId": "s1"}, job_id="j1")
        await queue.enqueue("execute-scheduled-workflow", {"scheduleId": "s1"}, job_id="j2", delay_ms=60000)
        await queue.enqueue("execute-scheduled-workflow", {"scheduleId": "s2"}, job_id="j3")

        assert await remove_queued_jobs(queue, ["s1"]) == 2
        assert [job.job_id for job in await queue.list_pending()] == ["j3"]

    @pytest.mark.asyncio
    async def test_empty_target_set(self, queue):
        assert await remove_queued_jobs(queue, []) == 0
