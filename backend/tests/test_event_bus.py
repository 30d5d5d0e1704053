# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Event Bus and Schedule Listener Tests

Run with: pytest tests/test_event_bus.py -v
"""

from unittest.mock import AsyncMock

import pytest

from core.task_queue import TaskQueue, TaskHandlerRegistry
from models.workflow_schedule import WorkflowScheduleRecord, ScheduleRecordStatus
from services.concurrency_counter import ConcurrencyCounter
from services.credit_service import CreditService
from services.event_bus import EventBus, get_event_bus, reset_event_bus
from services.schedule.canvas_reclaimer import CanvasDeletionReclaimer
from services.schedule.events import (
    WORKFLOW_COMPLETED,
    WORKFLOW_FAILED,
    CANVAS_DELETED,
    WorkflowCompletedEvent,
    WorkflowFailedEvent,
    CanvasDeletedEvent,
)
from services.schedule.listeners import register_schedule_listeners, unregister_schedule_listeners
from services.schedule.result_reconciler import ScheduleResultReconciler


class TestEventBus:

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers_in_order(self):
        bus = EventBus()
        calls = []

        async def first(event):
            calls.append(("first", event))

        async def second(event):
            calls.append(("second", event))

        bus.subscribe("workflow.completed", first)
        bus.subscribe("workflow.completed", second)

        assert await bus.publish("workflow.completed", "evt") == 2
        assert calls == [("first", "evt"), ("second", "evt")]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = EventBus()
        survivor = AsyncMock()
        bus.subscribe("canvas.deleted", AsyncMock(side_effect=RuntimeError("boom")))
        bus.subscribe("canvas.deleted", survivor)

        assert await bus.publish("canvas.deleted", "evt") == 1
        survivor.assert_awaited_once_with("evt")
        assert bus.get_stats()["failed_deliveries"] == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        handler = AsyncMock()
        bus.subscribe("workflow.failed", handler)
        bus.unsubscribe("workflow.failed", handler)

        assert await bus.publish("workflow.failed", "evt") == 0
        handler.assert_not_awaited()
        assert bus.get_stats()["total_channels"] == 0

    def test_global_bus_is_shared(self):
        reset_event_bus()
        try:
            assert get_event_bus() is get_event_bus()
        finally:
            reset_event_bus()


class TestScheduleListeners:

    @pytest.fixture
    def wired(self, session_factory, notification_service):
        bus = EventBus()
        queue = TaskQueue(name="test", session_factory=session_factory, registry=TaskHandlerRegistry())
        reconciler = ScheduleResultReconciler(
            counter=ConcurrencyCounter(session_factory),
            credit_service=CreditService(session_factory),
            notification_service=notification_service,
            session_factory=session_factory
        )
        reclaimer = CanvasDeletionReclaimer(queue=queue, session_factory=session_factory)
        register_schedule_listeners(bus, reconciler, reclaimer)
        return bus, reconciler, reclaimer

    def test_channels_registered(self, wired):
        bus, _, _ = wired
        channels = bus.get_stats()["channels"]
        assert channels == {WORKFLOW_COMPLETED: 1, WORKFLOW_FAILED: 1, CANVAS_DELETED: 1}

    def test_unregister(self, wired):
        bus, reconciler, reclaimer = wired
        unregister_schedule_listeners(bus, reconciler, reclaimer)
        assert bus.get_stats()["total_subscribers"] == 0

    @pytest.mark.asyncio
    async def test_signals_flow_to_handlers(self, wired, session_factory, make_user, make_schedule, make_record):
        bus, _, _ = wired
        make_user()
        make_schedule()
        make_record(schedule_record_id="rec-ok", status=ScheduleRecordStatus.RUNNING)
        make_record(schedule_record_id="rec-bad", status=ScheduleRecordStatus.RUNNING)
        make_record(schedule_record_id="rec-queued", status=ScheduleRecordStatus.PENDING)

        await bus.publish(WORKFLOW_COMPLETED, WorkflowCompletedEvent(
            execution_id="e1", canvas_id="canvas-1", uid="user-1",
            trigger_type="scheduled", schedule_record_id="rec-ok"
        ))
        await bus.publish(WORKFLOW_FAILED, WorkflowFailedEvent(
            execution_id="e2", canvas_id="canvas-1", uid="user-1",
            trigger_type="scheduled", error_details={"errorMessage": "Canvas not found"},
            schedule_record_id="rec-bad"
        ))
        await bus.publish(CANVAS_DELETED, CanvasDeletedEvent(canvas_id="canvas-1", uid="user-1"))

        db = session_factory()
        try:
            records = {
                r.schedule_record_id: (r.status, r.failure_reason)
                for r in db.query(WorkflowScheduleRecord).all()
            }
        finally:
            db.close()

        assert records == {
            "rec-ok": ("success", None),
            "rec-bad": ("failed", "canvas_data_error"),
            "rec-queued": ("failed", "canvas_deleted"),
        }
