# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""Wires the schedule engine's signal handlers onto the event bus."""

import logging

from services.event_bus import EventBus
from services.schedule.canvas_reclaimer import CanvasDeletionReclaimer
from services.schedule.events import WORKFLOW_COMPLETED, WORKFLOW_FAILED, CANVAS_DELETED
from services.schedule.result_reconciler import ScheduleResultReconciler

logger = logging.getLogger(__name__)


def register_schedule_listeners(
    bus: EventBus,
    reconciler: ScheduleResultReconciler,
    reclaimer: CanvasDeletionReclaimer
):
    bus.subscribe(WORKFLOW_COMPLETED, reconciler.handle_workflow_completed)
    bus.subscribe(WORKFLOW_FAILED, reconciler.handle_workflow_failed)
    bus.subscribe(CANVAS_DELETED, reclaimer.handle_canvas_deleted)
    logger.info(f"Registered schedule listeners on {WORKFLOW_COMPLETED}, {WORKFLOW_FAILED}, {CANVAS_DELETED}")


def unregister_schedule_listeners(
    bus: EventBus,
    reconciler: ScheduleResultReconciler,
    reclaimer: CanvasDeletionReclaimer
):
    bus.unsubscribe(WORKFLOW_COMPLETED, reconciler.handle_workflow_completed)
    bus.unsubscribe(WORKFLOW_FAILED, reconciler.handle_workflow_failed)
    bus.unsubscribe(CANVAS_DELETED, reclaimer.handle_canvas_deleted)


def create_schedule_handlers(queue, config, origin: str = ""):
    """Build the reconciler and reclaimer wired to the process-wide collaborators."""
    from services.concurrency_counter import ConcurrencyCounter
    from services.credit_service import CreditService
    from services.notification_service import get_notification_service

    reconciler = ScheduleResultReconciler(
        counter=ConcurrencyCounter(config=config),
        credit_service=CreditService(),
        notification_service=get_notification_service(),
        config=config,
        origin=origin
    )
    reclaimer = CanvasDeletionReclaimer(queue=queue)
    return reconciler, reclaimer
