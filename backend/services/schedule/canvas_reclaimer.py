# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Canvas Deletion Reclaimer

Releases schedules that point at a deleted canvas so they stop counting toward
the account's active schedule limit. Records that already started
(processing/running) are left to finish; only pending and scheduled ones are
failed with CANVAS_DELETED.
"""

import logging
from typing import Callable

from sqlalchemy.orm import Session

from db.database import SessionLocal
from models.workflow_schedule import (
    WorkflowSchedule,
    WorkflowScheduleRecord,
    CANCELLABLE_STATUSES,
    IN_FLIGHT_STATUSES,
)
from services.schedule.constants import ScheduleFailureReason
from services.schedule.cron_utils import utcnow
from services.schedule.events import CanvasDeletedEvent
from services.schedule.quota_enforcer import remove_queued_jobs
from services.schedule.records import fail_records

logger = logging.getLogger(__name__)

CANVAS_DELETED_MESSAGE = "Canvas was deleted, schedule has been released"


class CanvasDeletionReclaimer:
    """Soft-deletes schedules of deleted canvases and fails their queued runs."""

    def __init__(self, queue=None, session_factory: Callable[[], Session] = SessionLocal):
        self.queue = queue
        self.session_factory = session_factory

    async def handle_canvas_deleted(self, event: CanvasDeletedEvent):
        canvas_id, uid = event.canvas_id, event.uid
        schedule_ids = []

        db: Session = self.session_factory()
        try:
            schedules = db.query(WorkflowSchedule).filter(
                WorkflowSchedule.canvas_id == canvas_id,
                WorkflowSchedule.uid == uid,
                WorkflowSchedule.deleted_at.is_(None)
            ).all()

            if not schedules:
                return

            now = utcnow()
            for schedule in schedules:
                schedule_ids.append(schedule.schedule_id)
                schedule.deleted_at = now
                schedule.is_enabled = False
                schedule.next_run_at = None

            failed = fail_records(
                db,
                schedule_ids,
                CANCELLABLE_STATUSES,
                ScheduleFailureReason.CANVAS_DELETED,
                {"reason": CANVAS_DELETED_MESSAGE, "deletedAt": now.isoformat()},
                now
            )

            in_flight = db.query(WorkflowScheduleRecord).filter(
                WorkflowScheduleRecord.schedule_id.in_(schedule_ids),
                WorkflowScheduleRecord.status.in_(IN_FLIGHT_STATUSES)
            ).count()

            db.commit()

            logger.info(
                f"Released {len(schedule_ids)} schedule(s) for deleted canvas {canvas_id}: "
                f"{failed} record(s) failed"
            )
            if in_flight:
                logger.info(
                    f"{in_flight} record(s) for canvas {canvas_id} are still executing "
                    f"and will complete normally"
                )
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to release schedules for deleted canvas {canvas_id}: {e}", exc_info=True)
            return
        finally:
            db.close()

        if self.queue is None:
            return
        try:
            removed = await remove_queued_jobs(self.queue, schedule_ids)
            if removed:
                logger.info(f"Removed {removed} queued job(s) for deleted canvas {canvas_id}")
        except Exception as e:
            logger.error(f"Failed to remove queued jobs for deleted canvas {canvas_id}: {e}", exc_info=True)
