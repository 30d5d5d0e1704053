# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Execution record helpers for the trigger pipeline.

Every function works inside the caller's session and leaves committing to it.

A schedule owns at most one `scheduled` record without a workflow execution id
("the next queued slot"). Triggering promotes that slot to `pending`;
forward-provisioning then creates or moves the slot to the following fire time.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from models.account import Canvas
from models.workflow_schedule import (
    WorkflowScheduleRecord,
    ScheduleRecordStatus,
    generate_schedule_record_id,
)
from services.schedule.constants import (
    DEFAULT_RECORD_PRIORITY,
    DEFAULT_WORKFLOW_TITLE,
    ScheduleFailureReason,
)

logger = logging.getLogger(__name__)


def resolve_workflow_title(db: Session, canvas_id: str) -> str:
    title = db.query(Canvas.title).filter(Canvas.canvas_id == canvas_id).scalar()
    return title or DEFAULT_WORKFLOW_TITLE


def find_open_scheduled_record(db: Session, schedule_id: str) -> Optional[WorkflowScheduleRecord]:
    """Oldest `scheduled` record for the schedule that no execution has claimed."""
    return (
        db.query(WorkflowScheduleRecord)
        .filter(
            WorkflowScheduleRecord.schedule_id == schedule_id,
            WorkflowScheduleRecord.status == ScheduleRecordStatus.SCHEDULED.value,
            WorkflowScheduleRecord.workflow_execution_id.is_(None)
        )
        .order_by(WorkflowScheduleRecord.scheduled_at.asc(), WorkflowScheduleRecord.pk.asc())
        .first()
    )


def materialize_pending_record(
    db: Session,
    schedule_id: str,
    uid: str,
    canvas_id: str,
    scheduled_at: datetime,
    now: datetime
) -> str:
    """
    Promote the open scheduled slot to `pending`, or create a pending record.

    Args:
        db: Database session
        schedule_id: Schedule being triggered
        uid: Owning account
        canvas_id: Template canvas
        scheduled_at: Fire instant being triggered (used for new records)
        now: Trigger time

    Returns:
        schedule_record_id of the pending record
    """
    record = find_open_scheduled_record(db, schedule_id)

    if record:
        record.status = ScheduleRecordStatus.PENDING.value
        record.triggered_at = now
        db.flush()
        logger.debug(f"Promoted record {record.schedule_record_id} to pending for schedule {schedule_id}")
        return record.schedule_record_id

    record = WorkflowScheduleRecord(
        schedule_record_id=generate_schedule_record_id(),
        schedule_id=schedule_id,
        uid=uid,
        source_canvas_id=canvas_id,
        canvas_id="",
        workflow_title=resolve_workflow_title(db, canvas_id),
        scheduled_at=scheduled_at,
        triggered_at=now,
        status=ScheduleRecordStatus.PENDING.value,
        priority=DEFAULT_RECORD_PRIORITY,
    )
    db.add(record)
    db.flush()

    logger.info(f"Created pending record {record.schedule_record_id} for schedule {schedule_id}")
    return record.schedule_record_id


def create_or_update_scheduled_record(
    db: Session,
    uid: str,
    schedule_id: str,
    canvas_id: str,
    scheduled_at: datetime
) -> str:
    """
    Upsert the schedule's single open `scheduled` slot for the next fire time.

    Returns:
        schedule_record_id of the scheduled record
    """
    title = resolve_workflow_title(db, canvas_id)
    record = find_open_scheduled_record(db, schedule_id)

    if record:
        record.scheduled_at = scheduled_at
        record.workflow_title = title
        db.flush()
        return record.schedule_record_id

    record = WorkflowScheduleRecord(
        schedule_record_id=generate_schedule_record_id(),
        schedule_id=schedule_id,
        uid=uid,
        source_canvas_id=canvas_id,
        canvas_id="",
        workflow_title=title,
        scheduled_at=scheduled_at,
        status=ScheduleRecordStatus.SCHEDULED.value,
        priority=DEFAULT_RECORD_PRIORITY,
    )
    db.add(record)
    db.flush()
    return record.schedule_record_id


def set_record_priority(db: Session, schedule_record_id: str, priority: int):
    db.execute(
        update(WorkflowScheduleRecord)
        .where(WorkflowScheduleRecord.schedule_record_id == schedule_record_id)
        .values(priority=priority)
        .execution_options(synchronize_session=False)
    )


def fail_records(
    db: Session,
    schedule_ids: Sequence[str],
    statuses: Iterable[str],
    reason: ScheduleFailureReason,
    error_details: Dict[str, Any],
    now: datetime
) -> int:
    """
    Short-circuit records of the given schedules to `failed`.

    Only records currently in one of `statuses` change; finished records keep
    their outcome.

    Returns:
        Number of records failed
    """
    if not schedule_ids:
        return 0

    result = db.execute(
        update(WorkflowScheduleRecord)
        .where(
            WorkflowScheduleRecord.schedule_id.in_(list(schedule_ids)),
            WorkflowScheduleRecord.status.in_(list(statuses))
        )
        .values(
            status=ScheduleRecordStatus.FAILED.value,
            failure_reason=reason.value,
            error_details=error_details,
            completed_at=now
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def fail_record(
    db: Session,
    schedule_record_id: str,
    statuses: Iterable[str],
    reason: ScheduleFailureReason,
    error_details: Dict[str, Any],
    now: datetime
) -> int:
    """Single-record variant of fail_records()."""
    result = db.execute(
        update(WorkflowScheduleRecord)
        .where(
            WorkflowScheduleRecord.schedule_record_id == schedule_record_id,
            WorkflowScheduleRecord.status.in_(list(statuses))
        )
        .values(
            status=ScheduleRecordStatus.FAILED.value,
            failure_reason=reason.value,
            error_details=error_details,
            completed_at=now
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
