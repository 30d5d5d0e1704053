# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Workflow Schedule Models

Database models for recurring workflow schedules and their execution history.

WorkflowSchedule: Defines when a canvas should run automatically.
WorkflowScheduleRecord: Tracks individual trigger attempts (scheduled or ad-hoc).
"""

import datetime
import enum
import uuid
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index
from db.database import Base, JSONType


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def generate_schedule_record_id() -> str:
    """Generate a new schedule record identifier."""
    return f"sr-{uuid.uuid4().hex}"


class ScheduleRecordStatus(str, enum.Enum):
    """Status of a schedule execution record."""
    SCHEDULED = "scheduled"    # Future slot, not yet due
    PENDING = "pending"        # Queued, waiting for a worker
    PROCESSING = "processing"  # Dequeued, preparing snapshot
    RUNNING = "running"        # Workflow is executing
    SUCCESS = "success"        # Completed successfully
    FAILED = "failed"          # Failed with a classified reason


# Records a quota or deletion cascade may still short-circuit
CANCELLABLE_STATUSES = (
    ScheduleRecordStatus.PENDING.value,
    ScheduleRecordStatus.SCHEDULED.value,
)
IN_FLIGHT_STATUSES = (
    ScheduleRecordStatus.PROCESSING.value,
    ScheduleRecordStatus.RUNNING.value,
)
TERMINAL_STATUSES = (
    ScheduleRecordStatus.SUCCESS.value,
    ScheduleRecordStatus.FAILED.value,
)


class WorkflowSchedule(Base):
    """
    Cron-based workflow schedule.

    Attributes:
        schedule_id: Unique schedule identifier
        canvas_id: Canvas (workflow definition) to execute
        uid: Owning account
        name: Optional human-readable schedule name
        cron_expression: Standard cron expression (e.g., "0 9 * * *" for 9 AM daily)
        timezone: IANA timezone for cron evaluation
        is_enabled: Whether the schedule is active
        deleted_at: Soft-delete timestamp (null while the schedule exists)
        schedule_config: Opaque config blob ({type: daily|weekly|monthly, ...}),
            plus _disabledReason/_disabledAt when auto-disabled
        last_run_at: Timestamp of last trigger
        next_run_at: Next fire time (indexed for polling, null = will not fire)
    """
    __tablename__ = "workflow_schedules"

    # Primary key
    pk = Column(Integer, primary_key=True, autoincrement=True)

    # Identity
    schedule_id = Column(String(64), nullable=False, unique=True, index=True)
    canvas_id = Column(String(64), nullable=False, index=True)
    uid = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=True)

    # Cron configuration
    cron_expression = Column(String(100), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    schedule_config = Column(JSONType, nullable=True)

    # Lifecycle
    is_enabled = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Tracking
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_workflow_schedules_due", "is_enabled", "deleted_at", "next_run_at"),
        Index("ix_workflow_schedules_uid_created", "uid", "created_at"),
    )

    def __repr__(self):
        return (
            f"<WorkflowSchedule(schedule_id={self.schedule_id}, canvas_id={self.canvas_id}, "
            f"cron='{self.cron_expression}', enabled={self.is_enabled})>"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "schedule_id": self.schedule_id,
            "canvas_id": self.canvas_id,
            "uid": self.uid,
            "name": self.name,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "schedule_config": self.schedule_config,
            "is_enabled": self.is_enabled,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WorkflowScheduleRecord(Base):
    """
    One trigger attempt of a schedule (or an ad-hoc run).

    Attributes:
        schedule_record_id: Unique record identifier
        schedule_id: Parent schedule (null for non-scheduled runs)
        uid: Owning account
        source_canvas_id: Template canvas the run was created from
        canvas_id: Concrete execution canvas (empty until execution starts)
        workflow_title: Canvas title captured at trigger time
        status: scheduled -> pending -> processing -> running -> success | failed
        credit_used: Credits consumed by the execution
        failure_reason: ScheduleFailureReason value when failed
        error_details: Diagnostic payload (JSON)
        workflow_execution_id: Assigned by the execution engine
        priority: Dispatch priority (1-10, 1 = most urgent)
        snapshot_storage_key: Set when a canvas snapshot exists (retry source)
    """
    __tablename__ = "workflow_schedule_records"

    # Primary key
    pk = Column(Integer, primary_key=True, autoincrement=True)

    # Identity
    schedule_record_id = Column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
        default=generate_schedule_record_id
    )
    schedule_id = Column(String(64), nullable=True, index=True)
    uid = Column(String(64), nullable=False, index=True)

    # Provenance
    source_canvas_id = Column(String(64), nullable=True)
    canvas_id = Column(String(64), nullable=False, default="")
    workflow_title = Column(String(255), nullable=False, default="")

    # Timing
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    triggered_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Status
    status = Column(
        String(20),
        nullable=False,
        default=ScheduleRecordStatus.SCHEDULED.value,
        index=True
    )

    # Outcome
    credit_used = Column(Integer, nullable=False, default=0)
    failure_reason = Column(String(64), nullable=True)
    error_details = Column(JSONType, nullable=True)
    workflow_execution_id = Column(String(64), nullable=True, index=True)
    priority = Column(Integer, nullable=False, default=5)
    snapshot_storage_key = Column(String(512), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_workflow_schedule_records_schedule_status", "schedule_id", "status"),
        Index("ix_workflow_schedule_records_uid_status", "uid", "status"),
    )

    def __repr__(self):
        return (
            f"<WorkflowScheduleRecord(schedule_record_id={self.schedule_record_id}, "
            f"schedule_id={self.schedule_id}, status='{self.status}')>"
        )

    @property
    def duration(self) -> float | None:
        """Calculate execution duration in seconds."""
        if not self.triggered_at or not self.completed_at:
            return None
        return (self.completed_at - self.triggered_at).total_seconds()

    @property
    def is_terminal(self) -> bool:
        """Check if the record is in a terminal state."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_retry(self) -> bool:
        """A stored snapshot means this attempt re-runs a prior snapshot."""
        return bool(self.snapshot_storage_key)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "schedule_record_id": self.schedule_record_id,
            "schedule_id": self.schedule_id,
            "uid": self.uid,
            "source_canvas_id": self.source_canvas_id,
            "canvas_id": self.canvas_id,
            "workflow_title": self.workflow_title,
            "status": self.status,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "triggered_at": self.triggered_at.isoformat() if self.triggered_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "credit_used": self.credit_used,
            "failure_reason": self.failure_reason,
            "error_details": self.error_details,
            "workflow_execution_id": self.workflow_execution_id,
            "priority": self.priority,
            "snapshot_storage_key": self.snapshot_storage_key,
            "duration": self.duration,
        }
