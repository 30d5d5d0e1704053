# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Background Task Model

Database-backed priority queue for scheduled workflow executions.

- PostgreSQL-backed job queue (no Redis/BullMQ needed)
- Uses SELECT FOR UPDATE SKIP LOCKED for claim semantics
- Caller-supplied job ids, numeric priority (1 = most urgent)
- Delayed retries with exponential backoff

Job Lifecycle:
1. WAITING - Job created, ready for a worker
2. DELAYED - Job failed and waits for its backoff to elapse (run_at)
3. ACTIVE - Worker claimed the job, executing
4. COMPLETED - Job finished successfully
5. FAILED - Job failed after max retries
6. CANCELLED - Job removed before a worker claimed it
"""

import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, Index
from db.database import Base, JSONType


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class TaskStatus:
    """Queue job states."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    PENDING_STATES = (WAITING, DELAYED)
    TERMINAL_STATES = (COMPLETED, FAILED, CANCELLED)
    ALL = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED, CANCELLED)


class BackgroundTask(Base):
    """
    Queued job.

    Attributes:
        id: Internal row identifier
        job_id: Caller-supplied unique job identifier (e.g. 'schedule:<id>:<ms>')
        task_type: Job name (e.g. 'execute-scheduled-workflow')
        payload: Job input data (JSON)
        priority: Dispatch priority (1 = most urgent, 10 = least)
        status: waiting, delayed, active, completed, failed, cancelled
        run_at: Earliest time a delayed job may be claimed
        result: Job output data (JSON, set on completion)
        error: Error message (set on failure)
        retry_count: Number of failed attempts so far
        max_retries: Total attempts allowed
        backoff_delay_ms: Base delay for exponential backoff between attempts
    """
    __tablename__ = "background_tasks"

    # Primary key
    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(255), nullable=False, unique=True, index=True)

    # Job metadata
    task_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSONType, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=5, index=True)  # Lower = more urgent

    # Job status
    status = Column(
        String(20),
        nullable=False,
        default=TaskStatus.WAITING,
        index=True
    )
    run_at = Column(DateTime(timezone=True), nullable=True)

    # Job result
    result = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)

    # Retry logic
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=1)
    backoff_delay_ms = Column(Integer, nullable=False, default=1000)

    # Timestamps
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        index=True
    )
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_background_tasks_claim", "status", "priority", "created_at"),
    )

    def __repr__(self):
        return (
            f"<BackgroundTask(job_id='{self.job_id}', type='{self.task_type}', "
            f"status='{self.status}', priority={self.priority})>"
        )

    @property
    def duration(self) -> float:
        """
        Calculate job duration in seconds.

        Returns:
            float: Duration in seconds, or None if not completed
        """
        if not self.started_at or not self.completed_at:
            return None

        delta = self.completed_at - self.started_at
        return delta.total_seconds()

    @property
    def is_terminal(self) -> bool:
        """Check if job is in terminal state (completed, failed, cancelled)."""
        return self.status in TaskStatus.TERMINAL_STATES

    @property
    def can_retry(self) -> bool:
        """Check if another attempt is allowed."""
        return self.retry_count < self.max_retries

    def to_dict(self) -> dict:
        """
        Convert job to dictionary for API responses.

        Returns:
            dict: Job data with all fields
        """
        return {
            "id": self.id,
            "job_id": self.job_id,
            "task_type": self.task_type,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status,
            "run_at": self.run_at.isoformat() if self.run_at else None,
            "result": self.result,
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "backoff_delay_ms": self.backoff_delay_ms,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
        }
