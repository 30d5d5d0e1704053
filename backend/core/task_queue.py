# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
PostgreSQL-Backed Priority Queue


A job queue using PostgreSQL as the backend, so the schedule engine needs no
Redis/BullMQ deployment. Scheduled workflow executions are dispatched through it.

Key Features:
- PostgreSQL-backed (uses SELECT FOR UPDATE SKIP LOCKED for claim semantics)
- Caller-supplied job ids (one job per trigger instant)
- Priority-based selection (1 = most urgent), FIFO within a priority
- Delayed retry with exponential backoff
- Removal of not-yet-started jobs
- Worker pool with graceful shutdown

Architecture:
- TaskQueue: Main queue interface for enqueuing, listing and removing jobs
- TaskWorker: Worker that claims and executes jobs
- TaskHandlerRegistry: Registry of job name handlers
- QueuedJob: Lightweight view of a pending job returned by list_pending()

Usage:
    from core.task_queue import task_queue, TaskPriority

    # Enqueue job
    job_id = await task_queue.enqueue(
        "execute-scheduled-workflow",
        {"scheduleId": "sch-1"},
        job_id="schedule:sch-1:1767225600000",
        priority=TaskPriority.NORMAL
    )

    # Drop queued jobs for a schedule
    for job in await task_queue.list_pending():
        if job.data.get("scheduleId") == "sch-1":
            await job.remove()
"""

import asyncio
import logging
import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import IntEnum
from typing import Dict, Any, Callable, Optional, List, Sequence
from sqlalchemy.orm import Session
from sqlalchemy import or_, and_, update, func
from sqlalchemy.exc import IntegrityError

from core.exceptions import QueueError
from db.database import SessionLocal
from models.background_task import BackgroundTask, TaskStatus
from services.schedule.constants import QUEUE_SCHEDULE_EXECUTION
from services.schedule.cron_utils import utcnow, ensure_utc

logger = logging.getLogger(__name__)


# =============================================================================
# Task Priority Levels
# =============================================================================

class TaskPriority(IntEnum):
    """
    Job priority levels.

    Lower numbers are executed first.
    """
    URGENT = 1
    HIGH = 3
    NORMAL = 5
    LOW = 10


def backoff_delay(base_delay_ms: int, attempt: int) -> timedelta:
    """Exponential backoff: base, 2*base, 4*base... for attempt 1, 2, 3..."""
    return timedelta(milliseconds=base_delay_ms * (2 ** max(attempt - 1, 0)))


# =============================================================================
# Task Handler Registry
# =============================================================================

class TaskHandlerRegistry:
    """
    Registry of job handlers.

    Handlers are coroutines that execute specific job names.
    """

    def __init__(self):
        """Initialize empty handler registry."""
        self._handlers: Dict[str, Callable] = {}

    def register(self, task_type: str, handler: Callable):
        """
        Register a job handler.

        Args:
            task_type: Job name (e.g., 'execute-scheduled-workflow')
            handler: Async function that executes the job
                     Signature: async def handler(payload: dict, job_id: str) -> dict
        """
        if task_type in self._handlers:
            logger.warning(f"Overwriting existing handler for task type '{task_type}'")

        self._handlers[task_type] = handler
        logger.info(f"Registered handler for task type '{task_type}'")

    def get(self, task_type: str) -> Optional[Callable]:
        """
        Get handler for job name.

        Args:
            task_type: Job name

        Returns:
            Handler function or None if not found
        """
        return self._handlers.get(task_type)

    def has_handler(self, task_type: str) -> bool:
        """Check if handler exists for job name."""
        return task_type in self._handlers

    def list_handlers(self) -> List[str]:
        """Get list of registered job names."""
        return list(self._handlers.keys())


# Global handler registry
_handler_registry = TaskHandlerRegistry()


def register_handler(task_type: str):
    """
    Decorator to register a job handler.

    Usage:
        @register_handler("execute-scheduled-workflow")
        async def handle_scheduled_workflow(payload: dict, job_id: str):
            # Job logic here
            return {"result": "success"}

    Args:
        task_type: Job name
    """
    def decorator(func: Callable):
        _handler_registry.register(task_type, func)
        return func
    return decorator


# =============================================================================
# Task Worker
# =============================================================================

class TaskWorker:
    """
    Worker that claims and executes jobs from the queue.

    Uses SELECT FOR UPDATE SKIP LOCKED followed by a status-conditioned UPDATE,
    so two workers never run the same job.
    """

    def __init__(
        self,
        worker_id: int,
        registry: TaskHandlerRegistry,
        session_factory: Callable[[], Session] = SessionLocal,
        poll_interval: float = 1.0
    ):
        """
        Initialize task worker.

        Args:
            worker_id: Unique worker identifier
            registry: Job handler registry
            session_factory: Database session factory
            poll_interval: Seconds to sleep when the queue is empty
        """
        self.worker_id = worker_id
        self.registry = registry
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.running = False
        self.current_job_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start worker loop."""
        self.running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Worker {self.worker_id} started")

    async def stop(self, timeout: float = 30.0):
        """
        Stop worker gracefully.

        Args:
            timeout: Maximum time to wait for current job to complete
        """
        logger.info(f"Stopping worker {self.worker_id}...")
        self.running = False

        if self._task and not self._task.done():
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Worker {self.worker_id} did not stop within timeout, cancelling...")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        logger.info(f"Worker {self.worker_id} stopped")

    async def _run_loop(self):
        """Main worker loop that claims and executes jobs."""
        logger.info(f"Worker {self.worker_id} loop starting...")

        while self.running:
            try:
                job = await self.claim_next()

                if job:
                    await self.execute(job)
                else:
                    # No jobs available, sleep before checking again
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.error(
                    f"Worker {self.worker_id} encountered error in main loop: {e}",
                    exc_info=True
                )
                # Sleep before retrying
                await asyncio.sleep(5.0)

        logger.info(f"Worker {self.worker_id} loop exited")

    async def claim_next(self) -> Optional[BackgroundTask]:
        """
        Claim the next runnable job.

        Waiting jobs and delayed jobs whose run_at has passed are eligible,
        ordered by priority ascending then creation time. Only job names with
        a handler in this worker's registry are claimed; other jobs stay
        queued for the process that consumes them.

        Returns:
            BackgroundTask (detached, status 'active') or None if no jobs available
        """
        task_types = self.registry.list_handlers()
        if not task_types:
            return None

        db: Session = self.session_factory()
        try:
            now = utcnow()
            candidate = (
                db.query(BackgroundTask)
                .filter(
                    BackgroundTask.task_type.in_(task_types),
                    or_(
                        BackgroundTask.status == TaskStatus.WAITING,
                        and_(
                            BackgroundTask.status == TaskStatus.DELAYED,
                            BackgroundTask.run_at <= now
                        )
                    )
                )
                .order_by(BackgroundTask.priority.asc(), BackgroundTask.created_at.asc(), BackgroundTask.id.asc())
                .with_for_update(skip_locked=True)
                .first()
            )

            if not candidate:
                db.commit()
                return None

            result = db.execute(
                update(BackgroundTask)
                .where(
                    BackgroundTask.id == candidate.id,
                    BackgroundTask.status == candidate.status
                )
                .values(status=TaskStatus.ACTIVE, started_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()

            if result.rowcount != 1:
                # Another worker got there first
                return None

            db.refresh(candidate)
            db.expunge(candidate)

            logger.info(
                f"Worker {self.worker_id} claimed job {candidate.job_id} "
                f"(type: {candidate.task_type}, priority: {candidate.priority})"
            )
            self.current_job_id = candidate.job_id
            return candidate

        except Exception as e:
            db.rollback()
            logger.error(f"Failed to claim job: {e}", exc_info=True)
            return None
        finally:
            db.close()

    async def execute(self, job: BackgroundTask):
        """
        Execute a claimed job and persist the outcome.

        Args:
            job: Job to execute
        """
        logger.info(f"Worker {self.worker_id} executing job {job.job_id} (type: {job.task_type})")

        db: Session = self.session_factory()
        start_time = time.time()

        try:
            handler = self.registry.get(job.task_type)

            if not handler:
                raise ValueError(f"No handler registered for task type '{job.task_type}'")

            result = await handler(job.payload, job.job_id)

            # Job completed successfully
            duration = time.time() - start_time
            job_db = db.query(BackgroundTask).filter(BackgroundTask.id == job.id).first()
            if job_db and job_db.status == TaskStatus.ACTIVE:
                job_db.status = TaskStatus.COMPLETED
                job_db.result = result
                job_db.completed_at = utcnow()
                db.commit()

            logger.info(
                f"Worker {self.worker_id} completed job {job.job_id} "
                f"(type: {job.task_type}, duration: {duration:.2f}s)"
            )

        except Exception as e:
            # Job failed
            duration = time.time() - start_time
            error_msg = f"{type(e).__name__}: {str(e)}\n{traceback.format_exc()}"

            logger.error(
                f"Worker {self.worker_id} failed job {job.job_id} "
                f"(type: {job.task_type}, duration: {duration:.2f}s): {e}",
                exc_info=True
            )

            job_db = db.query(BackgroundTask).filter(BackgroundTask.id == job.id).first()
            if job_db and job_db.status == TaskStatus.ACTIVE:
                job_db.retry_count += 1
                job_db.error = error_msg

                if job_db.retry_count < job_db.max_retries:
                    # Park until the backoff elapses
                    delay = backoff_delay(job_db.backoff_delay_ms, job_db.retry_count)
                    job_db.status = TaskStatus.DELAYED
                    job_db.run_at = utcnow() + delay
                    job_db.started_at = None
                    logger.info(
                        f"Job {job.job_id} will be retried in {delay.total_seconds():.1f}s "
                        f"(attempt {job_db.retry_count + 1}/{job_db.max_retries})"
                    )
                else:
                    job_db.status = TaskStatus.FAILED
                    job_db.completed_at = utcnow()
                    logger.error(f"Job {job.job_id} failed after {job_db.retry_count} attempt(s)")

                db.commit()

        finally:
            self.current_job_id = None
            db.close()


# =============================================================================
# Queued Job View
# =============================================================================

@dataclass
class QueuedJob:
    """A waiting or delayed job as seen by list_pending()."""
    job_id: str
    name: str
    data: Dict[str, Any]
    priority: int
    status: str
    run_at: Optional[Any] = None
    _queue: Optional["TaskQueue"] = field(default=None, repr=False, compare=False)

    async def remove(self) -> bool:
        """Remove this job from the queue if no worker has claimed it yet."""
        if self._queue is None:
            return False
        return await self._queue.cancel_task(self.job_id)


# =============================================================================
# Task Queue
# =============================================================================

class TaskQueue:
    """
    PostgreSQL-backed priority queue with worker pool.

    Main interface for enqueueing, listing and removing jobs.
    """

    def __init__(
        self,
        name: str = "default",
        session_factory: Callable[[], Session] = SessionLocal,
        registry: Optional[TaskHandlerRegistry] = None
    ):
        """
        Initialize task queue.

        Args:
            name: Queue name (for logging)
            session_factory: Database session factory
            registry: Handler registry (default: global registry)
        """
        self.name = name
        self.session_factory = session_factory
        self.registry = registry or _handler_registry
        self.workers: List[TaskWorker] = []
        self.running = False

    def start_workers(self, num_workers: int = 2, poll_interval: float = 1.0):
        """
        Start worker pool.

        Args:
            num_workers: Number of workers to start
            poll_interval: Idle sleep between claim attempts
        """
        if self.running:
            logger.warning("Workers already running")
            return

        logger.info(f"Starting {num_workers} workers for queue '{self.name}'...")
        self.running = True

        for i in range(num_workers):
            worker = TaskWorker(
                worker_id=i,
                registry=self.registry,
                session_factory=self.session_factory,
                poll_interval=poll_interval
            )
            self.workers.append(worker)

        loop = asyncio.get_event_loop()
        for worker in self.workers:
            loop.create_task(worker.start())

        logger.info(f"Started {num_workers} workers")

    async def shutdown(self, timeout: float = 30.0):
        """
        Gracefully shutdown all workers.

        Args:
            timeout: Maximum time to wait for workers to finish
        """
        if not self.running:
            return

        logger.info(f"Shutting down {len(self.workers)} workers...")

        stop_tasks = [worker.stop(timeout=timeout) for worker in self.workers]
        await asyncio.gather(*stop_tasks, return_exceptions=True)

        self.workers.clear()
        self.running = False

        logger.info("All workers stopped")

    async def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any],
        job_id: Optional[str] = None,
        priority: int = TaskPriority.NORMAL,
        max_retries: int = 1,
        backoff_delay_ms: int = 1000,
        delay_ms: int = 0
    ) -> str:
        """
        Enqueue a new job.

        Args:
            task_type: Job name
            payload: Job input data (must be JSON-serializable)
            job_id: Unique job identifier (generated when omitted)
            priority: Job priority (lower = more urgent)
            max_retries: Total attempts allowed
            backoff_delay_ms: Base delay for exponential backoff between attempts
            delay_ms: Initial delay before the job becomes claimable

        Returns:
            Job ID

        Raises:
            QueueError: If the job id already exists or the insert fails
        """
        if not self.registry.has_handler(task_type):
            logger.debug(f"No in-process handler for task type '{task_type}', job waits for an external consumer")

        job_id = job_id or f"{task_type}:{uuid.uuid4().hex}"

        db: Session = self.session_factory()
        try:
            job = BackgroundTask(
                job_id=job_id,
                task_type=task_type,
                payload=payload,
                priority=int(priority),
                max_retries=max_retries,
                backoff_delay_ms=backoff_delay_ms,
                status=TaskStatus.DELAYED if delay_ms > 0 else TaskStatus.WAITING,
                run_at=utcnow() + timedelta(milliseconds=delay_ms) if delay_ms > 0 else None
            )

            db.add(job)
            db.commit()

            logger.info(
                f"Enqueued job {job_id} (type: {task_type}, priority: {priority})",
                extra={
                    "job_id": job_id,
                    "task_type": task_type,
                    "priority": int(priority),
                    "queue": self.name
                }
            )

            return job_id

        except IntegrityError as e:
            db.rollback()
            raise QueueError("enqueue", f"duplicate job id '{job_id}'") from e
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to enqueue job: {e}", exc_info=True)
            raise QueueError("enqueue", str(e)) from e
        finally:
            db.close()

    async def list_pending(
        self,
        states: Sequence[str] = TaskStatus.PENDING_STATES,
        task_type: Optional[str] = None
    ) -> List[QueuedJob]:
        """
        List jobs in the given states (default: waiting and delayed).

        Args:
            states: Job states to include
            task_type: Optional job name filter

        Returns:
            Jobs ordered by priority, then age
        """
        db: Session = self.session_factory()
        try:
            query = db.query(BackgroundTask).filter(BackgroundTask.status.in_(list(states)))
            if task_type:
                query = query.filter(BackgroundTask.task_type == task_type)

            jobs = query.order_by(
                BackgroundTask.priority.asc(), BackgroundTask.created_at.asc(), BackgroundTask.id.asc()
            ).all()

            return [
                QueuedJob(
                    job_id=job.job_id,
                    name=job.task_type,
                    data=job.payload or {},
                    priority=job.priority,
                    status=job.status,
                    run_at=ensure_utc(job.run_at),
                    _queue=self
                )
                for job in jobs
            ]
        finally:
            db.close()

    async def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get job status.

        Args:
            job_id: Job ID

        Returns:
            Job status dict or None if not found
        """
        db: Session = self.session_factory()
        try:
            job = db.query(BackgroundTask).filter(BackgroundTask.job_id == job_id).first()
            if job:
                return job.to_dict()
            return None
        finally:
            db.close()

    async def cancel_task(self, job_id: str) -> bool:
        """
        Cancel a job that no worker has claimed yet.

        Args:
            job_id: Job ID

        Returns:
            True if cancelled, False if not found or already started
        """
        db: Session = self.session_factory()
        try:
            result = db.execute(
                update(BackgroundTask)
                .where(
                    BackgroundTask.job_id == job_id,
                    BackgroundTask.status.in_(TaskStatus.PENDING_STATES)
                )
                .values(status=TaskStatus.CANCELLED, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()

            if result.rowcount == 1:
                logger.info(f"Cancelled job {job_id}")
                return True

            return False

        except Exception as e:
            db.rollback()
            logger.error(f"Failed to cancel job {job_id}: {e}", exc_info=True)
            return False
        finally:
            db.close()

    async def get_queue_stats(self) -> Dict[str, Any]:
        """
        Get queue statistics.

        Returns:
            Dict with per-status counts and worker state
        """
        db: Session = self.session_factory()
        try:
            stats: Dict[str, Any] = {status: 0 for status in TaskStatus.ALL}

            rows = (
                db.query(BackgroundTask.status, func.count(BackgroundTask.id))
                .group_by(BackgroundTask.status)
                .all()
            )
            for status, count in rows:
                stats[status] = count

            stats["queue"] = self.name
            stats["workers"] = len(self.workers)
            stats["workers_running"] = self.running
            return stats

        finally:
            db.close()


# Global queue for scheduled workflow executions
task_queue = TaskQueue(name=QUEUE_SCHEDULE_EXECUTION)


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "TaskQueue",
    "TaskWorker",
    "TaskPriority",
    "TaskHandlerRegistry",
    "QueuedJob",
    "backoff_delay",
    "register_handler",
    "task_queue"
]
