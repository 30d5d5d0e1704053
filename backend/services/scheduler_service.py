# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Workflow Scheduler Service

Polling-based cron scanner that finds due workflow schedules and pushes them
through the trigger pipeline onto the schedule execution queue.

Features:
- Fixed-interval polling (schedule_scan_interval_seconds, default 60s)
- Distributed lock per tick so only one instance scans
- Compare-and-swap on next_run_at so a fire instant triggers at most once
- Quota enforcement before every trigger
- Automatic next_run_at calculation using croniter
- On-demand check for freshly created/updated schedules
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from config import ScheduleConfig, DEFAULT_SCHEDULE_CONFIG, get_schedule_config, settings
from core.distributed_lock import DistributedLock, get_distributed_lock
from core.exceptions import InvalidCronExpressionError
from core.task_queue import TaskQueue, task_queue
from db.database import SessionLocal
from models.workflow_schedule import WorkflowSchedule, ScheduleRecordStatus
from services.schedule.constants import (
    SCAN_LOCK_KEY,
    JOB_EXECUTE_SCHEDULED_WORKFLOW,
    SCHEDULE_JOB_ATTEMPTS,
    SCHEDULE_JOB_BACKOFF_DELAY_MS,
    SCHEDULE_RUN_TRIGGERED,
    build_job_id,
    classify_schedule_error,
    get_schedule_quota,
)
from services.schedule.cron_utils import (
    compute_next_run,
    ensure_utc,
    get_schedule_type,
    parse_schedule_config,
    utcnow,
)
from services.schedule.priority_service import SchedulePriorityService, get_active_subscription_key
from services.schedule.quota_enforcer import ScheduleQuotaEnforcer
from services.schedule.records import (
    materialize_pending_record,
    create_or_update_scheduled_record,
    set_record_priority,
    fail_record,
)

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Polling-based workflow scheduler.

    Periodically scans for due schedules and triggers each one:
    re-check -> next run -> quota -> CAS advance -> records -> priority -> enqueue.
    """

    def __init__(
        self,
        queue: TaskQueue,
        lock: DistributedLock,
        quota_enforcer: ScheduleQuotaEnforcer,
        priority_service: SchedulePriorityService,
        session_factory: Callable[[], Session] = SessionLocal,
        config: ScheduleConfig = DEFAULT_SCHEDULE_CONFIG
    ):
        """
        Initialize scheduler service.

        Args:
            queue: Schedule execution queue
            lock: Distributed lock guarding the scan
            quota_enforcer: Enforces the per-account active schedule limit
            priority_service: Computes per-account dispatch priority
            session_factory: Database session factory
            config: Schedule settings snapshot
        """
        self.queue = queue
        self.lock = lock
        self.quota_enforcer = quota_enforcer
        self.priority_service = priority_service
        self.session_factory = session_factory
        self.config = config
        self.poll_interval = config.scan_interval_seconds

        self._is_running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._scans_completed = 0
        self._schedules_triggered = 0
        self._last_scan_at: Optional[datetime] = None

        logger.info(f"SchedulerService initialized (poll interval: {self.poll_interval}s)")

    async def start(self):
        """Start the scheduler polling loop."""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self._is_running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Scheduler service started")

    async def stop(self):
        """Stop the scheduler polling loop."""
        if not self._is_running:
            return

        self._is_running = False

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass

        logger.info("Scheduler service stopped")

    async def _poll_loop(self):
        """Main polling loop that scans for due schedules."""
        logger.info(f"Starting scheduler poll loop (interval: {self.poll_interval}s)")

        while self._is_running:
            try:
                await self.scan_and_trigger_schedules()
                await asyncio.sleep(self.poll_interval)

            except asyncio.CancelledError:
                logger.info("Scheduler poll loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in scheduler poll loop: {e}", exc_info=True)
                # Continue running even if a tick fails
                await asyncio.sleep(self.poll_interval)

    async def scan_and_trigger_schedules(self) -> int:
        """
        Run one scan tick.

        Returns:
            Number of due schedules processed (0 when another instance holds the lock)
        """
        release = await self.lock.acquire(SCAN_LOCK_KEY, self.config.scan_lock_ttl_seconds)
        if release is None:
            logger.debug("Schedule scan lock held by another instance, skipping tick")
            return 0

        processed = 0
        try:
            due_schedules = self._find_due_schedules()
            if due_schedules:
                logger.info(f"Found {len(due_schedules)} due schedule(s)")

            for schedule_id in due_schedules:
                try:
                    await self.trigger_schedule(schedule_id)
                except Exception as e:
                    logger.error(f"Error triggering schedule {schedule_id}: {e}", exc_info=True)
                    # Don't re-raise - let other schedules process
                processed += 1

            self._scans_completed += 1
            self._last_scan_at = utcnow()

        except Exception as e:
            logger.error(f"Error scanning due schedules: {e}", exc_info=True)
        finally:
            await release()

        return processed

    def _find_due_schedules(self):
        db: Session = self.session_factory()
        try:
            rows = (
                db.query(WorkflowSchedule.schedule_id)
                .filter(
                    WorkflowSchedule.is_enabled.is_(True),
                    WorkflowSchedule.deleted_at.is_(None),
                    WorkflowSchedule.next_run_at.isnot(None),
                    WorkflowSchedule.next_run_at <= utcnow()
                )
                .order_by(WorkflowSchedule.next_run_at.asc())
                .limit(self.config.scan_batch_size)
                .all()
            )
            return [row[0] for row in rows]
        finally:
            db.close()

    async def check_and_trigger_schedule(self, schedule_id: str) -> bool:
        """
        Trigger a schedule right away if it is already due.

        Used after a schedule is created or updated with a near-future
        next_run_at so its owner does not wait for the next scan.

        Returns:
            False when the schedule is not due or the trigger failed
        """
        db: Session = self.session_factory()
        try:
            schedule = db.query(WorkflowSchedule).filter(
                WorkflowSchedule.schedule_id == schedule_id
            ).first()
            is_due = bool(
                schedule
                and schedule.is_enabled
                and schedule.deleted_at is None
                and schedule.next_run_at is not None
                and ensure_utc(schedule.next_run_at) <= utcnow()
            )
        finally:
            db.close()

        if not is_due:
            return False

        try:
            await self.trigger_schedule(schedule_id)
            return True
        except Exception as e:
            logger.error(f"Error triggering schedule {schedule_id} on demand: {e}", exc_info=True)
            return False

    async def trigger_schedule(self, schedule_id: str) -> Optional[str]:
        """
        Run the trigger pipeline for one schedule.

        Args:
            schedule_id: Schedule to trigger

        Returns:
            Enqueued job id, or None when the trigger was skipped

        Raises:
            Exception: Any step failure other than an invalid cron expression.
                Before the CAS advance the schedule stays due and is retried on
                the next scan; after it the pending record is failed instead
        """
        db: Session = self.session_factory()
        try:
            # 1. Freshness re-check
            schedule = db.query(WorkflowSchedule).filter(
                WorkflowSchedule.schedule_id == schedule_id
            ).first()

            if not schedule or not schedule.is_enabled or schedule.deleted_at is not None:
                logger.debug(f"Schedule {schedule_id} no longer active, skipping")
                return None

            # Raw value as stored; the CAS below compares against it
            observed_next_run_at = schedule.next_run_at
            now = utcnow()
            if observed_next_run_at is None or ensure_utc(observed_next_run_at) > now:
                logger.debug(f"Schedule {schedule_id} already advanced, skipping")
                return None

            uid = schedule.uid
            canvas_id = schedule.canvas_id
            schedule_config = schedule.schedule_config
            scheduled_at = ensure_utc(observed_next_run_at)

            # 2. Next run
            try:
                next_run_at = compute_next_run(
                    schedule.cron_expression,
                    schedule.timezone or self.config.default_timezone,
                    after=now
                )
            except InvalidCronExpressionError as e:
                self._disable_invalid_schedule(db, schedule, e)
                return None

            # 3. Quota
            lookup_key = get_active_subscription_key(db, uid)
            limit = get_schedule_quota(lookup_key, self.config)
            db.commit()

            await self.quota_enforcer.enforce(uid, schedule_id, limit)

            # 4. CAS advance
            result = db.execute(
                update(WorkflowSchedule)
                .where(
                    WorkflowSchedule.schedule_id == schedule_id,
                    WorkflowSchedule.next_run_at == observed_next_run_at
                )
                .values(last_run_at=now, next_run_at=next_run_at, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                logger.info(f"Schedule {schedule_id} was advanced by another process, skipping")
                return None
            db.commit()

            # 5-6. Records
            try:
                record_id = materialize_pending_record(db, schedule_id, uid, canvas_id, scheduled_at, now)
                create_or_update_scheduled_record(db, uid, schedule_id, canvas_id, next_run_at)
                db.commit()
            except Exception:
                db.rollback()
                raise

            # 7-8. Priority and enqueue
            try:
                priority = await self.priority_service.calculate_execution_priority(uid)
                set_record_priority(db, record_id, priority)
                db.commit()

                job_id = await self.queue.enqueue(
                    JOB_EXECUTE_SCHEDULED_WORKFLOW,
                    {
                        "scheduleId": schedule_id,
                        "canvasId": canvas_id,
                        "uid": uid,
                        "scheduledAt": scheduled_at.isoformat(),
                        "priority": priority,
                        "scheduleRecordId": record_id,
                    },
                    job_id=build_job_id(schedule_id, int(scheduled_at.timestamp() * 1000)),
                    priority=priority,
                    max_retries=SCHEDULE_JOB_ATTEMPTS,
                    backoff_delay_ms=SCHEDULE_JOB_BACKOFF_DELAY_MS
                )
            except Exception as e:
                db.rollback()
                self._fail_pending_record(db, record_id, e)
                raise

            self._schedules_triggered += 1
            logger.info(f"Triggered schedule {schedule_id} with priority {priority} (job: {job_id})")

            # 9. Telemetry
            self._track_trigger(uid, schedule_id, record_id, schedule_config, priority)

            return job_id

        finally:
            db.close()

    def _disable_invalid_schedule(self, db: Session, schedule: WorkflowSchedule, error: InvalidCronExpressionError):
        config = parse_schedule_config(schedule.schedule_config)
        config["_disabledReason"] = error.message
        config["_disabledAt"] = utcnow().isoformat()

        schedule.is_enabled = False
        schedule.next_run_at = None
        schedule.schedule_config = config

        try:
            db.commit()
            logger.warning(
                f"Auto-disabled schedule {schedule.schedule_id} due to invalid cron expression "
                f"'{schedule.cron_expression}': {error.message}"
            )
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to disable schedule {schedule.schedule_id}: {e}", exc_info=True)

    def _fail_pending_record(self, db: Session, record_id: str, error: Exception):
        """Fail the record left pending by a trigger that could not be enqueued."""
        try:
            fail_record(
                db,
                record_id,
                [ScheduleRecordStatus.PENDING.value],
                classify_schedule_error(error),
                {"errorMessage": str(error), "errorName": type(error).__name__},
                utcnow()
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to mark record {record_id} failed: {e}")

    def _track_trigger(
        self,
        uid: str,
        schedule_id: str,
        record_id: str,
        schedule_config: Any,
        priority: int
    ):
        try:
            logger.info(
                f"Analytics event: {SCHEDULE_RUN_TRIGGERED}",
                extra={
                    "event": SCHEDULE_RUN_TRIGGERED,
                    "uid": uid,
                    "schedule_id": schedule_id,
                    "schedule_record_id": record_id,
                    "type": get_schedule_type(schedule_config),
                    "priority": priority,
                }
            )
        except Exception as e:
            logger.debug(f"Failed to track {SCHEDULE_RUN_TRIGGERED}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """
        Get scheduler statistics.

        Returns:
            Dictionary with scheduler stats
        """
        return {
            "is_running": self._is_running,
            "poll_interval": self.poll_interval,
            "scans_completed": self._scans_completed,
            "schedules_triggered": self._schedules_triggered,
            "last_scan_at": self._last_scan_at.isoformat() if self._last_scan_at else None,
        }


# Global scheduler instance
_scheduler: Optional[SchedulerService] = None


def get_scheduler() -> SchedulerService:
    """Get the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        from services.notification_service import get_notification_service

        config = get_schedule_config()
        _scheduler = SchedulerService(
            queue=task_queue,
            lock=get_distributed_lock(),
            quota_enforcer=ScheduleQuotaEnforcer(
                queue=task_queue,
                notification_service=get_notification_service(),
                origin=settings.origin
            ),
            priority_service=SchedulePriorityService(config=config),
            config=config
        )
    return _scheduler


async def start_scheduler():
    """Start the global scheduler service."""
    scheduler = get_scheduler()
    await scheduler.start()


async def stop_scheduler():
    """Stop the global scheduler service."""
    global _scheduler
    if _scheduler:
        await _scheduler.stop()
        _scheduler = None
