# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Schedule Quota Enforcer

Brings an over-quota account back to its plan limit while one of its schedules
is being triggered:

1. excess = active schedules - limit
2. Pick the `excess` newest other enabled schedules (the triggering one is exempt)
3. Disable them (is_enabled=false, next_run_at=null)
4. Fail their pending/scheduled/processing records with SCHEDULE_LIMIT_EXCEEDED
5. Remove their waiting/delayed jobs from the queue
6. Send one limit-exceeded email

Re-running on an already-compliant account is a no-op: disabled schedules no
longer match the is_enabled filter.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from db.database import SessionLocal
from models.account import User
from models.workflow_schedule import WorkflowSchedule, ScheduleRecordStatus
from services.schedule.constants import ScheduleFailureReason, DEFAULT_SCHEDULE_NAME
from services.schedule.cron_utils import utcnow
from services.schedule.email_templates import render_limit_exceeded_email
from services.schedule.priority_service import count_active_schedules
from services.schedule.records import fail_records

logger = logging.getLogger(__name__)

LIMIT_EXCEEDED_RECORD_STATUSES = (
    ScheduleRecordStatus.PENDING.value,
    ScheduleRecordStatus.SCHEDULED.value,
    ScheduleRecordStatus.PROCESSING.value,
)


@dataclass
class EnforcementResult:
    """Outcome of one quota enforcement pass."""
    limit: int
    active_count: int
    disabled_schedule_ids: List[str] = field(default_factory=list)
    failed_record_count: int = 0
    removed_job_count: int = 0
    notified: bool = False

    @property
    def enforced(self) -> bool:
        return bool(self.disabled_schedule_ids)


async def remove_queued_jobs(queue, schedule_ids: Iterable[str]) -> int:
    """
    Remove not-yet-started jobs whose payload targets one of the schedules.

    Returns:
        Number of jobs removed
    """
    targets = set(schedule_ids)
    if not targets:
        return 0

    removed = 0
    for job in await queue.list_pending(["waiting", "delayed"]):
        if job.data.get("scheduleId") in targets:
            if await job.remove():
                removed += 1
                logger.info(f"Removed queued job {job.job_id} for schedule {job.data.get('scheduleId')}")
    return removed


class ScheduleQuotaEnforcer:
    """Disables excess schedules for accounts above their plan limit."""

    def __init__(
        self,
        queue,
        notification_service,
        session_factory: Callable[[], Session] = SessionLocal,
        origin: str = ""
    ):
        self.queue = queue
        self.notification_service = notification_service
        self.session_factory = session_factory
        self.origin = origin.rstrip("/")

    async def enforce(self, uid: str, current_schedule_id: str, limit: int) -> EnforcementResult:
        """
        Enforce the active schedule limit for an account.

        Args:
            uid: Account id
            current_schedule_id: Schedule being triggered (never disabled)
            limit: Allowed active schedules

        Returns:
            EnforcementResult describing what changed
        """
        db: Session = self.session_factory()
        try:
            active_count = count_active_schedules(db, uid)
            result = EnforcementResult(limit=limit, active_count=active_count)

            if active_count <= limit:
                return result

            excess = active_count - limit
            victims = (
                db.query(WorkflowSchedule)
                .filter(
                    WorkflowSchedule.uid == uid,
                    WorkflowSchedule.is_enabled.is_(True),
                    WorkflowSchedule.deleted_at.is_(None),
                    WorkflowSchedule.schedule_id != current_schedule_id
                )
                .order_by(WorkflowSchedule.created_at.desc(), WorkflowSchedule.pk.desc())
                .limit(excess)
                .all()
            )

            if not victims:
                return result

            schedule_ids = [s.schedule_id for s in victims]
            schedule_names = [s.name or DEFAULT_SCHEDULE_NAME for s in victims]
            canvas_ids = [s.canvas_id for s in victims]
            now = utcnow()

            logger.warning(
                f"Account {uid} exceeds schedule limit ({active_count}/{limit}), "
                f"disabling {len(schedule_ids)} schedule(s): {', '.join(schedule_ids)}"
            )

            db.execute(
                update(WorkflowSchedule)
                .where(
                    WorkflowSchedule.schedule_id.in_(schedule_ids),
                    WorkflowSchedule.is_enabled.is_(True)
                )
                .values(is_enabled=False, next_run_at=None)
                .execution_options(synchronize_session=False)
            )

            result.failed_record_count = fail_records(
                db,
                schedule_ids,
                LIMIT_EXCEEDED_RECORD_STATUSES,
                ScheduleFailureReason.SCHEDULE_LIMIT_EXCEEDED,
                {
                    "message": f"Active schedule limit exceeded ({active_count}/{limit}). "
                               f"This schedule was paused to bring the account within its plan limit.",
                    "limit": limit,
                    "activeCount": active_count,
                },
                now
            )
            db.commit()
            result.disabled_schedule_ids = schedule_ids

        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        try:
            result.removed_job_count = await remove_queued_jobs(self.queue, schedule_ids)
        except Exception as e:
            logger.error(f"Failed to remove queued jobs for disabled schedules: {e}", exc_info=True)

        result.notified = await self._notify(uid, schedule_names, canvas_ids, limit, active_count)

        logger.info(
            f"Quota enforced for {uid}: disabled {len(schedule_ids)} schedule(s), "
            f"failed {result.failed_record_count} record(s), removed {result.removed_job_count} job(s)"
        )
        return result

    async def _notify(
        self,
        uid: str,
        schedule_names: List[str],
        canvas_ids: List[str],
        limit: int,
        active_count: int
    ) -> bool:
        try:
            user = self._get_user(uid)
            if not user:
                logger.warning(f"Cannot send limit exceeded email: user {uid} not found")
                return False
            if not user.email:
                logger.warning(f"Cannot send limit exceeded email: user {uid} has no email address")
                return False

            if len(canvas_ids) == 1:
                schedules_link = f"{self.origin}/workflow/{canvas_ids[0]}"
            else:
                schedules_link = f"{self.origin}/workflow-list"

            email = render_limit_exceeded_email(
                user_name=user.nickname or "User",
                schedule_names=schedule_names,
                limit=limit,
                current_count=active_count,
                schedules_link=schedules_link,
            )
            return bool(await self.notification_service.send_email(
                to=user.email,
                subject=email.subject,
                html=email.html,
                user=user,
            ))
        except Exception as e:
            logger.error(f"Failed to send limit exceeded email to {uid}: {e}")
            return False

    def _get_user(self, uid: str) -> Optional[User]:
        db: Session = self.session_factory()
        try:
            user = db.query(User).filter(User.uid == uid).first()
            if user:
                db.expunge(user)
            return user
        finally:
            db.close()
