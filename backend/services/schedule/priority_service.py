# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Schedule Priority Service

Computes the dispatch priority (1 = most urgent, max_priority = least) for an
account's next scheduled execution:

1. Base priority from the active subscription plan (PLAN_PRIORITY_MAP),
   default_priority for free/unknown plans
2. +FAILURE_PENALTY per consecutive most-recent failed run (capped at
   MAX_FAILURE_LEVELS)
3. +HIGH_LOAD_PENALTY when the account has more than high_load_threshold
   active schedules
4. Clamped to [1, max_priority]
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import ScheduleConfig, DEFAULT_SCHEDULE_CONFIG
from db.database import SessionLocal
from models.account import Subscription
from models.workflow_schedule import (
    WorkflowSchedule,
    WorkflowScheduleRecord,
    ScheduleRecordStatus,
    TERMINAL_STATUSES,
)
from services.schedule.constants import PLAN_PRIORITY_MAP, PriorityAdjustments

logger = logging.getLogger(__name__)

# How many finished runs are inspected for the failure streak
RECENT_RECORDS_WINDOW = 10


def get_active_subscription_key(db: Session, uid: str) -> Optional[str]:
    """Lookup key of the account's active subscription, None on the free tier."""
    subscription = (
        db.query(Subscription)
        .filter(Subscription.uid == uid, Subscription.status == "active")
        .order_by(Subscription.created_at.desc())
        .first()
    )
    return subscription.lookup_key if subscription else None


def count_active_schedules(db: Session, uid: str) -> int:
    """Enabled, non-deleted schedules owned by the account."""
    return db.query(WorkflowSchedule).filter(
        WorkflowSchedule.uid == uid,
        WorkflowSchedule.is_enabled.is_(True),
        WorkflowSchedule.deleted_at.is_(None)
    ).count()


class SchedulePriorityService:
    """Per-account dispatch priority."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        config: ScheduleConfig = DEFAULT_SCHEDULE_CONFIG
    ):
        self.session_factory = session_factory
        self.config = config

    async def calculate_execution_priority(self, uid: str) -> int:
        """
        Calculate the queue priority for the account's next execution.

        Args:
            uid: Account id

        Returns:
            Integer priority in [1, max_priority]
        """
        db: Session = self.session_factory()
        try:
            lookup_key = get_active_subscription_key(db, uid)
            priority = PLAN_PRIORITY_MAP.get(lookup_key, self.config.default_priority) \
                if lookup_key else self.config.default_priority

            failures = self._consecutive_failures(db, uid)
            priority += min(failures, PriorityAdjustments.MAX_FAILURE_LEVELS) * PriorityAdjustments.FAILURE_PENALTY

            active_schedules = count_active_schedules(db, uid)
            if active_schedules > self.config.high_load_threshold:
                priority += PriorityAdjustments.HIGH_LOAD_PENALTY

            priority = max(1, min(int(priority), self.config.max_priority))

            logger.debug(
                f"Priority for {uid}: {priority} "
                f"(plan: {lookup_key or 'free'}, failures: {failures}, active: {active_schedules})"
            )
            return priority
        finally:
            db.close()

    def _consecutive_failures(self, db: Session, uid: str) -> int:
        statuses = [
            status for (status,) in (
                db.query(WorkflowScheduleRecord.status)
                .filter(
                    WorkflowScheduleRecord.uid == uid,
                    WorkflowScheduleRecord.status.in_(TERMINAL_STATUSES)
                )
                .order_by(WorkflowScheduleRecord.created_at.desc(), WorkflowScheduleRecord.pk.desc())
                .limit(RECENT_RECORDS_WINDOW)
                .all()
            )
        ]

        streak = 0
        for status in statuses:
            if status != ScheduleRecordStatus.FAILED.value:
                break
            streak += 1
        return streak
