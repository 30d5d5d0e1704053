# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Per-Account Concurrency Counter

Advisory count of scheduled executions in flight per account, stored in
`schedule_concurrency_counters`. Incremented when an execution is dispatched
and decremented by the result reconciler.

The counter carries a TTL so a leaked slot heals itself; the authoritative
admission check counts `processing`/`running` records instead (see
has_capacity), and recover_from_records() rebuilds counters from that source.
"""

import logging
from datetime import timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import ScheduleConfig, DEFAULT_SCHEDULE_CONFIG
from db.database import SessionLocal
from models.coordination import ScheduleConcurrencyCounter
from models.workflow_schedule import WorkflowScheduleRecord, IN_FLIGHT_STATUSES
from services.schedule.cron_utils import utcnow, ensure_utc

logger = logging.getLogger(__name__)


class ConcurrencyCounter:
    """Database-backed per-account counter with expiry."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        config: ScheduleConfig = DEFAULT_SCHEDULE_CONFIG
    ):
        self.session_factory = session_factory
        self.config = config

    def _expiry(self):
        return utcnow() + timedelta(seconds=self.config.user_concurrent_ttl_seconds)

    async def increment(self, uid: str) -> int:
        """
        Increment the account counter and refresh its TTL.

        Returns:
            New counter value
        """
        db: Session = self.session_factory()
        try:
            for _ in range(2):
                counter = (
                    db.query(ScheduleConcurrencyCounter)
                    .filter(ScheduleConcurrencyCounter.uid == uid)
                    .with_for_update()
                    .first()
                )
                try:
                    if counter is None:
                        counter = ScheduleConcurrencyCounter(uid=uid, value=1, expires_at=self._expiry())
                        db.add(counter)
                    elif counter.expires_at and ensure_utc(counter.expires_at) <= utcnow():
                        counter.value = 1
                        counter.expires_at = self._expiry()
                    else:
                        counter.value += 1
                        counter.expires_at = self._expiry()
                    db.commit()
                    return counter.value
                except IntegrityError:
                    # Concurrent first insert for this uid; retry as an update
                    db.rollback()

            raise RuntimeError(f"Could not increment concurrency counter for {uid}")

        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def decrement(self, uid: str) -> int:
        """
        Decrement the account counter, never below zero.

        Returns:
            New counter value

        Raises:
            SQLAlchemyError: When the store is unreachable (callers log and continue)
        """
        db: Session = self.session_factory()
        try:
            db.execute(
                update(ScheduleConcurrencyCounter)
                .where(
                    ScheduleConcurrencyCounter.uid == uid,
                    ScheduleConcurrencyCounter.value > 0
                )
                .values(value=ScheduleConcurrencyCounter.value - 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()

            value = (
                db.query(ScheduleConcurrencyCounter.value)
                .filter(ScheduleConcurrencyCounter.uid == uid)
                .scalar()
            )
            return value or 0
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def get(self, uid: str) -> int:
        """Current counter value (0 when absent or expired)."""
        db: Session = self.session_factory()
        try:
            counter = db.query(ScheduleConcurrencyCounter).filter(
                ScheduleConcurrencyCounter.uid == uid
            ).first()
            if counter is None:
                return 0
            if counter.expires_at and ensure_utc(counter.expires_at) <= utcnow():
                return 0
            return counter.value
        finally:
            db.close()

    async def count_in_flight_records(self, uid: str) -> int:
        """Authoritative in-flight count from the record store."""
        db: Session = self.session_factory()
        try:
            return db.query(WorkflowScheduleRecord).filter(
                WorkflowScheduleRecord.uid == uid,
                WorkflowScheduleRecord.status.in_(IN_FLIGHT_STATUSES)
            ).count()
        finally:
            db.close()

    async def has_capacity(self, uid: str) -> bool:
        """Whether the account may start another scheduled execution."""
        in_flight = await self.count_in_flight_records(uid)
        return in_flight < self.config.user_max_concurrent

    async def recover_from_records(self, uid: Optional[str] = None) -> Dict[str, int]:
        """
        Rebuild counters from processing/running records.

        Args:
            uid: Restrict recovery to one account (default: every account with a counter
                 or an in-flight record)

        Returns:
            Mapping uid -> recovered value
        """
        db: Session = self.session_factory()
        try:
            query = (
                db.query(WorkflowScheduleRecord.uid, func.count(WorkflowScheduleRecord.pk))
                .filter(WorkflowScheduleRecord.status.in_(IN_FLIGHT_STATUSES))
            )
            if uid:
                query = query.filter(WorkflowScheduleRecord.uid == uid)
            recovered = {row_uid: count for row_uid, count in query.group_by(WorkflowScheduleRecord.uid).all()}

            counters_query = db.query(ScheduleConcurrencyCounter)
            if uid:
                counters_query = counters_query.filter(ScheduleConcurrencyCounter.uid == uid)
            existing = {counter.uid: counter for counter in counters_query.all()}

            if uid and uid not in recovered:
                recovered[uid] = 0
            for stale_uid in existing:
                recovered.setdefault(stale_uid, 0)

            expires_at = self._expiry()
            for counter_uid, value in recovered.items():
                counter = existing.get(counter_uid)
                if counter is None:
                    db.add(ScheduleConcurrencyCounter(uid=counter_uid, value=value, expires_at=expires_at))
                else:
                    counter.value = value
                    counter.expires_at = expires_at

            db.commit()
            logger.info(f"Recovered concurrency counters for {len(recovered)} account(s)")
            return recovered

        except Exception as e:
            db.rollback()
            logger.error(f"Failed to recover concurrency counters: {e}", exc_info=True)
            raise
        finally:
            db.close()
