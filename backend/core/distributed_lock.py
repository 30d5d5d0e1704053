# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
PostgreSQL-Backed Distributed Lock

Time-bounded exclusive leases keyed by name, stored in `distributed_locks`.
Used so only one process instance runs a given cron scan tick.

Acquisition:
1. INSERT the lease row (wins when nobody holds the key)
2. On unique violation, take over the row only if its lease has expired
   (single conditional UPDATE, so two contenders cannot both win)

Release deletes the row only while the caller's owner token still matches,
so a holder whose lease expired cannot release a successor's lock.

Usage:
    from core.distributed_lock import get_distributed_lock

    release = await get_distributed_lock().acquire("lock:schedule:scan", 120)
    if release is None:
        return  # Another instance owns this tick
    try:
        ...
    finally:
        await release()
"""

import logging
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.database import SessionLocal
from models.coordination import DistributedLockLease
from services.schedule.cron_utils import utcnow

logger = logging.getLogger(__name__)

ReleaseCallback = Callable[[], Awaitable[None]]


class DistributedLock:
    """Lease-based named lock shared by every process using the same database."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    async def acquire(self, key: str, lease_seconds: int) -> Optional[ReleaseCallback]:
        """
        Try to acquire a lease.

        Args:
            key: Lock name
            lease_seconds: Lease duration; the lock frees itself after this

        Returns:
            Async release callable when acquired, None when another owner holds the lease
            or the store could not be reached
        """
        token = uuid.uuid4().hex
        now = utcnow()
        expires_at = now + timedelta(seconds=lease_seconds)

        db: Session = self.session_factory()
        try:
            try:
                db.add(DistributedLockLease(lock_key=key, owner_token=token, expires_at=expires_at))
                db.commit()
                acquired = True
            except IntegrityError:
                db.rollback()
                result = db.execute(
                    update(DistributedLockLease)
                    .where(
                        DistributedLockLease.lock_key == key,
                        DistributedLockLease.expires_at <= now
                    )
                    .values(owner_token=token, expires_at=expires_at)
                )
                db.commit()
                acquired = result.rowcount == 1
                if acquired:
                    logger.info(f"Took over expired lock '{key}'")

        except Exception as e:
            db.rollback()
            logger.error(f"Failed to acquire lock '{key}': {e}", exc_info=True)
            return None
        finally:
            db.close()

        if not acquired:
            return None

        logger.debug(f"Acquired lock '{key}' (lease: {lease_seconds}s)")

        async def release():
            await self._release(key, token)

        return release

    async def _release(self, key: str, token: str):
        db: Session = self.session_factory()
        try:
            result = db.execute(
                delete(DistributedLockLease).where(
                    DistributedLockLease.lock_key == key,
                    DistributedLockLease.owner_token == token
                )
            )
            db.commit()
            if result.rowcount == 0:
                logger.warning(f"Lock '{key}' was no longer held at release (lease expired)")
            else:
                logger.debug(f"Released lock '{key}'")
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to release lock '{key}': {e}", exc_info=True)
        finally:
            db.close()


# Global lock service
_distributed_lock: Optional[DistributedLock] = None


def get_distributed_lock() -> DistributedLock:
    """Get the global distributed lock service."""
    global _distributed_lock
    if _distributed_lock is None:
        _distributed_lock = DistributedLock()
    return _distributed_lock
