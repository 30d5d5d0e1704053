# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Cross-process coordination tables.

DistributedLockLease: short-lived named leases (e.g. the cron scan lock).
ScheduleConcurrencyCounter: advisory per-account in-flight execution counter.
"""

from sqlalchemy import Column, Integer, String, DateTime
from db.database import Base


class DistributedLockLease(Base):
    """
    Named lease held by one process until released or expired.

    A lease whose expires_at has passed may be taken over by any caller,
    so a crashed holder never blocks the key for longer than one lease.
    """
    __tablename__ = "distributed_locks"

    lock_key = Column(String(255), primary_key=True)
    owner_token = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<DistributedLockLease(lock_key={self.lock_key}, expires_at={self.expires_at})>"


class ScheduleConcurrencyCounter(Base):
    """Number of scheduled executions in flight for one account."""
    __tablename__ = "schedule_concurrency_counters"

    uid = Column(String(64), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<ScheduleConcurrencyCounter(uid={self.uid}, value={self.value})>"
