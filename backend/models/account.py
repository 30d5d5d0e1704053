# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Account-side collaborator tables.

The schedule engine only reads these: users for notification addresses,
subscriptions for quota and priority, canvases for workflow titles and
credit_usages for per-execution credit totals.
"""

import datetime
from sqlalchemy import Column, Integer, String, DateTime, Index
from db.database import Base


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class User(Base):
    __tablename__ = "users"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    uid = Column(String(64), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=True)
    nickname = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<User(uid={self.uid}, email={self.email})>"


class Subscription(Base):
    """Billing subscription; only `active` rows grant a paid plan."""
    __tablename__ = "subscriptions"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    uid = Column(String(64), nullable=False, index=True)
    lookup_key = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_subscriptions_uid_status", "uid", "status"),
    )

    def __repr__(self):
        return f"<Subscription(uid={self.uid}, lookup_key={self.lookup_key}, status={self.status})>"


class Canvas(Base):
    __tablename__ = "canvases"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    canvas_id = Column(String(64), nullable=False, unique=True, index=True)
    uid = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Canvas(canvas_id={self.canvas_id}, title={self.title})>"


class CreditUsage(Base):
    __tablename__ = "credit_usages"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    uid = Column(String(64), nullable=False, index=True)
    execution_id = Column(String(64), nullable=True, index=True)
    amount = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<CreditUsage(uid={self.uid}, execution_id={self.execution_id}, amount={self.amount})>"
