# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Pytest Configuration and Fixtures for Schedule Engine Tests.

Every test gets a fresh in-memory SQLite database. StaticPool keeps a single
connection so the services' own sessions (opened through `session_factory`)
see the same data as the test's `db_session`.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.database import Base
import models  # noqa: F401  (registers tables on Base.metadata)
from models.account import User, Subscription, Canvas, CreditUsage
from models.workflow_schedule import (
    WorkflowSchedule,
    WorkflowScheduleRecord,
    ScheduleRecordStatus,
    generate_schedule_record_id,
)
from services.schedule.cron_utils import utcnow


@pytest.fixture
def test_engine():
    """Fresh in-memory database with all tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory handed to services under test."""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def db_session(session_factory):
    """Session for arranging and asserting test data."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def notification_service():
    """Notification service double; send_email reports success."""
    service = MagicMock()
    service.send_email = AsyncMock(return_value=True)
    return service


# =============================================================================
# Data Factories
# =============================================================================

@pytest.fixture
def make_user(db_session):
    def _make_user(uid="user-1", email="owner@example.com", nickname="Ada"):
        user = User(uid=uid, email=email, nickname=nickname)
        db_session.add(user)
        db_session.commit()
        return user
    return _make_user


@pytest.fixture
def make_subscription(db_session):
    def _make_subscription(uid="user-1", lookup_key="refly_plus_monthly_stable", status="active"):
        subscription = Subscription(uid=uid, lookup_key=lookup_key, status=status)
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make_subscription


@pytest.fixture
def make_canvas(db_session):
    def _make_canvas(canvas_id="canvas-1", uid="user-1", title="Daily Digest"):
        canvas = Canvas(canvas_id=canvas_id, uid=uid, title=title)
        db_session.add(canvas)
        db_session.commit()
        return canvas
    return _make_canvas


@pytest.fixture
def make_schedule(db_session):
    """
    Create a schedule. `created_offset` shifts created_at into the past (in
    minutes) so creation order is deterministic.
    """
    def _make_schedule(
        schedule_id="sch-1",
        uid="user-1",
        canvas_id="canvas-1",
        cron_expression="0 * * * *",
        timezone="UTC",
        next_run_at=None,
        is_enabled=True,
        deleted_at=None,
        name=None,
        schedule_config=None,
        created_offset=0
    ):
        now = utcnow()
        schedule = WorkflowSchedule(
            schedule_id=schedule_id,
            uid=uid,
            canvas_id=canvas_id,
            name=name,
            cron_expression=cron_expression,
            timezone=timezone,
            schedule_config=schedule_config,
            is_enabled=is_enabled,
            deleted_at=deleted_at,
            next_run_at=next_run_at,
            created_at=now - timedelta(minutes=created_offset),
            updated_at=now,
        )
        db_session.add(schedule)
        db_session.commit()
        return schedule
    return _make_schedule


@pytest.fixture
def make_record(db_session):
    def _make_record(
        schedule_id="sch-1",
        uid="user-1",
        status=ScheduleRecordStatus.SCHEDULED,
        scheduled_at=None,
        workflow_execution_id=None,
        workflow_title="Daily Digest",
        schedule_record_id=None,
        created_offset=0
    ):
        now = utcnow()
        record = WorkflowScheduleRecord(
            schedule_record_id=schedule_record_id or generate_schedule_record_id(),
            schedule_id=schedule_id,
            uid=uid,
            source_canvas_id="canvas-1",
            canvas_id="",
            workflow_title=workflow_title,
            scheduled_at=scheduled_at or now,
            status=status.value if isinstance(status, ScheduleRecordStatus) else status,
            workflow_execution_id=workflow_execution_id,
            created_at=now - timedelta(minutes=created_offset),
        )
        db_session.add(record)
        db_session.commit()
        return record
    return _make_record


@pytest.fixture
def make_credit_usage(db_session):
    def _make_credit_usage(uid="user-1", execution_id="exec-1", amount=10):
        usage = CreditUsage(uid=uid, execution_id=execution_id, amount=amount)
        db_session.add(usage)
        db_session.commit()
        return usage
    return _make_credit_usage
