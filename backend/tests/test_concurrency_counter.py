# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Concurrency Counter Tests

Run with: pytest tests/test_concurrency_counter.py -v
"""

from datetime import timedelta

import pytest

from config import ScheduleConfig
from models.coordination import ScheduleConcurrencyCounter
from models.workflow_schedule import ScheduleRecordStatus
from services.concurrency_counter import ConcurrencyCounter
from services.schedule.cron_utils import ensure_utc, utcnow


@pytest.fixture
def counter(session_factory):
    return ConcurrencyCounter(session_factory)


class TestCounter:

    @pytest.mark.asyncio
    async def test_increment_and_decrement(self, counter):
        assert await counter.increment("user-1") == 1
        assert await counter.increment("user-1") == 2
        assert await counter.decrement("user-1") == 1
        assert await counter.get("user-1") == 1

    @pytest.mark.asyncio
    async def test_decrement_never_goes_negative(self, counter):
        assert await counter.decrement("user-1") == 0

        await counter.increment("user-1")
        await counter.decrement("user-1")
        assert await counter.decrement("user-1") == 0

    @pytest.mark.asyncio
    async def test_increment_refreshes_ttl(self, counter, db_session):
        await counter.increment("user-1")

        stored = db_session.query(ScheduleConcurrencyCounter).one()
        remaining = ensure_utc(stored.expires_at) - utcnow()
        assert timedelta(hours=1, minutes=59) < remaining <= timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_expired_counter_reads_zero_and_restarts(self, counter, db_session):
        db_session.add(ScheduleConcurrencyCounter(uid="user-1", value=7, expires_at=utcnow() - timedelta(seconds=1)))
        db_session.commit()

        assert await counter.get("user-1") == 0
        assert await counter.increment("user-1") == 1

    @pytest.mark.asyncio
    async def test_accounts_are_independent(self, counter):
        await counter.increment("user-1")
        await counter.increment("user-2")
        await counter.increment("user-2")

        assert await counter.get("user-1") == 1
        assert await counter.get("user-2") == 2


class TestCapacity:

    @pytest.mark.asyncio
    async def test_in_flight_records_are_authoritative(self, session_factory, make_record):
        counter = ConcurrencyCounter(session_factory, ScheduleConfig(user_max_concurrent=2))
        make_record(status=ScheduleRecordStatus.RUNNING)
        make_record(status=ScheduleRecordStatus.PENDING)

        assert await counter.count_in_flight_records("user-1") == 1
        assert await counter.has_capacity("user-1") is True

        make_record(status=ScheduleRecordStatus.PROCESSING)
        assert await counter.has_capacity("user-1") is False


class TestRecovery:

    @pytest.mark.asyncio
    async def test_rebuild_from_records(self, counter, db_session, make_record):
        make_record(uid="user-1", status=ScheduleRecordStatus.RUNNING)
        make_record(uid="user-1", status=ScheduleRecordStatus.PROCESSING)
        make_record(uid="user-2", status=ScheduleRecordStatus.SUCCESS)
        db_session.add(ScheduleConcurrencyCounter(uid="user-3", value=4, expires_at=utcnow() + timedelta(hours=1)))
        db_session.commit()

        recovered = await counter.recover_from_records()

        assert recovered == {"user-1": 2, "user-3": 0}
        assert await counter.get("user-1") == 2
        assert await counter.get("user-3") == 0

    @pytest.mark.asyncio
    async def test_rebuild_single_account(self, counter, make_record):
        make_record(uid="user-1", status=ScheduleRecordStatus.RUNNING)
        make_record(uid="user-2", status=ScheduleRecordStatus.RUNNING)

        assert await counter.recover_from_records("user-2") == {"user-2": 1}
        assert await counter.get("user-1") == 0

    @pytest.mark.asyncio
    async def test_rebuild_account_without_records(self, counter):
        assert await counter.recover_from_records("user-9") == {"user-9": 0}
