# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""Database models for the schedule engine"""
from .workflow_schedule import (
    WorkflowSchedule,
    WorkflowScheduleRecord,
    ScheduleRecordStatus,
)
from .background_task import BackgroundTask, TaskStatus
from .account import User, Subscription, Canvas, CreditUsage
from .coordination import DistributedLockLease, ScheduleConcurrencyCounter

__all__ = [
    "WorkflowSchedule",
    "WorkflowScheduleRecord",
    "ScheduleRecordStatus",
    "BackgroundTask",
    "TaskStatus",
    "User",
    "Subscription",
    "Canvas",
    "CreditUsage",
    "DistributedLockLease",
    "ScheduleConcurrencyCounter",
]
