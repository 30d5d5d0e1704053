# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""Scheduled workflow execution: scanning, quota, reconciliation."""

from .constants import (
    ScheduleFailureReason,
    FailureAction,
    classify_schedule_error,
    get_failure_action,
    get_schedule_quota,
)
from .events import WorkflowCompletedEvent, WorkflowFailedEvent, CanvasDeletedEvent

__all__ = [
    "ScheduleFailureReason",
    "FailureAction",
    "classify_schedule_error",
    "get_failure_action",
    "get_schedule_quota",
    "WorkflowCompletedEvent",
    "WorkflowFailedEvent",
    "CanvasDeletedEvent",
]
