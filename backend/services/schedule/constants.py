# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Schedule Engine Constants

Queue names, job options, plan priorities, quota resolution and the failure
taxonomy shared by the scanner, the reconciler and the reclaimer.

Failure classification is an ordered rule table: the first matching rule wins
and UNKNOWN_ERROR is the catch-all. Keep the order stable; several messages
match more than one rule (e.g. "schedule limit timeout").
"""

import enum
import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from config import ScheduleConfig, DEFAULT_SCHEDULE_CONFIG


# =============================================================================
# Queue
# =============================================================================

QUEUE_SCHEDULE_EXECUTION = "scheduleExecution"
JOB_EXECUTE_SCHEDULED_WORKFLOW = "execute-scheduled-workflow"

SCAN_LOCK_KEY = "lock:schedule:scan"

# No automatic retry: the user retries failed runs manually
SCHEDULE_JOB_ATTEMPTS = 1
SCHEDULE_JOB_BACKOFF_DELAY_MS = 1000

# Priority assigned to a freshly materialized record until dispatch computes the real one
DEFAULT_RECORD_PRIORITY = 5

DEFAULT_WORKFLOW_TITLE = "Untitled"
DEFAULT_SCHEDULE_NAME = "Scheduled Workflow"
NEXT_RUN_FALLBACK = "Check Dashboard"


def build_job_id(schedule_id: str, timestamp_ms: int) -> str:
    """Job id unique per trigger instant."""
    return f"schedule:{schedule_id}:{timestamp_ms}"


# =============================================================================
# Plans & Quotas
# =============================================================================

FREE_PLAN = "free"

# Lower number = dispatched earlier. Max > Plus > Starter > Maker > Test > Free
PLAN_PRIORITY_MAP = {
    # Max tier
    "refly_max_yearly_stable_v3": 1,
    "refly_max_yearly_limited_offer": 1,

    # Plus tier
    "refly_plus_yearly_stable_v2": 3,
    "refly_plus_monthly_stable_v2": 3,
    "refly_plus_monthly_stable": 3,
    "refly_plus_yearly_limited_offer": 3,

    # Starter tier
    "refly_starter_monthly": 5,

    # Maker tier
    "refly_maker_monthly": 7,

    # Test/trial plans
    "refly_plus_yearly_test_v3": 8,
    "refly_plus_monthly_test_v3": 8,
    "refly_plus_yearly_test_v4": 8,

    FREE_PLAN: 10,
}


class PriorityAdjustments:
    """Penalties added to the base priority (a larger number runs later)."""
    FAILURE_PENALTY = 1
    HIGH_LOAD_PENALTY = 1
    MAX_FAILURE_LEVELS = 3


def get_schedule_quota(
    lookup_key: Optional[str],
    config: ScheduleConfig = DEFAULT_SCHEDULE_CONFIG
) -> int:
    """
    Maximum number of simultaneously enabled schedules for a plan.

    Args:
        lookup_key: Active subscription lookup key (None or 'free' for the free tier)
        config: Schedule configuration

    Returns:
        Allowed active schedule count
    """
    if not lookup_key or lookup_key == FREE_PLAN:
        return config.free_max_active_schedules
    # All paid plans share one quota
    return config.paid_max_active_schedules


# =============================================================================
# Failure Taxonomy
# =============================================================================

class ScheduleFailureReason(str, enum.Enum):
    """Why a schedule execution record ended in `failed`."""
    INSUFFICIENT_CREDITS = "insufficient_credits"
    SCHEDULE_LIMIT_EXCEEDED = "schedule_limit_exceeded"
    SCHEDULE_DELETED = "schedule_deleted"
    SCHEDULE_DISABLED = "schedule_disabled"
    INVALID_CRON_EXPRESSION = "invalid_cron_expression"
    CANVAS_DATA_ERROR = "canvas_data_error"
    CANVAS_DELETED = "canvas_deleted"
    SNAPSHOT_ERROR = "snapshot_error"
    WORKFLOW_EXECUTION_FAILED = "workflow_execution_failed"
    WORKFLOW_EXECUTION_TIMEOUT = "workflow_execution_timeout"
    UNKNOWN_ERROR = "unknown_error"


class FailureAction(str, enum.Enum):
    """User-facing remedy shown next to a failed record."""
    UPGRADE = "upgrade"
    VIEW_SCHEDULE = "view_schedule"
    DEBUG = "debug"


def get_failure_action(reason: Optional[Union[str, ScheduleFailureReason]]) -> FailureAction:
    """Map a failure reason to the action the UI offers."""
    if reason == ScheduleFailureReason.INSUFFICIENT_CREDITS:
        return FailureAction.UPGRADE
    if reason == ScheduleFailureReason.SCHEDULE_LIMIT_EXCEEDED:
        return FailureAction.VIEW_SCHEDULE
    return FailureAction.DEBUG


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    matches: Callable[[str, str], bool]
    reason: ScheduleFailureReason


def _any_pattern(*patterns: str) -> Callable[[str, str], bool]:
    compiled = [re.compile(p, re.IGNORECASE) for p in patterns]

    def matcher(message: str, error_name: str) -> bool:
        return any(p.search(message) for p in compiled)

    return matcher


_credit_patterns = _any_pattern(
    r"credit not available",
    r"insufficient credits?",
    r"ModelUsageQuotaExceeded",
)
_limit_patterns = _any_pattern(r"quota.*exceeded", r"schedule.*limit")


def _credit_matcher(message: str, error_name: str) -> bool:
    if error_name == "ModelUsageQuotaExceeded":
        return True
    return _credit_patterns(message, error_name)


def _limit_matcher(message: str, error_name: str) -> bool:
    if message == ScheduleFailureReason.SCHEDULE_LIMIT_EXCEEDED.value:
        return True
    return _limit_patterns(message, error_name)


# Evaluated top to bottom, first match wins
CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "credits", _credit_matcher, ScheduleFailureReason.INSUFFICIENT_CREDITS
    ),
    ClassificationRule(
        "limits", _limit_matcher, ScheduleFailureReason.SCHEDULE_LIMIT_EXCEEDED
    ),
    ClassificationRule(
        "timeout",
        _any_pattern(r"timeout"),
        ScheduleFailureReason.WORKFLOW_EXECUTION_TIMEOUT,
    ),
    ClassificationRule(
        "cron",
        _any_pattern(r"cron|schedule.*expression|invalid.*expression"),
        ScheduleFailureReason.INVALID_CRON_EXPRESSION,
    ),
    ClassificationRule(
        "canvas_data",
        _any_pattern(r"canvas.*not found", r"invalid.*canvas", r"nodes.*edges"),
        ScheduleFailureReason.CANVAS_DATA_ERROR,
    ),
    ClassificationRule(
        "snapshot",
        _any_pattern(r"snapshot", r"failed to parse", r"storage.*key"),
        ScheduleFailureReason.SNAPSHOT_ERROR,
    ),
    ClassificationRule(
        "execution",
        _any_pattern(r"workflow.*execution", r"execution.*failed", r"agent.*error"),
        ScheduleFailureReason.WORKFLOW_EXECUTION_FAILED,
    ),
)


def classify_schedule_error(error: Union[BaseException, str, None]) -> ScheduleFailureReason:
    """
    Classify an error into a ScheduleFailureReason.

    Args:
        error: Exception (class name and message are both inspected) or message string

    Returns:
        The reason of the first matching rule, UNKNOWN_ERROR when nothing matches
    """
    if error is None or error == "":
        return ScheduleFailureReason.UNKNOWN_ERROR

    if isinstance(error, BaseException):
        message = str(error)
        error_name = type(error).__name__
    else:
        message = str(error)
        error_name = ""

    for rule in CLASSIFICATION_RULES:
        if rule.matches(message, error_name):
            return rule.reason

    return ScheduleFailureReason.UNKNOWN_ERROR


# =============================================================================
# Analytics
# =============================================================================

class SchedulePeriodType:
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"

    KNOWN = (DAILY, WEEKLY, MONTHLY)


SCHEDULE_RUN_TRIGGERED = "schedule_run_triggered"
