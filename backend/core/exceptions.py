# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Custom Exception Hierarchy for the Schedule Engine

Provides standardized exceptions for consistent error handling across the
scanner, queue and notification paths.

Usage:
    from core.exceptions import InvalidCronExpressionError

    try:
        next_run = compute_next_run(schedule.cron_expression, schedule.timezone)
    except InvalidCronExpressionError as e:
        disable_schedule(schedule, reason=str(e))

Architecture:
- Base SchedulerException for all custom exceptions
- All exceptions include message and detail attributes
- to_dict() gives a JSON-safe payload for error_details columns and logs
"""

from typing import Optional, Dict, Any


# =============================================================================
# Base Exception
# =============================================================================

class SchedulerException(Exception):
    """
    Base exception for all schedule engine exceptions.

    All custom exceptions should inherit from this class to ensure
    consistent error handling across the application.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        detail: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.detail = detail or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "detail": self.detail
        }


# =============================================================================
# Business Logic Exceptions
# =============================================================================

class InvalidCronExpressionError(SchedulerException):
    """Cron expression or timezone could not be parsed."""

    def __init__(
        self,
        cron_expression: str,
        reason: str,
        detail: Optional[Dict[str, Any]] = None
    ):
        full_message = f"Invalid cron expression: {reason}"
        detail = detail or {}
        detail["cron_expression"] = cron_expression
        super().__init__(full_message, status_code=400, detail=detail)


class QueueError(SchedulerException):
    """Priority queue operation failed."""

    def __init__(
        self,
        operation: str,
        message: str,
        detail: Optional[Dict[str, Any]] = None
    ):
        full_message = f"Queue {operation} failed: {message}"
        detail = detail or {}
        detail["operation"] = operation
        super().__init__(full_message, status_code=503, detail=detail)


class NotificationError(SchedulerException):
    """Email delivery failed."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        detail: Optional[Dict[str, Any]] = None
    ):
        detail = detail or {}
        detail["retryable"] = retryable
        self.retryable = retryable
        super().__init__(message, status_code=502, detail=detail)


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "SchedulerException",
    "InvalidCronExpressionError",
    "QueueError",
    "NotificationError",
]
