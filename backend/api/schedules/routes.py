# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
API endpoints for the schedule engine.

Operational surface only: scanner/queue statistics, cron expression
validation and the on-demand due check used after a schedule is saved.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from core.exceptions import InvalidCronExpressionError
from services.schedule.cron_utils import compute_next_run

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api/schedules", tags=["schedules"])


# =============================================================================
# Pydantic Schemas
# =============================================================================

class CronValidationRequest(BaseModel):
    """Request to validate a cron expression."""
    cron_expression: str
    timezone: str = "UTC"


class CronValidationResponse(BaseModel):
    """Response with cron validation result."""
    valid: bool
    error: Optional[str] = None
    next_runs: List[str] = []


class ScheduleCheckResponse(BaseModel):
    """Response from an on-demand due check."""
    schedule_id: str
    triggered: bool


class SchedulerStatsResponse(BaseModel):
    scheduler: Dict[str, Any]
    queue: Dict[str, Any]


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/stats", response_model=SchedulerStatsResponse)
async def get_scheduler_stats():
    """Scanner and schedule execution queue statistics."""
    from core.task_queue import task_queue
    from services.scheduler_service import get_scheduler

    return SchedulerStatsResponse(
        scheduler=get_scheduler().get_stats(),
        queue=await task_queue.get_queue_stats()
    )


@router.post("/validate-cron", response_model=CronValidationResponse)
async def validate_cron(request: CronValidationRequest):
    """
    Validate a cron expression and preview its next 5 fire times (UTC).
    """
    return CronValidationResponse(**validate_cron_internal(request.cron_expression, request.timezone))


@router.post("/{schedule_id}/check", response_model=ScheduleCheckResponse)
async def check_schedule(schedule_id: str):
    """
    Trigger the schedule immediately if it is already due.

    Called after a schedule is created or updated so a near-future
    next_run_at does not wait for the next scan.
    """
    from services.scheduler_service import get_scheduler

    triggered = await get_scheduler().check_and_trigger_schedule(schedule_id)
    return ScheduleCheckResponse(schedule_id=schedule_id, triggered=triggered)


def validate_cron_internal(cron_expression: str, tz: str = "UTC", count: int = 5) -> dict:
    """
    Internal cron validation function.

    Returns dict with:
    - valid: bool
    - error: Optional[str]
    - next_runs: List[str] - ISO format datetimes
    """
    next_runs: List[str] = []
    after: Optional[datetime] = None

    try:
        for _ in range(count):
            after = compute_next_run(cron_expression, tz, after=after)
            next_runs.append(after.isoformat())
    except InvalidCronExpressionError as e:
        return {"valid": False, "error": e.message, "next_runs": []}

    return {"valid": True, "error": None, "next_runs": next_runs}
