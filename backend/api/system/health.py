# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Health Check API

Endpoints:
- GET /health - Basic health check (fast, for load balancers)
- GET /health/detailed - Database, queue worker and scheduler status

Usage:
    curl http://localhost:8765/health
    curl http://localhost:8765/health/detailed
"""

import logging
import time
from typing import Any, Dict

from fastapi import APIRouter
from pydantic import BaseModel

from db.database import check_db_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# =============================================================================
# Response Models
# =============================================================================

class HealthStatus(BaseModel):
    """Basic health status."""
    status: str  # "healthy", "degraded", "unhealthy"
    message: str
    timestamp: float


class DetailedHealthStatus(BaseModel):
    """Detailed health status with component diagnostics."""
    status: str
    message: str
    timestamp: float
    components: Dict[str, Dict[str, Any]]


# =============================================================================
# Health Check Endpoints
# =============================================================================

@router.get("", response_model=HealthStatus)
async def health_check():
    """Basic health check endpoint."""
    return HealthStatus(
        status="healthy",
        message="Schedule engine is running",
        timestamp=time.time()
    )


@router.get("/detailed", response_model=DetailedHealthStatus)
async def detailed_health_check():
    """
    Detailed health check.

    Checks:
    - Database connectivity
    - Schedule execution queue workers
    - Scheduler poll loop
    """
    components = {
        "database": check_db_health(),
        "queue_workers": _check_queue_workers(),
        "scheduler": _check_scheduler(),
    }

    overall_status = "healthy"
    if any(component.get("status") != "healthy" for component in components.values()):
        overall_status = "degraded"

    return DetailedHealthStatus(
        status=overall_status,
        message="All systems operational" if overall_status == "healthy" else "Some components are degraded",
        timestamp=time.time(),
        components=components
    )


def _check_queue_workers() -> Dict[str, Any]:
    try:
        from config import settings
        from core.task_queue import task_queue

        if settings.schedule_queue_workers <= 0:
            # Jobs are consumed by the execution engine
            return {
                "status": "healthy",
                "active_workers": 0,
                "message": "Queue consumed externally"
            }

        if not task_queue.workers:
            return {
                "status": "unhealthy",
                "active_workers": 0,
                "message": "No queue workers running"
            }

        active_workers = sum(1 for worker in task_queue.workers if worker.running)
        return {
            "status": "healthy" if active_workers else "unhealthy",
            "active_workers": active_workers,
            "total_workers": len(task_queue.workers),
        }
    except Exception as e:
        logger.error(f"Worker health check failed: {e}", exc_info=True)
        return {"status": "unknown", "error": str(e)}


def _check_scheduler() -> Dict[str, Any]:
    try:
        from services.scheduler_service import get_scheduler

        stats = get_scheduler().get_stats()
        return {"status": "healthy" if stats["is_running"] else "unhealthy", **stats}
    except Exception as e:
        logger.error(f"Scheduler health check failed: {e}", exc_info=True)
        return {"status": "unknown", "error": str(e)}
