# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
FastAPI Error Handlers for the Schedule Engine

Converts SchedulerException subclasses, request validation errors and
database errors into one JSON error shape:

    {
        "error": "InvalidCronExpressionError",
        "message": "Invalid cron expression: ...",
        "status_code": 400,
        "detail": {"cron_expression": "not-a-cron"}
    }
"""

import logging
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import SchedulerException

logger = logging.getLogger(__name__)


def create_error_response(
    status_code: int,
    error_type: str,
    message: str,
    detail: dict = None
) -> JSONResponse:
    content = {
        "error": error_type,
        "message": message,
        "status_code": status_code
    }
    if detail:
        content["detail"] = detail

    return JSONResponse(status_code=status_code, content=content)


async def scheduler_exception_handler(request: Request, exc: SchedulerException) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}",
        extra={"status_code": exc.status_code, "detail": exc.detail}
    )
    return create_error_response(exc.status_code, exc.__class__.__name__, exc.message, exc.detail)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        }
        for error in exc.errors()
    ]
    logger.warning(f"Validation error: {len(errors)} fields failed validation")

    return create_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "ValidationError",
        "Request validation failed",
        {"errors": errors}
    )


async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    error_message = str(exc.orig) if hasattr(exc, 'orig') else str(exc)
    logger.error(f"Database error: {error_message}", exc_info=True)

    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "DatabaseError",
        "Database operation failed"
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register the schedule engine's exception handlers on the app."""
    app.add_exception_handler(SchedulerException, scheduler_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_error_handler)

    logger.info("Error handlers registered successfully")
