# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Execution Result Reconciler

Finalizes schedule execution records from execution engine signals
(`workflow.completed` / `workflow.failed`):

1. Look up the record (signals without a schedule_record_id are ignored)
2. Decrement the account concurrency counter for scheduled runs
3. Resolve credit usage (0 when unavailable)
4. Persist status, completed_at, credit_used and, on failure, the classified
   failure_reason and error_details
5. Email the owner for scheduled runs (best-effort)

A crash mid-way still decrements the counter once, so a slot cannot leak.
Re-delivery of a signal for a record that already carries that outcome is a
no-op. The final write only applies to a non-terminal record, so of two
deliveries racing across processes exactly one finalizes and emails.
"""

import logging
from typing import Callable, Optional, Tuple, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from config import ScheduleConfig, DEFAULT_SCHEDULE_CONFIG
from db.database import SessionLocal
from models.account import User
from models.workflow_schedule import (
    WorkflowSchedule,
    WorkflowScheduleRecord,
    ScheduleRecordStatus,
    TERMINAL_STATUSES,
)
from services.schedule.constants import (
    ScheduleFailureReason,
    classify_schedule_error,
    DEFAULT_SCHEDULE_NAME,
    NEXT_RUN_FALLBACK,
)
from services.schedule.cron_utils import compute_next_run, format_date_time, utcnow
from services.schedule.email_templates import (
    render_insufficient_credits_email,
    render_schedule_failed_email,
    render_schedule_success_email,
)
from services.schedule.events import WorkflowCompletedEvent, WorkflowFailedEvent

logger = logging.getLogger(__name__)

WorkflowEvent = Union[WorkflowCompletedEvent, WorkflowFailedEvent]


class ScheduleResultReconciler:
    """Handles execution outcome signals for schedule records."""

    def __init__(
        self,
        counter,
        credit_service,
        notification_service,
        session_factory: Callable[[], Session] = SessionLocal,
        config: ScheduleConfig = DEFAULT_SCHEDULE_CONFIG,
        origin: str = ""
    ):
        self.counter = counter
        self.credit_service = credit_service
        self.notification_service = notification_service
        self.session_factory = session_factory
        self.config = config
        self.origin = origin.rstrip("/")

    async def handle_workflow_completed(self, event: WorkflowCompletedEvent):
        if not event.schedule_record_id:
            return
        await self._handle_workflow_event(event, ScheduleRecordStatus.SUCCESS)

    async def handle_workflow_failed(self, event: WorkflowFailedEvent):
        if not event.schedule_record_id:
            return
        await self._handle_workflow_event(event, ScheduleRecordStatus.FAILED)

    async def _handle_workflow_event(self, event: WorkflowEvent, status: ScheduleRecordStatus):
        event_type = "workflow.completed" if status == ScheduleRecordStatus.SUCCESS else "workflow.failed"
        record_id = event.schedule_record_id
        is_scheduled = event.is_scheduled
        record_uid: Optional[str] = None
        counter_decremented = False

        try:
            logger.info(f"Processing {event_type} event for schedule record {record_id}")

            record_state = self._get_record_state(record_id)
            if record_state is None:
                logger.warning(f"Record {record_id} not found for {event_type} event")
                return
            record_uid, current_status = record_state

            if is_scheduled:
                counter_decremented = await self._decrement_counter(record_uid)

            if current_status in TERMINAL_STATUSES:
                if current_status == status.value:
                    logger.info(f"Record {record_id} already {current_status}, ignoring duplicate {event_type}")
                else:
                    logger.info(
                        f"Record {record_id} was already finalized as {current_status}, "
                        f"keeping it over {event_type}"
                    )
                return

            credit_used = await self._calculate_credit_usage(record_uid, event.execution_id)

            failure_reason: Optional[ScheduleFailureReason] = None
            error_details = None
            if status == ScheduleRecordStatus.FAILED:
                error_details = dict(getattr(event, "error_details", None) or {})
                error_message = error_details.get("errorMessage")
                failure_reason = (
                    classify_schedule_error(error_message)
                    if error_message
                    else ScheduleFailureReason.WORKFLOW_EXECUTION_FAILED
                )

            finalized = self._update_record(record_id, status, credit_used, failure_reason, error_details)

            if finalized and is_scheduled:
                await self._send_email(event, status, failure_reason, error_details)

        except Exception as e:
            logger.error(f"Failed to process {event_type} event: {e}", exc_info=True)

            # A crash must not leak a concurrency slot
            if is_scheduled and record_uid and not counter_decremented:
                await self._decrement_counter(record_uid, in_error_handler=True)

    def _get_record_state(self, record_id: str) -> Optional[Tuple[str, str]]:
        db: Session = self.session_factory()
        try:
            row = (
                db.query(WorkflowScheduleRecord.uid, WorkflowScheduleRecord.status)
                .filter(WorkflowScheduleRecord.schedule_record_id == record_id)
                .first()
            )
            return (row[0], row[1]) if row else None
        finally:
            db.close()

    async def _decrement_counter(self, uid: str, in_error_handler: bool = False) -> bool:
        context = " in error handler" if in_error_handler else ""
        try:
            await self.counter.decrement(uid)
            logger.debug(f"Decremented concurrency counter for user {uid}{context}")
            return True
        except Exception as e:
            logger.warning(f"Failed to decrement concurrency counter for user {uid}{context}: {e}")
            return False

    async def _calculate_credit_usage(self, uid: str, execution_id: str) -> int:
        try:
            return int(await self.credit_service.count_execution_credit_usage(uid, execution_id) or 0)
        except Exception as e:
            logger.warning(f"Failed to calculate credit usage for execution {execution_id}: {e}")
            return 0

    def _update_record(
        self,
        record_id: str,
        status: ScheduleRecordStatus,
        credit_used: int,
        failure_reason: Optional[ScheduleFailureReason],
        error_details: Optional[dict]
    ) -> bool:
        """
        Finalize the record unless another delivery already did.

        Returns:
            True when this call wrote the outcome
        """
        values = {
            "status": status.value,
            "completed_at": utcnow(),
            "credit_used": credit_used,
        }
        if failure_reason is not None:
            values["failure_reason"] = failure_reason.value
            values["error_details"] = error_details

        db: Session = self.session_factory()
        try:
            result = db.execute(
                update(WorkflowScheduleRecord)
                .where(
                    WorkflowScheduleRecord.schedule_record_id == record_id,
                    WorkflowScheduleRecord.status.notin_(TERMINAL_STATUSES)
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if result.rowcount != 1:
            logger.info(f"Record {record_id} was finalized concurrently, skipping {status.value}")
            return False

        logger.info(
            f"Record {record_id} finalized as {status.value}"
            + (f" ({failure_reason.value})" if failure_reason else ""),
            extra={"schedule_record_id": record_id, "credit_used": credit_used}
        )
        return True

    async def _send_email(
        self,
        event: WorkflowEvent,
        status: ScheduleRecordStatus,
        failure_reason: Optional[ScheduleFailureReason],
        error_details: Optional[dict]
    ):
        try:
            db: Session = self.session_factory()
            try:
                user = db.query(User).filter(User.uid == event.uid).first()
                record = db.query(WorkflowScheduleRecord).filter(
                    WorkflowScheduleRecord.schedule_record_id == event.schedule_record_id
                ).first()
                schedule = None
                if record and record.schedule_id:
                    schedule = db.query(WorkflowSchedule).filter(
                        WorkflowSchedule.schedule_id == record.schedule_id
                    ).first()
                for instance in (user, record, schedule):
                    if instance is not None:
                        db.expunge(instance)
            finally:
                db.close()

            if not user:
                logger.warning(
                    f"Cannot send {status.value} email: user {event.uid} not found "
                    f"for schedule record {event.schedule_record_id}"
                )
                return
            if not user.email:
                logger.warning(
                    f"Cannot send {status.value} email: user {event.uid} has no email address "
                    f"for schedule record {event.schedule_record_id}"
                )
                return

            next_run_time, tz = self._next_run_time(schedule)
            schedule_name = (record.workflow_title if record else None) or DEFAULT_SCHEDULE_NAME
            run_details_link = f"{self.origin}/run-history/{event.schedule_record_id}"
            scheduled_at = record.scheduled_at if record and record.scheduled_at else utcnow()
            run_time = format_date_time(scheduled_at, tz)
            user_name = user.nickname or "User"

            if status == ScheduleRecordStatus.SUCCESS:
                email = render_schedule_success_email(
                    user_name, schedule_name, run_time, next_run_time, run_details_link
                )
            elif failure_reason == ScheduleFailureReason.INSUFFICIENT_CREDITS:
                email = render_insufficient_credits_email(
                    user_name,
                    schedule_name,
                    run_details_link,
                    current_balance=(error_details or {}).get("creditBalance"),
                    next_run_time=next_run_time,
                )
            else:
                email = render_schedule_failed_email(
                    user_name, schedule_name, run_time, next_run_time, run_details_link
                )

            await self.notification_service.send_email(
                to=user.email,
                subject=email.subject,
                html=email.html,
                user=user,
            )
        except Exception as e:
            logger.error(
                f"Failed to send {status.value} email for schedule record {event.schedule_record_id}: {e}"
            )

    def _next_run_time(self, schedule: Optional[WorkflowSchedule]) -> Tuple[str, str]:
        """Formatted next fire time and the timezone used for formatting."""
        if schedule is None:
            return NEXT_RUN_FALLBACK, self.config.default_timezone

        tz = schedule.timezone or self.config.default_timezone
        if not schedule.cron_expression:
            return NEXT_RUN_FALLBACK, tz

        try:
            return format_date_time(compute_next_run(schedule.cron_expression, tz), tz), tz
        except Exception as e:
            logger.warning(f"Failed to calculate next run time for schedule {schedule.schedule_id}: {e}")
            return NEXT_RUN_FALLBACK, tz
