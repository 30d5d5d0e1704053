# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Cron and time helpers for the schedule engine.

All timestamps leave this module timezone-aware in UTC. SQLite (used by the
test suite) hands back naive datetimes, so comparisons go through ensure_utc().
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytz
from croniter import croniter

from core.exceptions import InvalidCronExpressionError
from services.schedule.constants import SchedulePeriodType

logger = logging.getLogger(__name__)

DATE_TIME_FORMAT = "%m/%d/%Y, %I:%M %p"


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_next_run(
    cron_expression: str,
    tz: str = "UTC",
    after: Optional[datetime] = None
) -> datetime:
    """
    Calculate the next fire time of a cron expression.

    Args:
        cron_expression: Standard 5-field cron expression
        tz: IANA timezone the expression is evaluated in
        after: Reference instant (default: now)

    Returns:
        Next fire time in UTC

    Raises:
        InvalidCronExpressionError: If the expression or timezone cannot be parsed
    """
    try:
        timezone_obj = pytz.timezone(tz or "UTC")
        start = ensure_utc(after) if after else utcnow()
        start_local = start.astimezone(timezone_obj)

        cron = croniter(cron_expression, start_local)
        next_run_local = cron.get_next(datetime)

        if next_run_local.tzinfo is None:
            next_run_local = timezone_obj.localize(next_run_local)

        return next_run_local.astimezone(pytz.UTC)

    except Exception as e:
        raise InvalidCronExpressionError(cron_expression, str(e)) from e


def parse_schedule_config(schedule_config: Any) -> Dict[str, Any]:
    """Stored config as a new dict; accepts a dict or a JSON object string."""
    config = schedule_config
    if isinstance(schedule_config, str):
        try:
            config = json.loads(schedule_config)
        except ValueError:
            logger.warning("Ignoring unparsable schedule config")
            return {}
    return dict(config) if isinstance(config, dict) else {}


def get_schedule_type(schedule_config: Any) -> str:
    """
    Period type of a schedule for analytics.

    Accepts the stored config as a dict or a JSON string. Anything other than
    daily/weekly/monthly (including unparsable config) is 'custom'.
    """
    config = parse_schedule_config(schedule_config)
    if config.get("type") in SchedulePeriodType.KNOWN:
        return config["type"]
    return SchedulePeriodType.CUSTOM


def format_date_time(value: datetime, tz: str = "UTC") -> str:
    """
    Format an instant for notification emails, e.g. '01/04/2026, 06:35 PM'.

    Unknown timezones fall back to UTC.
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))

    try:
        timezone_obj = pytz.timezone(tz)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{tz}', formatting in UTC")
        timezone_obj = pytz.UTC

    return ensure_utc(value).astimezone(timezone_obj).strftime(DATE_TIME_FORMAT)
