# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""Credit usage lookups for finished workflow executions."""

import logging
from typing import Callable

from sqlalchemy import func
from sqlalchemy.orm import Session

from db.database import SessionLocal
from models.account import CreditUsage

logger = logging.getLogger(__name__)


class CreditService:
    """Read-only view over `credit_usages`."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    async def count_execution_credit_usage(self, uid: str, execution_id: str) -> int:
        """
        Total credits charged to an account for one execution.

        Args:
            uid: Account id
            execution_id: Workflow execution id

        Returns:
            Sum of usage amounts (0 when nothing was recorded)
        """
        if not execution_id:
            return 0

        db: Session = self.session_factory()
        try:
            total = (
                db.query(func.coalesce(func.sum(CreditUsage.amount), 0))
                .filter(CreditUsage.uid == uid, CreditUsage.execution_id == execution_id)
                .scalar()
            )
            return int(total or 0)
        finally:
            db.close()
