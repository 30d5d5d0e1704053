# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""Signals consumed by the schedule engine."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

WORKFLOW_COMPLETED = "workflow.completed"
WORKFLOW_FAILED = "workflow.failed"
CANVAS_DELETED = "canvas.deleted"

TRIGGER_TYPE_SCHEDULED = "scheduled"
TRIGGER_TYPE_MANUAL = "manual"


@dataclass
class WorkflowCompletedEvent:
    """Execution engine finished a workflow run successfully."""
    execution_id: str
    canvas_id: str
    uid: str
    trigger_type: str = TRIGGER_TYPE_MANUAL
    output: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None
    schedule_record_id: Optional[str] = None

    @property
    def is_scheduled(self) -> bool:
        return self.trigger_type == TRIGGER_TYPE_SCHEDULED


@dataclass
class WorkflowFailedEvent:
    """
    Execution engine gave up on a workflow run.

    error_details carries the engine's diagnostic payload; its
    `errorMessage` key drives failure classification.
    """
    execution_id: str
    canvas_id: str
    uid: str
    trigger_type: str = TRIGGER_TYPE_MANUAL
    error_details: Dict[str, Any] = field(default_factory=dict)
    duration_ms: Optional[int] = None
    schedule_record_id: Optional[str] = None

    @property
    def is_scheduled(self) -> bool:
        return self.trigger_type == TRIGGER_TYPE_SCHEDULED


@dataclass
class CanvasDeletedEvent:
    canvas_id: str
    uid: str
