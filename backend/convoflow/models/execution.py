# /convoflow/models/execution.py

import uuid
from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, Field, ConfigDict

from convoflow.models.flow import Step


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class Execution(BaseModel):
    """
    Mutable run record of one flow against one conversation.

    Only the engine writes `current_step`, `data` and `resume_at` (checkpoints)
    and `status`, `result` and `ended_at` (the single terminal write).
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, alias="_id")
    flow_id: str
    conversation_id: str
    tenant_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_step: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    steps: Optional[List[Step]] = Field(default=None, description="Step list snapshotted at creation")
    resume_at: Optional[datetime] = None
    cancel_requested: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ExecutionResult(BaseModel):
    """What a caller gets back from `execute_flow`."""
    execution_id: str
    status: ExecutionStatus
    current_step: int
    result: Optional[Dict[str, Any]] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    resume_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    suspended: bool = False

    @classmethod
    def from_execution(cls, execution: Execution, suspended: bool = False) -> "ExecutionResult":
        return cls(
            execution_id=execution.id,
            status=execution.status,
            current_step=execution.current_step,
            result=execution.result,
            data=execution.data,
            resume_at=execution.resume_at,
            ended_at=execution.ended_at,
            suspended=suspended,
        )
