# /convoflow/workflows/store.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from convoflow.models.execution import Execution, ExecutionStatus
from convoflow.models.flow import Flow, Step


class ExecutionStore(ABC):
    """
    Durable record of flows and executions as seen by the engine.

    Implementations raise PersistenceError when the backing store fails and
    InvalidFlowError (or UnsupportedStepTypeError) when a stored record does
    not parse.
    `checkpoint` and `finalize` only apply to executions that are still
    RUNNING; a write against a terminal execution is a no-op.
    """

    @abstractmethod
    async def load_flow(self, flow_id: str, tenant_id: str) -> Optional[Flow]:
        ...

    @abstractmethod
    async def create_execution(self, execution: Execution) -> Execution:
        ...

    @abstractmethod
    async def load_execution(self, execution_id: str) -> Optional[Execution]:
        ...

    @abstractmethod
    async def save_steps_snapshot(self, execution_id: str, steps: List[Step]) -> None:
        ...

    @abstractmethod
    async def checkpoint(
        self,
        execution_id: str,
        current_step: int,
        data: Dict[str, Any],
        resume_at: Optional[datetime] = None,
    ) -> None:
        ...

    @abstractmethod
    async def finalize(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: Optional[Dict[str, Any]],
        ended_at: datetime,
    ) -> None:
        ...

    @abstractmethod
    async def request_cancel(self, execution_id: str) -> bool:
        """Flag a RUNNING execution for cancellation. Returns False if it is not RUNNING."""

    @abstractmethod
    async def is_cancel_requested(self, execution_id: str) -> bool:
        ...

    @abstractmethod
    async def find_due_executions(self, now: datetime, limit: int = 100) -> List[str]:
        """Ids of RUNNING executions whose resume_at has passed."""

    @abstractmethod
    async def list_executions(
        self,
        tenant_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[ExecutionStatus] = None,
        flow_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Tuple[List[Execution], Dict[str, int]]:
        """A page of the tenant's executions, newest first, plus {page, limit, total, pages}."""

    @abstractmethod
    async def get_execution_stats(self, tenant_id: str) -> Dict[str, Any]:
        ...
