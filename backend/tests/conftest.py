import copy
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import tenacity
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load environment variables FIRST, before any application imports, so that
# Settings() finds the required values when convoflow modules are imported.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test")

from convoflow.main import app  # noqa: E402
from convoflow.models.execution import Execution, ExecutionStatus  # noqa: E402
from convoflow.models.flow import Flow, Step  # noqa: E402
from convoflow.services.cache_service import ExecutionLeaseManager  # noqa: E402
from convoflow.workflows.dispatcher import StepDispatcher  # noqa: E402
from convoflow.workflows.engine import ExecutionEngine  # noqa: E402
from convoflow.workflows.errors import PersistenceError  # noqa: E402
from convoflow.workflows.store import ExecutionStore  # noqa: E402
from convoflow.workflows.validator import parse_flow  # noqa: E402

TENANT_ID = "tenant_1"
CONVERSATION_ID = "conv_1"


class InMemoryExecutionStore(ExecutionStore):
    """
    Execution store backed by dicts. Records are copied on the way in and out
    so the engine can never mutate "durable" state except through the API.
    `fail_next[operation] = n` makes the next n calls of that operation raise.
    """

    def __init__(self):
        self.flows: Dict[str, Dict[str, Any]] = {}
        self.executions: Dict[str, Execution] = {}
        self.fail_next: Dict[str, int] = {}
        self.calls: List[str] = []
        self.checkpoints: List[Dict[str, Any]] = []

    def add_flow(self, flow: Flow) -> Flow:
        self.add_flow_document(flow.model_dump(by_alias=True, mode="json"))
        return flow

    def add_flow_document(self, document: Dict[str, Any]):
        self.flows[document["_id"]] = copy.deepcopy(document)

    def get(self, execution_id: str) -> Execution:
        return self.executions[execution_id].model_copy(deep=True)

    def _record(self, operation: str):
        self.calls.append(operation)
        remaining = self.fail_next.get(operation, 0)
        if remaining:
            self.fail_next[operation] = remaining - 1
            raise PersistenceError(f"{operation} unavailable")

    async def load_flow(self, flow_id: str, tenant_id: str) -> Optional[Flow]:
        self._record("load_flow")
        document = self.flows.get(flow_id)
        if document is None or document.get("tenant_id") != tenant_id:
            return None
        return parse_flow(copy.deepcopy(document))

    async def create_execution(self, execution: Execution) -> Execution:
        self._record("create_execution")
        self.executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def load_execution(self, execution_id: str) -> Optional[Execution]:
        self._record("load_execution")
        execution = self.executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def save_steps_snapshot(self, execution_id: str, steps: List[Step]) -> None:
        self._record("save_steps_snapshot")
        execution = self.executions[execution_id]
        if execution.steps is None:
            execution.steps = [step.model_copy(deep=True) for step in steps]

    async def checkpoint(self, execution_id, current_step, data, resume_at=None) -> None:
        self._record("checkpoint")
        execution = self.executions[execution_id]
        if execution.status != ExecutionStatus.RUNNING or execution.current_step > current_step:
            return
        execution.current_step = current_step
        execution.data = dict(data)
        execution.resume_at = resume_at
        self.checkpoints.append({"execution_id": execution_id, "current_step": current_step, "data": dict(data)})

    async def finalize(self, execution_id, status, result, ended_at) -> None:
        self._record("finalize")
        execution = self.executions[execution_id]
        if execution.status != ExecutionStatus.RUNNING:
            return
        execution.status = status
        execution.result = result
        execution.ended_at = ended_at
        execution.resume_at = None

    async def request_cancel(self, execution_id: str) -> bool:
        self._record("request_cancel")
        execution = self.executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING:
            return False
        execution.cancel_requested = True
        return True

    async def is_cancel_requested(self, execution_id: str) -> bool:
        self._record("is_cancel_requested")
        execution = self.executions.get(execution_id)
        return bool(execution and execution.cancel_requested)

    async def find_due_executions(self, now: datetime, limit: int = 100) -> List[str]:
        self._record("find_due_executions")
        due = [
            e for e in self.executions.values()
            if e.status == ExecutionStatus.RUNNING and e.resume_at is not None and e.resume_at <= now
        ]
        due.sort(key=lambda e: e.resume_at)
        return [e.id for e in due[:limit]]

    async def list_executions(self, tenant_id, page=1, limit=20, status=None, flow_id=None, conversation_id=None):
        self._record("list_executions")
        matches = [
            e for e in self.executions.values()
            if e.tenant_id == tenant_id
            and (status is None or e.status == status)
            and (flow_id is None or e.flow_id == flow_id)
            and (conversation_id is None or e.conversation_id == conversation_id)
        ]
        matches.sort(key=lambda e: e.started_at, reverse=True)
        page_items = matches[(page - 1) * limit:page * limit]
        pagination = {"page": page, "limit": limit, "total": len(matches), "pages": -(-len(matches) // limit)}
        return [e.model_copy(deep=True) for e in page_items], pagination

    async def get_execution_stats(self, tenant_id: str) -> Dict[str, Any]:
        self._record("get_execution_stats")
        by_status = {status.value: 0 for status in ExecutionStatus}
        for execution in self.executions.values():
            if execution.tenant_id == tenant_id:
                by_status[execution.status.value] += 1
        return {"total_executions": sum(by_status.values()), "executions_by_status": by_status}


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


def make_flow(steps: List[Dict[str, Any]], flow_id: str = "flow_1", is_active: bool = True) -> Flow:
    return Flow.model_validate({
        "_id": flow_id,
        "tenant_id": TENANT_ID,
        "name": "Test flow",
        "is_active": is_active,
        "steps": steps,
    })


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def flow_factory(store):
    """Builds a flow for tenant_1 and registers it with the in-memory store."""
    def _factory(steps: List[Dict[str, Any]], flow_id: str = "flow_1", is_active: bool = True) -> Flow:
        return store.add_flow(make_flow(steps, flow_id=flow_id, is_active=is_active))
    return _factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def collaborators():
    """AsyncMock stand-ins for every external capability the dispatcher calls."""
    message_service = AsyncMock()
    message_service.send_message.return_value = "msg_1"
    conversation_service = AsyncMock()
    conversation_service.update_status.side_effect = lambda tenant_id, conversation_id, status: status.upper()
    ticket_service = AsyncMock()
    ticket_service.create_ticket.return_value = "ticket_1"
    webhook_service = AsyncMock()
    webhook_service.invoke.return_value = {"status_code": 200, "body": {"ok": True}}
    notification_service = AsyncMock()
    return {
        "message_service": message_service,
        "conversation_service": conversation_service,
        "ticket_service": ticket_service,
        "webhook_service": webhook_service,
        "notification_service": notification_service,
    }


@pytest.fixture
def dispatcher(collaborators):
    return StepDispatcher(**collaborators)


@pytest.fixture
def leases():
    return ExecutionLeaseManager(redis_url=None)


@pytest.fixture
def engine(store, dispatcher, leases, clock):
    return ExecutionEngine(
        store=store,
        dispatcher=dispatcher,
        leases=leases,
        checkpoint_attempts=3,
        retry_wait=tenacity.wait_none(),
        clock=clock,
    )


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API tests. Startup index creation is mocked so
    no MongoDB server is needed.
    """
    mocker.patch("convoflow.utils.lifecycle.db_service.create_indexes", new_callable=AsyncMock)

    with TestClient(app) as client:
        yield client
