# backend/tests/integration/test_engine.py
import asyncio

import pytest
import tenacity
from unittest.mock import AsyncMock

from convoflow.jobs.delay_resumer import resume_due_executions
from convoflow.models.execution import Execution, ExecutionStatus
from convoflow.workflows.engine import ExecutionEngine
from convoflow.workflows.errors import (
    CapabilityError,
    ConcurrentExecutionError,
    ExecutionNotFoundError,
    FlowInactiveError,
    FlowNotFoundError,
    InvalidFlowError,
    PersistenceError,
    StepExecutionError,
    UnsupportedStepTypeError,
)

TENANT_ID = "tenant_1"
CONVERSATION_ID = "conv_1"


def message(step_id, order, text, conditions=None):
    return {"id": step_id, "type": "MESSAGE", "order": order, "config": {"message": text}, "conditions": conditions or []}


def set_variable(step_id, order, name, value):
    return {"id": step_id, "type": "ACTION", "order": order,
            "config": {"action": "set_variable", "parameters": {"name": name, "value": value}}}


def delay(step_id, order, seconds):
    return {"id": step_id, "type": "DELAY", "order": order, "config": {"duration": seconds}}


async def start(engine, flow_id="flow_1", data=None):
    return await engine.start_execution(flow_id, CONVERSATION_ID, TENANT_ID, data or {})


def sent_contents(collaborators):
    return [call.kwargs["content"] for call in collaborators["message_service"].send_message.await_args_list]


# --- Basic flows ---

@pytest.mark.asyncio
async def test_message_then_set_variable_completes(engine, store, flow_factory, collaborators):
    flow_factory([message("greet", 1, "Hi {{name}}"), set_variable("setx", 2, "x", 1)])

    result = await start(engine, data={"name": "Ana"})

    assert result.status == ExecutionStatus.COMPLETED
    assert result.result["x"] == 1
    assert result.current_step == 2
    assert sent_contents(collaborators) == ["Hi Ana"]
    stored = store.get(result.execution_id)
    assert stored.status == ExecutionStatus.COMPLETED
    assert stored.ended_at is not None


@pytest.mark.asyncio
async def test_false_condition_skips_guarded_message(engine, flow_factory, collaborators):
    flow_factory([
        {"id": "check", "type": "CONDITION", "order": 1,
         "config": {"conditions": [{"field": "score", "operator": "greater_than", "value": 10}]}},
        message("vip", 2, "You are a VIP", conditions=[{"field": "conditionResult", "operator": "equals", "value": True}]),
    ])

    result = await start(engine, data={"score": 5})

    assert result.status == ExecutionStatus.COMPLETED
    assert result.result["conditionResult"] is False
    collaborators["message_service"].send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_action_marks_execution_failed(engine, store, flow_factory, collaborators):
    collaborators["webhook_service"].invoke.side_effect = CapabilityError("receiver returned 500")
    flow_factory([
        message("greet", 1, "Hello"),
        {"id": "hook", "type": "ACTION", "order": 2,
         "config": {"action": "trigger_webhook", "parameters": {"url": "https://hooks.example.com"}}},
        message("bye", 3, "Bye"),
    ])

    with pytest.raises(StepExecutionError) as exc_info:
        await start(engine)

    assert exc_info.value.step_id == "hook"
    stored = next(iter(store.executions.values()))
    assert stored.status == ExecutionStatus.FAILED
    assert stored.current_step == 1
    assert stored.result == {"error": "receiver returned 500", "stepId": "hook", "stepIndex": 1}
    assert sent_contents(collaborators) == ["Hello"]


@pytest.mark.asyncio
async def test_concurrent_runs_of_one_execution_are_rejected(engine, store, flow_factory, collaborators):
    flow = flow_factory([message("m1", 1, "one"), message("m2", 2, "two")])
    gate, entered = asyncio.Event(), asyncio.Event()

    async def slow_send(**kwargs):
        entered.set()
        await gate.wait()
        return "msg"

    collaborators["message_service"].send_message.side_effect = slow_send
    execution = Execution(flow_id=flow.id, conversation_id=CONVERSATION_ID, tenant_id=TENANT_ID, steps=flow.ordered_steps())
    await store.create_execution(execution)

    first = asyncio.create_task(engine.execute_flow(execution.id))
    await entered.wait()
    with pytest.raises(ConcurrentExecutionError):
        await engine.execute_flow(execution.id)
    gate.set()
    result = await first

    assert result.status == ExecutionStatus.COMPLETED
    assert [c["current_step"] for c in store.checkpoints] == [1, 2]
    assert collaborators["message_service"].send_message.await_count == 2


# --- Lifecycle and resumption ---

@pytest.mark.asyncio
async def test_terminal_execution_is_returned_untouched(engine, store, flow_factory, collaborators):
    flow_factory([message("m1", 1, "once")])
    first = await start(engine)

    again = await engine.execute_flow(first.execution_id)

    assert again.status == ExecutionStatus.COMPLETED
    assert again.result == first.result
    assert collaborators["message_service"].send_message.await_count == 1


@pytest.mark.asyncio
async def test_interrupted_run_resumes_after_last_checkpoint(engine, store, flow_factory, collaborators):
    flow_factory([
        message("m1", 1, "first"),
        set_variable("stage", 2, "stage", "after_first"),
        message("m2", 3, "second {{stage}}"),
        set_variable("done", 4, "done", "yes"),
        message("m3", 5, "third"),
    ])
    collaborators["message_service"].send_message.side_effect = ["msg_1", asyncio.CancelledError()]

    with pytest.raises(asyncio.CancelledError):
        await start(engine)

    execution_id = next(iter(store.executions))
    interrupted = store.get(execution_id)
    assert interrupted.status == ExecutionStatus.RUNNING
    assert interrupted.current_step == 2
    assert interrupted.data["stage"] == "after_first"

    collaborators["message_service"].send_message.side_effect = None
    result = await engine.execute_flow(execution_id)

    assert result.status == ExecutionStatus.COMPLETED
    assert result.current_step == 5
    assert sent_contents(collaborators) == ["first", "second after_first", "second after_first", "third"]

    clean = await start(engine)

    assert clean.status == ExecutionStatus.COMPLETED
    assert result.result == clean.result
    assert result.result["done"] == "yes"


@pytest.mark.asyncio
async def test_delay_suspends_until_due_then_resumes(engine, store, flow_factory, collaborators, clock):
    flow_factory([message("m1", 1, "before"), delay("wait", 2, 60), message("m2", 3, "after")])

    suspended = await start(engine)

    assert suspended.suspended is True
    assert suspended.status == ExecutionStatus.RUNNING
    assert suspended.current_step == 2
    assert store.get(suspended.execution_id).resume_at == clock.now.replace(minute=1)

    early = await engine.execute_flow(suspended.execution_id)
    assert early.suspended is True
    assert await resume_due_executions(engine, now=clock()) == {"resumed": 0, "busy": 0, "failed": 0}

    clock.advance(61)
    summary = await resume_due_executions(engine, now=clock())

    assert summary == {"resumed": 1, "busy": 0, "failed": 0}
    final = store.get(suspended.execution_id)
    assert final.status == ExecutionStatus.COMPLETED
    assert final.resume_at is None
    assert sent_contents(collaborators) == ["before", "after"]


@pytest.mark.asyncio
async def test_resumed_execution_uses_step_snapshot(engine, store, flow_factory, collaborators, clock):
    flow_factory([delay("wait", 1, 10), message("m1", 2, "original")])
    suspended = await start(engine)

    flow_factory([delay("wait", 1, 10), message("m1", 2, "edited")])
    clock.advance(11)
    await engine.execute_flow(suspended.execution_id)

    assert sent_contents(collaborators) == ["original"]


@pytest.mark.asyncio
async def test_missing_snapshot_is_taken_from_flow(engine, store, flow_factory, collaborators):
    flow = flow_factory([message("m1", 1, "hi")])
    execution = Execution(flow_id=flow.id, conversation_id=CONVERSATION_ID, tenant_id=TENANT_ID)
    await store.create_execution(execution)

    result = await engine.execute_flow(execution.id)

    assert result.status == ExecutionStatus.COMPLETED
    assert [s.id for s in store.get(execution.id).steps] == ["m1"]


@pytest.mark.asyncio
async def test_unsupported_step_type_in_stored_flow_is_rejected(engine, store):
    store.add_flow_document({
        "_id": "legacy",
        "tenant_id": TENANT_ID,
        "name": "Legacy flow",
        "steps": [{"id": "s1", "type": "API_CALL", "order": 1, "config": {}}],
    })

    with pytest.raises(UnsupportedStepTypeError) as exc_info:
        await start(engine, flow_id="legacy")

    assert isinstance(exc_info.value, InvalidFlowError)
    assert exc_info.value.error_code == "UNSUPPORTED_STEP_TYPE"
    assert store.executions == {}


@pytest.mark.asyncio
async def test_unparseable_flow_fails_execution_without_snapshot(engine, store, collaborators):
    store.add_flow_document({
        "_id": "legacy",
        "tenant_id": TENANT_ID,
        "name": "Legacy flow",
        "steps": [{"id": "s1", "type": "API_CALL", "order": 1, "config": {}}],
    })
    execution = Execution(flow_id="legacy", conversation_id=CONVERSATION_ID, tenant_id=TENANT_ID)
    await store.create_execution(execution)

    with pytest.raises(UnsupportedStepTypeError):
        await engine.execute_flow(execution.id)

    stored = store.get(execution.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.result["errorCode"] == "UNSUPPORTED_STEP_TYPE"
    collaborators["message_service"].send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_list_executions_is_tenant_scoped_and_newest_first(engine, store, flow_factory, clock):
    flow_factory([message("m1", 1, "hi")])
    first = await start(engine)
    clock.advance(5)
    second = await start(engine)
    await store.create_execution(Execution(flow_id="flow_1", conversation_id=CONVERSATION_ID, tenant_id="tenant_2"))

    executions, pagination = await store.list_executions(TENANT_ID, page=1, limit=1, status=ExecutionStatus.COMPLETED)

    assert [e.id for e in executions] == [second.execution_id]
    assert pagination == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    assert first.execution_id != second.execution_id


# --- Cancellation ---

@pytest.mark.asyncio
async def test_cancel_delayed_execution(engine, store, flow_factory, collaborators):
    flow_factory([delay("wait", 1, 3600), message("m1", 2, "later")])
    suspended = await start(engine)

    cancelled = await engine.cancel_execution(suspended.execution_id)

    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.result == {"error": "Execution cancelled"}
    assert store.get(suspended.execution_id).resume_at is None
    collaborators["message_service"].send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_during_run_stops_at_next_boundary(engine, store, flow_factory, collaborators):
    flow_factory([message("m1", 1, "one"), message("m2", 2, "two")])

    async def cancel_while_sending(**kwargs):
        await engine.cancel_execution(kwargs["metadata"]["workflow_execution"])
        return "msg"

    collaborators["message_service"].send_message.side_effect = cancel_while_sending

    result = await start(engine)

    assert result.status == ExecutionStatus.CANCELLED
    assert result.current_step == 1
    assert collaborators["message_service"].send_message.await_count == 1


@pytest.mark.asyncio
async def test_cancel_finished_execution_is_a_noop(engine, flow_factory):
    flow_factory([message("m1", 1, "hi")])
    finished = await start(engine)

    result = await engine.cancel_execution(finished.execution_id)

    assert result.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_unknown_execution_raises(engine):
    with pytest.raises(ExecutionNotFoundError):
        await engine.cancel_execution("missing")


# --- Guards and skipping ---

@pytest.mark.asyncio
async def test_all_guarded_steps_skipped_yields_skipped(engine, flow_factory, collaborators):
    flow_factory([message("m1", 1, "hi", conditions=[{"field": "vip", "operator": "exists"}])])

    result = await start(engine)

    assert result.status == ExecutionStatus.SKIPPED
    collaborators["message_service"].send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_empty_flow_completes(engine, flow_factory):
    flow_factory([])

    result = await start(engine, data={"a": 1})

    assert result.status == ExecutionStatus.COMPLETED
    assert result.result == {"a": 1}


@pytest.mark.asyncio
async def test_skip_if_false_skips_named_step(engine, flow_factory, collaborators):
    flow_factory([
        {"id": "check", "type": "CONDITION", "order": 1,
         "config": {"conditions": [{"field": "score", "operator": "greater_than", "value": 10}], "skipIfFalse": "offer"}},
        message("offer", 2, "Special offer"),
        message("bye", 3, "Bye"),
    ])

    result = await start(engine, data={"score": 5})

    assert result.status == ExecutionStatus.COMPLETED
    assert result.result["skippedSteps"] == ["offer"]
    assert sent_contents(collaborators) == ["Bye"]


# --- Flow preconditions ---

@pytest.mark.asyncio
async def test_unknown_inactive_and_invalid_flows_are_rejected(engine, store, flow_factory):
    with pytest.raises(FlowNotFoundError):
        await start(engine, flow_id="nope")

    flow_factory([message("m1", 1, "hi")], flow_id="inactive", is_active=False)
    with pytest.raises(FlowInactiveError):
        await start(engine, flow_id="inactive")

    flow_factory([message("m1", 1, "hi"), message("m2", 1, "again")], flow_id="broken")
    with pytest.raises(InvalidFlowError) as exc_info:
        await start(engine, flow_id="broken")

    assert exc_info.value.error_code == "DUPLICATE_STEP_ORDER"
    assert store.executions == {}


# --- Persistence failures ---

@pytest.mark.asyncio
async def test_checkpoint_is_retried_on_transient_failure(engine, store, flow_factory):
    flow_factory([message("m1", 1, "hi")])
    store.fail_next["checkpoint"] = 2

    result = await start(engine)

    assert result.status == ExecutionStatus.COMPLETED
    assert store.calls.count("checkpoint") == 3


@pytest.mark.asyncio
async def test_exhausted_checkpoint_retries_alert_and_propagate(store, dispatcher, leases, clock, flow_factory, collaborators):
    alerting = AsyncMock()
    engine = ExecutionEngine(store, dispatcher, leases, checkpoint_attempts=2,
                             retry_wait=tenacity.wait_none(), clock=clock, alerting=alerting)
    flow_factory([message("m1", 1, "hi")])
    store.fail_next["checkpoint"] = 2

    with pytest.raises(PersistenceError):
        await start(engine)

    alerting.send_critical_alert.assert_awaited_once()
    execution_id = next(iter(store.executions))
    assert store.get(execution_id).current_step == 0
    assert not leases.is_held(execution_id)

    # The uncommitted step runs again on resume
    result = await engine.execute_flow(execution_id)
    assert result.status == ExecutionStatus.COMPLETED
    assert collaborators["message_service"].send_message.await_count == 2
