# /convoflow/workflows/engine.py

"""
Workflow execution engine.

Drives one Execution from RUNNING to a terminal state:
- Steps run strictly in ascending `order`, one at a time
- A step whose guards evaluate false is skipped, never aborts the run
- Every dispatched step is followed by a durable checkpoint of
  (current_step, data) before the next step starts
- DELAY steps persist a resume_at timestamp and return; the delay resumer
  re-invokes the engine once it is due
- Cancellation is honoured at step boundaries only
- At most one runner per execution id, enforced through the lease manager
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
import tenacity

from convoflow.models.execution import Execution, ExecutionResult, ExecutionStatus
from convoflow.models.flow import Step, StepType
from convoflow.utils.metrics import (
    checkpoint_retries_counter,
    concurrent_rejections_counter,
    executions_counter,
    steps_counter,
)
from convoflow.workflows import conditions
from convoflow.workflows.dispatcher import SKIPPED_STEPS_KEY, ExecutionContext, StepDispatcher
from convoflow.workflows.errors import (
    ConcurrentExecutionError,
    ExecutionNotFoundError,
    FlowInactiveError,
    FlowNotFoundError,
    InvalidFlowError,
    PersistenceError,
    StepExecutionError,
)
from convoflow.workflows.store import ExecutionStore
from convoflow.workflows.validator import validate_flow

log = structlog.get_logger(__name__)
retry_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _before_retry(retry_state: tenacity.RetryCallState):
    operation = getattr(retry_state.fn, "__name__", "store_operation")
    checkpoint_retries_counter.labels(operation=operation).inc()
    retry_logger.warning(
        f"Store operation '{operation}' failed (attempt {retry_state.attempt_number}), retrying: "
        f"{retry_state.outcome.exception()}"
    )


class ExecutionEngine:
    def __init__(
        self,
        store: ExecutionStore,
        dispatcher: StepDispatcher,
        leases,
        checkpoint_attempts: int = 5,
        retry_wait: Optional[tenacity.wait.wait_base] = None,
        clock: Callable[[], datetime] = _utcnow,
        alerting=None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.leases = leases
        self.checkpoint_attempts = checkpoint_attempts
        self.retry_wait = retry_wait or tenacity.wait_exponential(multiplier=0.2, min=0.2, max=5)
        self.clock = clock
        self.alerting = alerting

    # ==================== Public API ====================

    async def start_execution(
        self,
        flow_id: str,
        conversation_id: str,
        tenant_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Create a RUNNING execution with a snapshot of the flow's steps, then run it."""
        flow = await self._persist(self.store.load_flow, flow_id, tenant_id)
        if flow is None:
            raise FlowNotFoundError(flow_id, tenant_id)
        if not flow.is_active:
            raise FlowInactiveError(flow_id)

        validation = validate_flow(flow)
        if not validation["is_valid"]:
            raise InvalidFlowError(validation["error_code"], validation["message"])

        execution = Execution(
            flow_id=flow.id,
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            data=dict(data or {}),
            steps=flow.ordered_steps(),
            started_at=self.clock(),
        )
        await self._persist(self.store.create_execution, execution)
        log.info("execution_created", execution_id=execution.id, flow_id=flow.id, total_steps=len(flow.steps))
        return await self.execute_flow(execution.id)

    async def execute_flow(self, execution_id: str) -> ExecutionResult:
        """
        Run (or resume) an execution from its last checkpoint.

        Terminal executions are returned untouched. Raises ConcurrentExecutionError
        when another runner holds the execution, StepExecutionError after marking
        the execution FAILED, InvalidFlowError after marking it FAILED when its flow
        no longer parses, and PersistenceError when the store stays unavailable.
        """
        token = await self.leases.acquire(execution_id)
        if token is None:
            concurrent_rejections_counter.inc()
            log.warning("execution_already_running", execution_id=execution_id)
            raise ConcurrentExecutionError(execution_id)

        try:
            return await self._run(execution_id, token)
        finally:
            await self.leases.release(execution_id, token)

    async def cancel_execution(self, execution_id: str) -> ExecutionResult:
        """
        Request cancellation. An active runner stops at its next step boundary;
        an idle (e.g. delayed) execution is finalized here.
        """
        requested = await self._persist(self.store.request_cancel, execution_id)
        if not requested:
            execution = await self._load(execution_id)
            return ExecutionResult.from_execution(execution)

        token = await self.leases.acquire(execution_id)
        if token is None:
            log.info("execution_cancel_requested", execution_id=execution_id, active_runner=True)
            return ExecutionResult.from_execution(await self._load(execution_id))

        try:
            execution = await self._load(execution_id)
            if execution.status.is_terminal:
                return ExecutionResult.from_execution(execution)
            return await self._finish(execution, ExecutionStatus.CANCELLED, {"error": "Execution cancelled"})
        finally:
            await self.leases.release(execution_id, token)

    # ==================== Run Loop ====================

    async def _run(self, execution_id: str, token: str) -> ExecutionResult:
        execution = await self._load(execution_id)
        bound = log.bind(execution_id=execution.id, flow_id=execution.flow_id)

        if execution.status.is_terminal:
            bound.info("execution_already_finished", status=execution.status.value)
            return ExecutionResult.from_execution(execution)

        if execution.resume_at is not None and execution.resume_at > self.clock():
            bound.info("execution_still_delayed", resume_at=execution.resume_at.isoformat())
            return ExecutionResult.from_execution(execution, suspended=True)

        steps = await self._resolve_steps(execution)
        data = dict(execution.data)
        start_index = execution.current_step
        dispatched = 0

        bound.info("execution_started", total_steps=len(steps), current_step=start_index)

        for index in range(start_index, len(steps)):
            step = steps[index]
            step_log = bound.bind(step_id=step.id, step_type=step.type.value, step_index=index)

            if await self._persist(self.store.is_cancel_requested, execution.id):
                step_log.info("execution_cancelled_at_boundary")
                return await self._finish(execution, ExecutionStatus.CANCELLED, {"error": "Execution cancelled"})

            if step.id in (data.get(SKIPPED_STEPS_KEY) or []):
                steps_counter.labels(step_type=step.type.value, status="skipped").inc()
                step_log.info("step_skipped_by_condition_step")
                continue

            if step.conditions and not conditions.evaluate(step.conditions, data):
                steps_counter.labels(step_type=step.type.value, status="skipped").inc()
                step_log.info("step_skipped_by_guard")
                continue

            ctx = ExecutionContext(
                execution_id=execution.id,
                flow_id=execution.flow_id,
                conversation_id=execution.conversation_id,
                tenant_id=execution.tenant_id,
                step_index=index,
                now=self.clock(),
            )
            try:
                patch = await self.dispatcher.execute(step, data, ctx)
            except StepExecutionError as e:
                steps_counter.labels(step_type=step.type.value, status="failed").inc()
                step_log.error("step_failed", error=str(e.cause), error_type=type(e.cause).__name__)
                await self._finish(
                    execution,
                    ExecutionStatus.FAILED,
                    {"error": str(e.cause), "stepId": e.step_id, "stepIndex": index},
                )
                raise

            steps_counter.labels(step_type=step.type.value, status="success").inc()
            data = {**data, **(patch or {})}
            dispatched += 1

            resume_at = self._resume_at(step, patch)
            await self._persist(self.store.checkpoint, execution.id, index + 1, data, resume_at)
            await self.leases.refresh(execution.id, token)
            execution.current_step = index + 1
            execution.data = data
            execution.resume_at = resume_at
            step_log.info("step_completed")

            if resume_at is not None:
                executions_counter.labels(status="SUSPENDED").inc()
                step_log.info("execution_suspended", resume_at=resume_at.isoformat())
                return ExecutionResult.from_execution(execution, suspended=True)

        # Nothing dispatched over the whole lifetime of a non-empty flow: every guard excluded it.
        if steps and start_index == 0 and dispatched == 0:
            return await self._finish(execution, ExecutionStatus.SKIPPED, data)
        return await self._finish(execution, ExecutionStatus.COMPLETED, data)

    # ==================== Helpers ====================

    async def _load(self, execution_id: str) -> Execution:
        execution = await self._persist(self.store.load_execution, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def _resolve_steps(self, execution: Execution) -> List[Step]:
        if execution.steps is None:
            try:
                flow = await self._persist(self.store.load_flow, execution.flow_id, execution.tenant_id)
            except InvalidFlowError as e:
                await self._finish(execution, ExecutionStatus.FAILED, {"error": str(e), "errorCode": e.error_code})
                raise
            if flow is None:
                await self._finish(execution, ExecutionStatus.FAILED, {"error": f"Flow '{execution.flow_id}' not found"})
                raise FlowNotFoundError(execution.flow_id, execution.tenant_id)
            execution.steps = flow.ordered_steps()
            await self._persist(self.store.save_steps_snapshot, execution.id, execution.steps)
        return sorted(execution.steps, key=lambda s: s.order)

    def _resume_at(self, step: Step, patch: Optional[Dict[str, Any]]) -> Optional[datetime]:
        if step.type != StepType.DELAY or not patch or not patch.get("resumeAt"):
            return None
        resume_at = datetime.fromisoformat(patch["resumeAt"])
        return resume_at if resume_at > self.clock() else None

    async def _finish(
        self,
        execution: Execution,
        status: ExecutionStatus,
        result: Optional[Dict[str, Any]],
    ) -> ExecutionResult:
        ended_at = self.clock()
        await self._persist(self.store.finalize, execution.id, status, result, ended_at)
        execution.status = status
        execution.result = result
        execution.ended_at = ended_at
        execution.resume_at = None
        executions_counter.labels(status=status.value).inc()
        log.info("execution_finished", execution_id=execution.id, status=status.value, current_step=execution.current_step)
        return ExecutionResult.from_execution(execution)

    async def _persist(self, operation, *args):
        """Store call with bounded exponential backoff on PersistenceError."""
        retrying = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(PersistenceError),
            stop=tenacity.stop_after_attempt(self.checkpoint_attempts),
            wait=self.retry_wait,
            before_sleep=_before_retry,
            reraise=True,
        )
        try:
            return await retrying(operation, *args)
        except PersistenceError as e:
            operation_name = getattr(operation, "__name__", "store_operation")
            log.error("store_operation_exhausted", operation=operation_name, attempts=self.checkpoint_attempts, error=str(e))
            if self.alerting is not None:
                await self.alerting.send_critical_alert(
                    f"Execution store operation '{operation_name}' failed",
                    {"error": str(e), "attempts": self.checkpoint_attempts},
                )
            raise
