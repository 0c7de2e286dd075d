# /convoflow/workflows/errors.py

"""
Exception taxonomy for the workflow execution engine.

ConditionEvaluationError never escapes the condition evaluator; every other
error here may reach the caller of the engine.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""


class ConditionEvaluationError(WorkflowError):
    """A predicate could not be evaluated. Always converted to False."""


class UnsupportedActionError(WorkflowError):
    pass


class CapabilityError(WorkflowError):
    """An external collaborator (messaging, ticketing, webhook...) reported failure."""


class StepExecutionError(WorkflowError):
    def __init__(self, step_id: str, cause: BaseException):
        self.step_id = step_id
        self.cause = cause
        super().__init__(f"Step '{step_id}' failed: {cause}")


class PersistenceError(WorkflowError):
    """A read or write against the execution store failed."""


class ConcurrentExecutionError(WorkflowError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' is already being run by another worker")


class ExecutionNotFoundError(WorkflowError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")


class FlowNotFoundError(WorkflowError):
    def __init__(self, flow_id: str, tenant_id: Optional[str] = None):
        self.flow_id = flow_id
        self.tenant_id = tenant_id
        super().__init__(f"Flow '{flow_id}' not found")


class FlowInactiveError(WorkflowError):
    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow '{flow_id}' is not active")


class InvalidFlowError(WorkflowError):
    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        super().__init__(message)


class UnsupportedStepTypeError(InvalidFlowError):
    """A stored definition uses a step type the dispatcher has no handler for."""

    def __init__(self, step_ref: str, step_type):
        self.step_ref = step_ref
        self.step_type = step_type
        super().__init__("UNSUPPORTED_STEP_TYPE", f"Step '{step_ref}' has unsupported type '{step_type}'")
