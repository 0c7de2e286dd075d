# /convoflow/workflows/validator.py

"""
Pure validation functions for flow definitions.

This module provides deterministic, side-effect-free checks that a flow's
step list is a well-formed straight-line program before an execution
snapshots it:
- stored documents parse into Flow / Execution models, with unknown step
  types reported as UnsupportedStepTypeError
- every step has a non-empty, unique id
- `order` is strictly increasing
- each step's config parses into the typed config for its step type
- `skip_if_false` on a CONDITION step names a later step
"""

from typing import Any, Dict, Optional, TypedDict, List

from pydantic import ValidationError

from convoflow.models.execution import Execution
from convoflow.models.flow import Flow, Step, StepType, STEP_CONFIG_MODELS, ConditionConfig
from convoflow.workflows.errors import InvalidFlowError, UnsupportedStepTypeError


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def _ok() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def _fail(error_code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": error_code, "message": message}


def _raise_for_document(error: ValidationError, document: Dict[str, Any], error_code: str, label: str):
    steps = document.get("steps") if isinstance(document, dict) else None
    for err in error.errors():
        loc = err.get("loc", ())
        if err.get("type") == "enum" and len(loc) == 3 and loc[0] == "steps" and loc[2] == "type":
            raw_step = steps[loc[1]] if isinstance(steps, list) and isinstance(loc[1], int) else None
            step_ref = raw_step.get("id") if isinstance(raw_step, dict) and raw_step.get("id") else f"#{loc[1]}"
            raise UnsupportedStepTypeError(step_ref, err.get("input")) from error
    raise InvalidFlowError(error_code, f"{label} is malformed: {error.error_count()} error(s)") from error


def parse_flow(document: Dict[str, Any]) -> Flow:
    """
    Build a Flow from a stored document.

    Args:
        document: Raw flow document as read from the store

    Returns:
        The parsed Flow

    Raises:
        UnsupportedStepTypeError: If a step uses a type outside StepType
        InvalidFlowError: If the document is otherwise malformed
    """
    try:
        return Flow.model_validate(document)
    except ValidationError as e:
        _raise_for_document(e, document, "INVALID_FLOW", f"Flow '{document.get('_id')}'")


def parse_execution(document: Dict[str, Any]) -> Execution:
    """Build an Execution from a stored document; same error contract as parse_flow."""
    try:
        return Execution.model_validate(document)
    except ValidationError as e:
        _raise_for_document(e, document, "INVALID_EXECUTION", f"Execution '{document.get('_id')}'")


def validate_step_config(step: Step) -> ValidationResult:
    """
    Validate that a step's config parses for its type.

    Args:
        step: The step to validate

    Returns:
        ValidationResult with is_valid=True if the config is usable
    """
    model = STEP_CONFIG_MODELS[step.type]

    try:
        model.model_validate(step.config)
    except ValidationError as e:
        if step.type == StepType.ACTION and any(err.get("loc") == ("action",) for err in e.errors()):
            return _fail(
                "UNSUPPORTED_ACTION",
                f"Step '{step.id}' has unsupported action '{step.config.get('action')}'"
            )
        return _fail("INVALID_STEP_CONFIG", f"Step '{step.id}' has invalid config: {e.error_count()} error(s)")

    return _ok()


def validate_step_order(steps: List[Step]) -> ValidationResult:
    """
    Validate that ids are present and unique and `order` strictly increases.

    Args:
        steps: Steps in the order they are stored on the flow

    Returns:
        ValidationResult with is_valid=True if the ordering is a total order
    """
    seen_ids = set()
    previous_order = None
    for step in sorted(steps, key=lambda s: s.order):
        if not step.id or not step.id.strip():
            return _fail("EMPTY_STEP_ID", "Step id cannot be empty")
        if step.id in seen_ids:
            return _fail("DUPLICATE_STEP_ID", f"Step id '{step.id}' is used more than once")
        if previous_order is not None and step.order <= previous_order:
            return _fail("DUPLICATE_STEP_ORDER", f"Step order {step.order} is used more than once")
        seen_ids.add(step.id)
        previous_order = step.order

    return _ok()


def validate_flow(flow: Flow) -> ValidationResult:
    """
    Validate a whole flow definition.

    Args:
        flow: The flow to validate

    Returns:
        The first failing ValidationResult, or a valid result
    """
    order_result = validate_step_order(flow.steps)
    if not order_result["is_valid"]:
        return order_result

    ordered = flow.ordered_steps()
    for index, step in enumerate(ordered):
        config_result = validate_step_config(step)
        if not config_result["is_valid"]:
            return config_result

        if step.type == StepType.CONDITION:
            target = ConditionConfig.model_validate(step.config).skip_if_false
            later_ids = {s.id for s in ordered[index + 1:]}
            if target is not None and target not in later_ids:
                return _fail(
                    "INVALID_SKIP_TARGET",
                    f"Step '{step.id}' skip_if_false target '{target}' is not a later step"
                )

    return _ok()
