# /convoflow/workflows/conditions.py

"""
Pure predicate evaluation against an execution's data context.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- Fail-closed: a predicate that cannot be evaluated is False, never an exception
"""

import logging
import math
from typing import Any, Callable, Dict, Iterable, Union

from pydantic import ValidationError

from convoflow.models.flow import Predicate
from convoflow.workflows.errors import ConditionEvaluationError
from convoflow.workflows.templates import stringify

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def get_nested_value(data: Any, path: str) -> Any:
    """Resolve a dotted path. Numeric segments index into lists. Returns MISSING when absent."""
    if not path:
        return MISSING
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _is_present(value: Any) -> bool:
    return value is not MISSING and value is not None


def _strict_equals(left: Any, right: Any) -> bool:
    if left is MISSING:
        return False
    # bool is an int subclass; keep True and 1 apart
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _to_number(value: Any) -> float:
    if isinstance(value, bool) or value is None or value is MISSING:
        raise ConditionEvaluationError(f"{value!r} is not numeric")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            raise ConditionEvaluationError(f"{value!r} is not numeric")
    else:
        raise ConditionEvaluationError(f"{value!r} is not numeric")
    if math.isnan(number):
        raise ConditionEvaluationError("NaN is not comparable")
    return number


def _contains(field_value: Any, value: Any) -> bool:
    if not _is_present(field_value):
        return False
    return stringify(value) in stringify(field_value)


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _strict_equals,
    "not_equals": lambda field_value, value: not _strict_equals(field_value, value),
    "contains": _contains,
    "greater_than": lambda field_value, value: _to_number(field_value) > _to_number(value),
    "less_than": lambda field_value, value: _to_number(field_value) < _to_number(value),
    "exists": lambda field_value, _value: _is_present(field_value),
    "not_exists": lambda field_value, _value: not _is_present(field_value),
}


def evaluate_predicate(predicate: Union[Predicate, Dict[str, Any]], data: Dict[str, Any]) -> bool:
    try:
        if not isinstance(predicate, Predicate):
            predicate = Predicate.model_validate(predicate)
        operator = OPERATORS.get(predicate.operator)
        if operator is None:
            raise ConditionEvaluationError(f"Unknown operator '{predicate.operator}'")
        field_value = get_nested_value(data, predicate.field)
        return bool(operator(field_value, predicate.value))
    except (ConditionEvaluationError, ValidationError, TypeError, ValueError) as e:
        logger.debug(f"Predicate evaluated as false: {e}")
        return False


def evaluate(predicates: Iterable[Union[Predicate, Dict[str, Any]]], data: Dict[str, Any]) -> bool:
    """AND of all predicates; an empty list is vacuously true."""
    if not predicates:
        return True
    return all(evaluate_predicate(predicate, data or {}) for predicate in predicates)
