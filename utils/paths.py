"""
Dotted-path access and condition evaluation over plain data.

Used by declarative routing rules and template interpolation. Paths like
"use_case_context.selected_use_cases" walk nested dicts (or pydantic
models, which are dumped first by the caller).
"""
from __future__ import annotations

import re
import operator as op
from typing import Any, Mapping


def _is_empty(value: Any) -> bool:
    return value is None or (hasattr(value, "__len__") and len(value) == 0)


OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "contains": lambda a, b: a is not None and b in a,
    "regex": lambda a, b: bool(re.search(str(b), str(a))),
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
    "empty": lambda a, b: _is_empty(a),
    "not_empty": lambda a, b: not _is_empty(a),
    "length_gt": lambda a, b: a is not None and len(a) > int(b),
}


def get_nested_value(data: Mapping[str, Any], field: str) -> Any:
    """Get a value from nested dicts using dot notation, e.g. 'session_context.step'."""
    current: Any = data
    for part in field.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            return None
    return current


def evaluate_condition(field: str, operator: str, value: Any, data: Mapping[str, Any]) -> bool:
    """Evaluate one condition against data. Unknown operators never match."""
    actual = get_nested_value(data, field)
    fn = OPERATORS.get(operator)
    if fn is None:
        return False
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool) and isinstance(actual, str):
            actual = float(actual)
        return bool(fn(actual, value))
    except (TypeError, ValueError):
        return False
