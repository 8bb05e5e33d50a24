"""
Condition evaluator for condition nodes.

Evaluates (variable, operator, value) triples against the session
variables. String operators compare case-insensitively, comparison
operators coerce both sides to numbers. All triples are ANDed.
"""
from __future__ import annotations

import re
from typing import Any, Iterable

from flows.models import ConditionRule
from flows.variables import to_display_text


def _text(value: Any) -> str:
    return to_display_text(value).strip()


def _number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(",", ".") if value is not None else ""
    if not text:
        raise ValueError("empty value")
    return float(text)


def _regex(value: Any, pattern: Any) -> bool:
    try:
        return re.search(str(pattern), to_display_text(value)) is not None
    except re.error:
        return False


OPERATORS: dict[str, Any] = {
    "equals": lambda a, b: _text(a).lower() == _text(b).lower(),
    "not_equals": lambda a, b: _text(a).lower() != _text(b).lower(),
    "contains": lambda a, b: _text(b).lower() in _text(a).lower(),
    "starts_with": lambda a, b: _text(a).lower().startswith(_text(b).lower()),
    "ends_with": lambda a, b: _text(a).lower().endswith(_text(b).lower()),
    "greater_than": lambda a, b: _number(a) > _number(b),
    "less_than": lambda a, b: _number(a) < _number(b),
    "is_empty": lambda a, b: _text(a) == "",
    "is_not_empty": lambda a, b: _text(a) != "",
    "matches_regex": _regex,
}


def evaluate_condition(condition: ConditionRule, data: dict[str, Any]) -> bool:
    """Evaluate a single condition against data."""
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    try:
        return bool(fn(data.get(condition.variable), condition.value))
    except (TypeError, ValueError):
        return False


def evaluate_conditions(conditions: Iterable[ConditionRule], data: dict[str, Any]) -> bool:
    """Evaluate all conditions (AND logic). Returns True if all pass."""
    return all(evaluate_condition(c, data) for c in conditions)
