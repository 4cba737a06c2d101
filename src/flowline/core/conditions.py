# src/flowline/core/conditions.py
"""Predicates evaluated against a subscriber's execution context.

A predicate is a list of rules joined with ``all`` or ``any``. Each rule
reads a dot-separated path from the context (``event.total_price``,
``subscriber.tags``) and compares it with a literal using a named operator.

Predicates are pure: they never fetch data. Anything a rule needs must have
been captured in the context at enrollment time.

Example YAML:
    when:
      join: all
      rules:
        - field: event.total_price
          operator: greater_than
          value: 100
        - field: subscriber.tags
          operator: contains
          value: vip
"""

import math
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, Field, model_validator

from flowline.contracts.enums import ConditionJoin

_MISSING = object()


def get_path(context: Mapping[str, Any], path: str) -> Any:
    """Resolve a dot path in nested mappings; returns None when any step is absent."""
    value: Any = context
    for key in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(key, _MISSING)
        if value is _MISSING:
            return None
    return value


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _text(value: Any) -> str:
    return "" if value is None else str(value).lower()


def _contains(actual: Any, expected: Any) -> bool:
    # Lists match on membership, everything else on case-insensitive substring
    if isinstance(actual, (list, tuple, set, frozenset)):
        needle = _text(expected)
        return any(_text(item) == needle for item in actual)
    return _text(expected) in _text(actual)


def _compare_numbers(actual: Any, expected: Any, op: Callable[[float, float], bool]) -> bool:
    a = _to_number(actual)
    b = _to_number(expected)
    return a is not None and b is not None and op(a, b)


def _between(actual: Any, expected: Any) -> bool:
    low, high = expected
    a = _to_number(actual)
    lo = _to_number(low)
    hi = _to_number(high)
    return a is not None and lo is not None and hi is not None and lo <= a <= hi


def _is_set(actual: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return bool(actual.strip())
    if isinstance(actual, (list, tuple, dict, set, frozenset)):
        return len(actual) > 0
    return True


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda a, e: a == e,
    "not_equals": lambda a, e: a != e,
    "contains": _contains,
    "not_contains": lambda a, e: not _contains(a, e),
    "starts_with": lambda a, e: _text(a).startswith(_text(e)),
    "greater_than": lambda a, e: _compare_numbers(a, e, lambda x, y: x > y),
    "less_than": lambda a, e: _compare_numbers(a, e, lambda x, y: x < y),
    "between": _between,
    "in": lambda a, e: a in e,
    "is_set": lambda a, _e: _is_set(a),
    "is_not_set": lambda a, _e: not _is_set(a),
}

# Short spellings accepted from the flow builder
OPERATOR_ALIASES: dict[str, str] = {
    "gt": "greater_than",
    "lt": "less_than",
    "eq": "equals",
    "ne": "not_equals",
}

_UNARY_OPERATORS = frozenset({"is_set", "is_not_set"})


class Rule(BaseModel):
    """A single comparison against one context path."""

    model_config = {"frozen": True}

    field: str = Field(min_length=1, description="Dot path into the context")
    operator: str = Field(description="Comparison operator name")
    value: Any = Field(default=None, description="Literal compared against")

    @model_validator(mode="before")
    @classmethod
    def resolve_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "operator" in data:
            op = str(data["operator"]).lower()
            data = {**data, "operator": OPERATOR_ALIASES.get(op, op)}
        return data

    @model_validator(mode="after")
    def validate_operator(self) -> "Rule":
        if self.operator not in OPERATORS:
            raise ValueError(
                f"Unknown operator '{self.operator}'. "
                f"Available: {sorted(OPERATORS)}"
            )
        if self.operator == "between":
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("'between' needs a [low, high] value")
        if self.operator == "in" and not isinstance(self.value, (list, tuple)):
            raise ValueError("'in' needs a list value")
        if self.operator not in _UNARY_OPERATORS and self.operator not in (
            "equals",
            "not_equals",
        ) and self.value is None:
            raise ValueError(f"Operator '{self.operator}' needs a value")
        return self

    def matches(self, context: Mapping[str, Any]) -> bool:
        actual = get_path(context, self.field)
        return OPERATORS[self.operator](actual, self.value)


class Predicate(BaseModel):
    """Rules combined with all/any. An empty predicate always matches."""

    model_config = {"frozen": True}

    join: ConditionJoin = Field(default=ConditionJoin.ALL)
    rules: tuple[Rule, ...] = Field(default=())

    def matches(self, context: Mapping[str, Any]) -> bool:
        if not self.rules:
            return True
        results = (rule.matches(context) for rule in self.rules)
        if self.join == ConditionJoin.ALL:
            return all(results)
        return any(results)
