# tests/core/test_conditions.py
"""Tests for rule/predicate evaluation against entry context."""

from typing import Any

import pytest
from pydantic import ValidationError

CONTEXT: dict[str, Any] = {
    "event": {"total_price": "149.90", "currency": "EUR", "items": 3},
    "subscriber": {"email": "Ada@Example.com", "tags": ["VIP", "newsletter"], "phone": ""},
}


class TestGetPath:
    def test_nested_lookup(self) -> None:
        from flowline.core.conditions import get_path

        assert get_path(CONTEXT, "event.currency") == "EUR"

    def test_missing_step_is_none(self) -> None:
        from flowline.core.conditions import get_path

        assert get_path(CONTEXT, "event.shipping.city") is None
        assert get_path(CONTEXT, "nothing") is None


class TestOperators:
    @pytest.mark.parametrize(
        ("field", "operator", "value", "expected"),
        [
            ("event.currency", "equals", "EUR", True),
            ("event.currency", "not_equals", "EUR", False),
            ("event.total_price", "greater_than", 100, True),
            ("event.total_price", "less_than", 100, False),
            ("event.items", "between", [1, 3], True),
            ("event.currency", "in", ["USD", "EUR"], True),
            ("subscriber.tags", "contains", "vip", True),
            ("subscriber.tags", "not_contains", "churned", True),
            ("subscriber.email", "contains", "example.com", True),
            ("subscriber.email", "starts_with", "ada@", True),
            ("subscriber.phone", "is_set", None, False),
            ("subscriber.phone", "is_not_set", None, True),
            ("event.missing", "greater_than", 1, False),
        ],
    )
    def test_operator(self, field: str, operator: str, value: Any, expected: bool) -> None:
        from flowline.core.conditions import Rule

        rule = Rule(field=field, operator=operator, value=value)
        assert rule.matches(CONTEXT) is expected

    def test_numeric_comparison_ignores_non_numbers(self) -> None:
        from flowline.core.conditions import Rule

        rule = Rule(field="event.currency", operator="greater_than", value=1)
        assert rule.matches(CONTEXT) is False

    def test_aliases(self) -> None:
        from flowline.core.conditions import Rule

        assert Rule(field="x", operator="gt", value=1).operator == "greater_than"
        assert Rule(field="x", operator="EQ", value=1).operator == "equals"


class TestRuleValidation:
    def test_unknown_operator(self) -> None:
        from flowline.core.conditions import Rule

        with pytest.raises(ValidationError, match="Unknown operator"):
            Rule(field="x", operator="resembles", value=1)

    def test_between_needs_pair(self) -> None:
        from flowline.core.conditions import Rule

        with pytest.raises(ValidationError, match="between"):
            Rule(field="x", operator="between", value=[1])

    def test_in_needs_list(self) -> None:
        from flowline.core.conditions import Rule

        with pytest.raises(ValidationError, match="'in' needs a list"):
            Rule(field="x", operator="in", value="EUR")

    def test_value_required(self) -> None:
        from flowline.core.conditions import Rule

        with pytest.raises(ValidationError, match="needs a value"):
            Rule(field="x", operator="greater_than")


class TestPredicate:
    def test_empty_predicate_matches(self) -> None:
        from flowline.core.conditions import Predicate

        assert Predicate().matches({}) is True

    def test_all_join(self) -> None:
        from flowline.core.conditions import Predicate

        predicate = Predicate.model_validate(
            {
                "join": "all",
                "rules": [
                    {"field": "event.currency", "operator": "equals", "value": "EUR"},
                    {"field": "event.items", "operator": "gt", "value": 5},
                ],
            }
        )
        assert predicate.matches(CONTEXT) is False

    def test_any_join(self) -> None:
        from flowline.core.conditions import Predicate

        predicate = Predicate.model_validate(
            {
                "join": "any",
                "rules": [
                    {"field": "event.currency", "operator": "equals", "value": "USD"},
                    {"field": "subscriber.tags", "operator": "contains", "value": "vip"},
                ],
            }
        )
        assert predicate.matches(CONTEXT) is True
