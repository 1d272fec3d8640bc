"""
Unit tests for rule conditions.

Tests cover:
- Field path resolution against resource and context
- Each predicate variant
- Combinators (all, any, not)
- Load-time validation of condition trees
- Errors raised for unresolvable fields and wrong operand types
"""

import pytest
from pydantic import TypeAdapter, ValidationError

from gatehouse.conditions import (
    AllCondition,
    AnyCondition,
    Condition,
    ContainsCondition,
    EqualsCondition,
    InCondition,
    NotCondition,
    RangeCondition,
    StartsWithCondition,
    evaluate_conditions,
    resolve_field,
)
from gatehouse.errors import ConditionError

condition_adapter = TypeAdapter(Condition)


# =============================================================================
# Field Resolution
# =============================================================================


class TestResolveField:
    """Tests for dotted field paths."""

    def test_resource_root(self) -> None:
        assert resolve_field("resource", "crm/42", {}) == "crm/42"

    def test_nested_resource(self) -> None:
        resource = {"owner": {"org": "acme"}}
        assert resolve_field("resource.owner.org", resource, {}) == "acme"

    def test_context_root(self) -> None:
        assert resolve_field("context.amount", None, {"amount": 12}) == 12

    def test_missing_field_raises(self) -> None:
        with pytest.raises(ConditionError) as exc_info:
            resolve_field("context.amount", None, {})
        assert exc_info.value.field_path == "context.amount"
        assert "context.amount is not set" in exc_info.value.underlying_error

    def test_attribute_access(self) -> None:
        class Resource:
            owner = "alice"

        assert resolve_field("resource.owner", Resource(), {}) == "alice"


# =============================================================================
# Predicates
# =============================================================================


class TestPredicates:
    """Tests for individual condition variants."""

    def test_equals(self) -> None:
        cond = EqualsCondition(field="context.env", value="staging")
        assert cond.evaluate(None, {"env": "staging"}) is True
        assert cond.evaluate(None, {"env": "prod"}) is False

    def test_in(self) -> None:
        cond = InCondition(field="context.region", values=["eu-west-1", "eu-central-1"])
        assert cond.evaluate(None, {"region": "eu-west-1"}) is True
        assert cond.evaluate(None, {"region": "us-east-1"}) is False

    def test_in_requires_values(self) -> None:
        with pytest.raises(ValidationError):
            InCondition(field="context.region", values=[])

    def test_contains_string(self) -> None:
        cond = ContainsCondition(field="resource", value="secret")
        assert cond.evaluate("files/secret.txt", {}) is True
        assert cond.evaluate("files/public.txt", {}) is False

    def test_contains_collection(self) -> None:
        cond = ContainsCondition(field="context.scopes", value="admin")
        assert cond.evaluate(None, {"scopes": ["read", "admin"]}) is True

    def test_contains_wrong_type_raises(self) -> None:
        cond = ContainsCondition(field="context.count", value=1)
        with pytest.raises(ConditionError):
            cond.evaluate(None, {"count": 12})

    def test_starts_with(self) -> None:
        cond = StartsWithCondition(field="resource", prefix="crm/")
        assert cond.evaluate("crm/42", {}) is True
        assert cond.evaluate("erp/42", {}) is False

    def test_starts_with_non_string_raises(self) -> None:
        cond = StartsWithCondition(field="resource", prefix="crm/")
        with pytest.raises(ConditionError):
            cond.evaluate(42, {})

    def test_range_inclusive(self) -> None:
        cond = RangeCondition(field="context.amount", min=10, max=500)
        assert cond.evaluate(None, {"amount": 10}) is True
        assert cond.evaluate(None, {"amount": 500}) is True
        assert cond.evaluate(None, {"amount": 500.01}) is False
        assert cond.evaluate(None, {"amount": 9}) is False

    def test_range_open_ended(self) -> None:
        assert RangeCondition(field="context.n", max=5).evaluate(None, {"n": -100}) is True
        assert RangeCondition(field="context.n", min=5).evaluate(None, {"n": 10**9}) is True

    def test_range_rejects_bool(self) -> None:
        cond = RangeCondition(field="context.flag", min=0, max=1)
        with pytest.raises(ConditionError):
            cond.evaluate(None, {"flag": True})

    def test_range_requires_a_bound(self) -> None:
        with pytest.raises(ValidationError):
            RangeCondition(field="context.n")

    def test_range_min_above_max(self) -> None:
        with pytest.raises(ValidationError):
            RangeCondition(field="context.n", min=10, max=1)


# =============================================================================
# Combinators and Parsing
# =============================================================================


class TestCombinators:
    """Tests for all/any/not."""

    def test_all(self) -> None:
        cond = AllCondition(
            conditions=[
                EqualsCondition(field="context.env", value="staging"),
                RangeCondition(field="context.amount", max=100),
            ]
        )
        assert cond.evaluate(None, {"env": "staging", "amount": 5}) is True
        assert cond.evaluate(None, {"env": "staging", "amount": 500}) is False

    def test_any(self) -> None:
        cond = AnyCondition(
            conditions=[
                StartsWithCondition(field="resource", prefix="crm/"),
                StartsWithCondition(field="resource", prefix="erp/"),
            ]
        )
        assert cond.evaluate("erp/1", {}) is True
        assert cond.evaluate("hr/1", {}) is False

    def test_not(self) -> None:
        cond = NotCondition(condition=EqualsCondition(field="context.env", value="prod"))
        assert cond.evaluate(None, {"env": "staging"}) is True
        assert cond.evaluate(None, {"env": "prod"}) is False

    def test_parse_nested_tree(self) -> None:
        cond = condition_adapter.validate_python({
            "op": "any",
            "conditions": [
                {"op": "starts_with", "field": "resource", "prefix": "crm/"},
                {"op": "not", "condition": {"op": "in", "field": "context.region", "values": ["us"]}},
            ],
        })
        assert isinstance(cond, AnyCondition)
        assert cond.evaluate("hr/1", {"region": "eu"}) is True
        assert cond.evaluate("hr/1", {"region": "us"}) is False

    def test_unknown_op_rejected(self) -> None:
        with pytest.raises(ValidationError):
            condition_adapter.validate_python({"op": "regex", "field": "resource", "pattern": ".*"})

    def test_field_must_be_rooted(self) -> None:
        with pytest.raises(ValidationError):
            condition_adapter.validate_python({"op": "equals", "field": "identity.id", "value": "x"})

    def test_evaluate_conditions_requires_all(self) -> None:
        conds = [
            EqualsCondition(field="context.a", value=1),
            EqualsCondition(field="context.b", value=2),
        ]
        assert evaluate_conditions(conds, None, {"a": 1, "b": 2}) is True
        assert evaluate_conditions(conds, None, {"a": 1, "b": 3}) is False
        assert evaluate_conditions([], None, {}) is True
