"""
Rule conditions for Gatehouse.

Conditions are a small tagged-variant predicate language evaluated by a
tree-walking interpreter. Policy authors write them in YAML:

    conditions:
      - op: equals
        field: context.environment
        value: staging
      - op: range
        field: context.amount
        max: 500
      - op: any
        conditions:
          - op: starts_with
            field: resource
            prefix: "crm/"
          - op: in
            field: context.region
            values: [eu-west-1, eu-central-1]

Field paths are dotted and rooted at ``resource`` or ``context``. A path that
does not resolve, or an operand of the wrong type, raises ConditionError. The
decision engine turns that into a skipped rule; it never reaches the caller.

There is no regex or expression support. The cost of a condition is bounded
by the size of its tree. Path components starting with an underscore are
rejected, so conditions cannot reach private or dunder attributes.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatehouse.errors import ConditionError

ROOTS = ("resource", "context")

_MISSING = object()


def resolve_field(path: str, resource: Any, context: dict[str, Any]) -> Any:
    """
    Resolve a dotted field path against the request's resource and context.

    Raises:
        ConditionError: If the path does not resolve
    """
    root, *rest = path.split(".")
    current: Any = resource if root == "resource" else context
    walked = root
    for key in rest:
        walked = f"{walked}.{key}"
        if isinstance(current, dict):
            current = current.get(key, _MISSING)
        else:
            current = getattr(current, key, _MISSING)
        if current is _MISSING:
            raise ConditionError(
                field_path=path,
                underlying_error=f"{walked} is not set",
            )
    return current


class _FieldCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str = Field(..., min_length=1, description="Dotted path into resource/context")

    @field_validator("field")
    @classmethod
    def validate_root(cls, v: str) -> str:
        """Field paths must start at resource or context."""
        root = v.split(".", 1)[0]
        if root not in ROOTS:
            msg = f"field must start with one of {ROOTS}, got {v!r}"
            raise ValueError(msg)
        if any(not part for part in v.split(".")):
            msg = f"field path has an empty component: {v!r}"
            raise ValueError(msg)
        if any(part.startswith("_") for part in v.split(".")):
            msg = f"field path may not address private attributes: {v!r}"
            raise ValueError(msg)
        return v


class EqualsCondition(_FieldCondition):
    """Field equals a literal value."""

    op: Literal["equals"] = "equals"
    value: Any = None

    def evaluate(self, resource: Any, context: dict[str, Any]) -> bool:
        return resolve_field(self.field, resource, context) == self.value


class InCondition(_FieldCondition):
    """Field is one of a set of literal values."""

    op: Literal["in"] = "in"
    values: list[Any] = Field(..., min_length=1)

    def evaluate(self, resource: Any, context: dict[str, Any]) -> bool:
        return resolve_field(self.field, resource, context) in self.values


class ContainsCondition(_FieldCondition):
    """Field (a string, list or mapping) contains a value."""

    op: Literal["contains"] = "contains"
    value: Any = None

    def evaluate(self, resource: Any, context: dict[str, Any]) -> bool:
        actual = resolve_field(self.field, resource, context)
        if isinstance(actual, str):
            if not isinstance(self.value, str):
                raise ConditionError(
                    field_path=self.field,
                    underlying_error="cannot search a string for a non-string value",
                )
            return self.value in actual
        if isinstance(actual, (list, tuple, set, frozenset, dict)):
            return self.value in actual
        raise ConditionError(
            field_path=self.field,
            underlying_error=f"contains needs a string or collection, got {type(actual).__name__}",
        )


class StartsWithCondition(_FieldCondition):
    """String field starts with a prefix."""

    op: Literal["starts_with"] = "starts_with"
    prefix: str

    def evaluate(self, resource: Any, context: dict[str, Any]) -> bool:
        actual = resolve_field(self.field, resource, context)
        if not isinstance(actual, str):
            raise ConditionError(
                field_path=self.field,
                underlying_error=f"starts_with needs a string, got {type(actual).__name__}",
            )
        return actual.startswith(self.prefix)


class RangeCondition(_FieldCondition):
    """Numeric field lies within an inclusive range."""

    op: Literal["range"] = "range"
    min: float | None = None
    max: float | None = None

    @model_validator(mode="after")
    def validate_bounds(self) -> "RangeCondition":
        """At least one bound is required and min may not exceed max."""
        if self.min is None and self.max is None:
            msg = "range needs at least one of min or max"
            raise ValueError(msg)
        if self.min is not None and self.max is not None and self.min > self.max:
            msg = f"range min {self.min} is greater than max {self.max}"
            raise ValueError(msg)
        return self

    def evaluate(self, resource: Any, context: dict[str, Any]) -> bool:
        actual = resolve_field(self.field, resource, context)
        # bool is an int subclass but never a meaningful quantity here
        if isinstance(actual, bool) or not isinstance(actual, (int, float)):
            raise ConditionError(
                field_path=self.field,
                underlying_error=f"range needs a number, got {type(actual).__name__}",
            )
        if self.min is not None and actual < self.min:
            return False
        if self.max is not None and actual > self.max:
            return False
        return True


class AllCondition(BaseModel):
    """Every nested condition holds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    op: Literal["all"] = "all"
    conditions: list["Condition"] = Field(..., min_length=1)

    def evaluate(self, resource: Any, context: dict[str, Any]) -> bool:
        return all(c.evaluate(resource, context) for c in self.conditions)


class AnyCondition(BaseModel):
    """At least one nested condition holds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    op: Literal["any"] = "any"
    conditions: list["Condition"] = Field(..., min_length=1)

    def evaluate(self, resource: Any, context: dict[str, Any]) -> bool:
        return any(c.evaluate(resource, context) for c in self.conditions)


class NotCondition(BaseModel):
    """The nested condition does not hold."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    op: Literal["not"] = "not"
    condition: "Condition"

    def evaluate(self, resource: Any, context: dict[str, Any]) -> bool:
        return not self.condition.evaluate(resource, context)


Condition = Annotated[
    Union[
        EqualsCondition,
        InCondition,
        ContainsCondition,
        StartsWithCondition,
        RangeCondition,
        AllCondition,
        AnyCondition,
        NotCondition,
    ],
    Field(discriminator="op"),
]

AllCondition.model_rebuild()
AnyCondition.model_rebuild()
NotCondition.model_rebuild()


def evaluate_conditions(
    conditions: list[Condition] | tuple[Condition, ...],
    resource: Any,
    context: dict[str, Any],
) -> bool:
    """
    Evaluate a rule's condition list (all must hold).

    Raises:
        ConditionError: If any condition cannot be applied
    """
    for condition in conditions:
        if not condition.evaluate(resource, context):
            return False
    return True
