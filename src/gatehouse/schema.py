"""
Schema definitions for Gatehouse.

This module defines the Pydantic models used throughout Gatehouse:
- Identity: The verified caller, as a read-only snapshot
- Policy/Rule/AppliesTo: What is allowed and what is denied, for whom
- Decision: The result of evaluating one request
- DelegationChain/DelegationLink: Agent-to-agent authority handoffs
- UsageResult: Outcome of a usage-limiter check

Design Decisions:
    - Policy data is immutable (frozen=True); a reload replaces whole objects
    - YAML uses camelCase field names (appliesTo, defaultEffect, maxDepth),
      Python code uses snake_case; aliases bridge the two
    - Action patterns are validated when a policy is built, never at
      evaluation time
    - Decision invariants (trace id, reason iff denied) are checked by a
      model validator so an inconsistent decision cannot be constructed
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from gatehouse.errors import (
    DelegationCeilingViolation,
    DelegationDepthExceeded,
    PolicyLoadError,
)
from gatehouse.conditions import Condition
from gatehouse.matcher import covers_all, validate_pattern


# =============================================================================
# Enums
# =============================================================================


class TrustTier(str, Enum):
    """Coarse capability class assigned to an identity."""

    UNTRUSTED = "untrusted"
    VERIFIED = "verified"
    TRUSTED = "trusted"
    PRIVILEGED = "privileged"


class Effect(str, Enum):
    """Outcome a rule or policy default produces."""

    ALLOW = "allow"
    DENY = "deny"


class DenialKind(str, Enum):
    """
    Why a request was denied.

    Lets the outward-facing adapter pick a status code without parsing
    reason strings.
    """

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    POLICY = "policy"
    DELEGATION = "delegation"
    AUDIT = "audit"
    UPSTREAM = "upstream"
    UNAVAILABLE = "unavailable"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


def _check_patterns(patterns: list[str]) -> list[str]:
    errors: list[str] = []
    for pattern in patterns:
        errors.extend(validate_pattern(pattern))
    if errors:
        raise ValueError("; ".join(errors))
    return patterns


# =============================================================================
# Identity
# =============================================================================


class Identity(_CamelModel):
    """
    A verified caller.

    Owned by the external identity store. Gatehouse only ever holds a
    read-only snapshot taken at the start of a request.

    Attributes:
        id: Stable agent identifier
        name: Human-readable name
        trust_tier: Coarse capability class
        tags: Free-form labels used by policy targeting
        org_id: Owning organisation
        revoked: Whether the identity has been revoked
    """

    id: str = Field(..., min_length=1, description="Stable agent identifier")
    name: str = Field(default="", description="Human-readable name")
    trust_tier: TrustTier = Field(
        default=TrustTier.UNTRUSTED,
        description="Coarse capability class",
    )
    tags: frozenset[str] = Field(
        default_factory=frozenset,
        description="Labels used by policy targeting",
    )
    org_id: str | None = Field(default=None, description="Owning organisation")
    revoked: bool = Field(default=False, description="Whether the identity is revoked")


# =============================================================================
# Policy Models
# =============================================================================


class AppliesTo(_CamelModel):
    """
    Applicability filters for a policy.

    A policy applies when ANY present filter matches. A policy with no
    filters at all applies to everyone.
    """

    trust_tiers: list[TrustTier] | None = None
    tags: list[str] | None = None
    agent_ids: list[str] | None = None
    org_ids: list[str] | None = None

    @property
    def is_unfiltered(self) -> bool:
        """Whether no filter is present."""
        return (
            self.trust_tiers is None
            and self.tags is None
            and self.agent_ids is None
            and self.org_ids is None
        )

    def matches(self, identity: Identity) -> bool:
        """Check whether an identity is targeted by these filters."""
        if self.is_unfiltered:
            return True
        if self.trust_tiers is not None and identity.trust_tier in self.trust_tiers:
            return True
        if self.tags is not None and identity.tags.intersection(self.tags):
            return True
        if self.agent_ids is not None and identity.id in self.agent_ids:
            return True
        if self.org_ids is not None and identity.org_id in self.org_ids:
            return True
        return False


class Rule(_CamelModel):
    """
    A single ordered rule inside a policy.

    Attributes:
        effect: allow or deny when the rule matches
        actions: Action patterns; the rule matches if any one matches
        conditions: Predicates over resource/context; all must hold
        reason: Explanation attached to denials from this rule
    """

    effect: Effect
    actions: list[str] = Field(..., min_length=1)
    conditions: list[Condition] = Field(default_factory=list)
    reason: str | None = None

    @field_validator("actions")
    @classmethod
    def validate_actions(cls, v: list[str]) -> list[str]:
        """Reject malformed action patterns at load time."""
        return _check_patterns(v)


class DelegationSettings(_CamelModel):
    """
    Delegation limits a policy places on agents it governs.

    Attributes:
        max_depth: Longest permitted delegation chain
        permission_ceiling: Action patterns any delegate may ever exercise
    """

    max_depth: int = Field(default=1, ge=0)
    permission_ceiling: list[str] = Field(default_factory=list)

    @field_validator("permission_ceiling")
    @classmethod
    def validate_ceiling(cls, v: list[str]) -> list[str]:
        """Reject malformed ceiling patterns at load time."""
        return _check_patterns(v)


class Policy(_CamelModel):
    """
    A named, versioned set of ordered rules.

    Immutable once loaded. Applying a policy with the same name replaces the
    previous one wholesale.

    Attributes:
        name: Unique policy name
        version: Author-supplied version string
        applies_to: Which identities the policy governs
        rules: Ordered rules; first match wins
        default_effect: Outcome when no rule matches
        delegation: Optional delegation limits
    """

    name: str = Field(..., min_length=1)
    version: str = Field(default="1")
    applies_to: AppliesTo = Field(default_factory=AppliesTo)
    rules: list[Rule] = Field(default_factory=list)
    default_effect: Effect = Field(default=Effect.DENY)
    delegation: DelegationSettings | None = None

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> Any:
        """Allow YAML authors to write version: 2 or version: 1.1."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


# =============================================================================
# Decision
# =============================================================================


def new_trace_id() -> str:
    """Generate a trace identifier for a decision."""
    return uuid.uuid4().hex


class Decision(BaseModel):
    """
    Result of evaluating one request.

    Created fresh per request and never mutated. Consumed by the pipeline
    and by the audit sink.

    Attributes:
        allowed: Whether the action is permitted
        action: The action that was evaluated
        policy_name: Policy that produced the decision, if any
        rule_index: Index of the matching rule in that policy, if any
        reason: Why the request was denied (None when allowed)
        trace_id: Unique identifier for this decision
        timestamp: When the decision was made (UTC)
        denial: Category of denial (None when allowed)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed: bool
    action: str
    policy_name: str | None = None
    rule_index: int | None = Field(default=None, ge=0)
    reason: str | None = None
    trace_id: str = Field(default_factory=new_trace_id, min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    denial: DenialKind | None = None

    @model_validator(mode="after")
    def check_invariants(self) -> "Decision":
        """An allow carries no reason; a deny always carries one."""
        if self.allowed:
            if self.reason is not None:
                msg = "an allow decision must not carry a reason"
                raise ValueError(msg)
            if self.denial is not None:
                msg = "an allow decision must not carry a denial kind"
                raise ValueError(msg)
        else:
            if not self.reason:
                msg = "a deny decision must carry a reason"
                raise ValueError(msg)
            if self.denial is None:
                msg = "a deny decision must carry a denial kind"
                raise ValueError(msg)
        return self

    @classmethod
    def allow(
        cls,
        action: str,
        policy_name: str | None = None,
        rule_index: int | None = None,
    ) -> "Decision":
        """Create an ALLOW decision."""
        return cls(
            allowed=True,
            action=action,
            policy_name=policy_name,
            rule_index=rule_index,
        )

    @classmethod
    def deny(
        cls,
        action: str,
        reason: str,
        denial: DenialKind = DenialKind.POLICY,
        policy_name: str | None = None,
        rule_index: int | None = None,
        trace_id: str | None = None,
    ) -> "Decision":
        """Create a DENY decision."""
        extra: dict[str, Any] = {}
        if trace_id:
            extra["trace_id"] = trace_id
        return cls(
            allowed=False,
            action=action,
            reason=reason,
            denial=denial,
            policy_name=policy_name,
            rule_index=rule_index,
            **extra,
        )

    def overridden(self, reason: str, denial: DenialKind) -> "Decision":
        """Return a denial that keeps this decision's trace and attribution."""
        return self.model_copy(
            update={"allowed": False, "reason": reason, "denial": denial}
        )

    def outcome(self) -> tuple[Any, ...]:
        """Decision content without trace id and timestamp."""
        return (
            self.allowed,
            self.action,
            self.policy_name,
            self.rule_index,
            self.reason,
            self.denial,
        )


# =============================================================================
# Delegation
# =============================================================================


class DelegationLink(_CamelModel):
    """
    One agent-to-agent authority handoff.

    Attributes:
        from_agent: The delegating agent
        to_agent: The agent receiving authority
        granted_permissions: Action patterns handed over
    """

    from_agent: str = Field(..., min_length=1)
    to_agent: str = Field(..., min_length=1)
    granted_permissions: list[str] = Field(default_factory=list)

    @field_validator("granted_permissions")
    @classmethod
    def validate_grants(cls, v: list[str]) -> list[str]:
        """Reject malformed grant patterns."""
        return _check_patterns(v)


class DelegationChain(_CamelModel):
    """
    The ordered record of handoffs for one logical task.

    Chains are immutable; extend() returns a new chain with one more link.
    ``depth`` always equals the number of links.
    """

    chain_id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)
    links: tuple[DelegationLink, ...] = Field(default_factory=tuple)
    depth: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def derive_depth(cls, data: Any) -> Any:
        """Fill in depth from the links when it is not given."""
        if isinstance(data, dict) and data.get("depth") is None:
            data = {**data, "depth": len(data.get("links") or ())}
        return data

    @model_validator(mode="after")
    def check_depth(self) -> "DelegationChain":
        """Depth always equals the number of links."""
        if self.depth != len(self.links):
            msg = f"depth {self.depth} does not match {len(self.links)} links"
            raise ValueError(msg)
        return self

    @classmethod
    def start(
        cls,
        from_agent: str,
        to_agent: str,
        granted_permissions: list[str],
        max_depth: int | None = None,
    ) -> "DelegationChain":
        """Begin a chain with its first handoff."""
        return cls().extend(from_agent, to_agent, granted_permissions, max_depth)

    def extend(
        self,
        from_agent: str,
        to_agent: str,
        granted_permissions: list[str],
        max_depth: int | None = None,
    ) -> "DelegationChain":
        """
        Append a handoff, returning a new chain.

        Raises:
            DelegationDepthExceeded: If the new depth would exceed max_depth
            DelegationCeilingViolation: If the grant widens the parent link's
        """
        new_depth = self.depth + 1
        if max_depth is not None and new_depth > max_depth:
            raise DelegationDepthExceeded(
                chain_id=self.chain_id,
                depth=new_depth,
                max_depth=max_depth,
            )
        if self.links:
            widened = covers_all(
                self.links[-1].granted_permissions,
                granted_permissions,
            )
            if widened:
                raise DelegationCeilingViolation(
                    chain_id=self.chain_id,
                    pattern=widened[0],
                )
        link = DelegationLink(
            from_agent=from_agent,
            to_agent=to_agent,
            granted_permissions=list(granted_permissions),
        )
        return DelegationChain(chain_id=self.chain_id, links=(*self.links, link))


# =============================================================================
# Usage
# =============================================================================


class UsageCounter(BaseModel):
    """Requests counted for one identity in one window."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    identity_id: str
    window_start: datetime
    count: int = Field(default=0, ge=0)


class UsageResult(BaseModel):
    """
    Outcome of a usage-limiter check.

    Attributes:
        within_limit: Whether the request is within the ceiling
        remaining: Requests left in the current window
        limit: Ceiling for the current window
        count: Requests counted in the current window, including this one
        window_start: Start of the current window (UTC)
        reset_at: When the current window ends (UTC)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    within_limit: bool
    remaining: int = Field(..., ge=0)
    limit: int = Field(..., ge=0)
    count: int = Field(..., ge=0)
    window_start: datetime
    reset_at: datetime


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def _policy_documents(data: Any, source: str) -> list[dict[str, Any]]:
    if data is None:
        return []
    if isinstance(data, dict) and "policies" in data:
        items = data["policies"]
        if not isinstance(items, list):
            raise PolicyLoadError(source=source, errors=["'policies' must be a list"])
        return items
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return data
    raise PolicyLoadError(
        source=source,
        errors=[f"expected a mapping or list, got {type(data).__name__}"],
    )


def parse_policies(data: Any, source: str = "<data>") -> list[Policy]:
    """
    Build policies from already-parsed YAML data.

    Raises:
        PolicyLoadError: If any policy is malformed
    """
    policies: list[Policy] = []
    for index, item in enumerate(_policy_documents(data, source)):
        try:
            policies.append(Policy.model_validate(item))
        except ValidationError as e:
            errors = [
                f"policies[{index}].{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise PolicyLoadError(source=source, errors=errors) from e
    return policies


def load_policies(path: Path | str) -> list[Policy]:
    """
    Load policies from a YAML file or a directory of YAML files.

    A file holds a single policy mapping, a list of policies, or a mapping
    with a ``policies`` list. Directories are read in filename order.

    Raises:
        PolicyLoadError: If a file is missing, unparsable or invalid
    """
    path = Path(path)
    if path.is_dir():
        policies: list[Policy] = []
        files = sorted(
            p for p in path.iterdir() if p.suffix in (".yaml", ".yml") and p.is_file()
        )
        for file in files:
            policies.extend(load_policies(file))
        return policies

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise PolicyLoadError(source=str(path), errors=[str(e)]) from e
    except UnicodeDecodeError as e:
        raise PolicyLoadError(source=str(path), errors=[f"not valid UTF-8: {e}"]) from e
    except yaml.YAMLError as e:
        raise PolicyLoadError(source=str(path), errors=[f"invalid YAML: {e}"]) from e

    return parse_policies(data, source=str(path))


def load_policies_from_string(content: str) -> list[Policy]:
    """Load policies from a YAML string."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PolicyLoadError(source="<string>", errors=[f"invalid YAML: {e}"]) from e
    return parse_policies(data, source="<string>")


def load_identity(path: Path | str) -> Identity:
    """Load an identity snapshot from a YAML file (used for dry runs)."""
    path = Path(path)
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return Identity.model_validate(data)
