"""
Unit tests for the Delegation Validator.

Tests cover:
- Depth enforcement regardless of rule content
- Ceiling from the policy and from every link
- Denied decisions are never escalated
- Policies without a delegation block
- Monotonic narrowing of the effective ceiling
- Engine integration through evaluate()
"""

from collections.abc import Callable

import pytest

from gatehouse.delegation import (
    REASON_CEILING_EXCEEDED,
    REASON_DEPTH_EXCEEDED,
    REASON_NOT_PERMITTED,
    DelegationValidator,
    effective_ceiling,
)
from gatehouse.matcher import covers_all
from gatehouse.policy import DecisionEngine
from gatehouse.schema import (
    Decision,
    DelegationChain,
    DelegationLink,
    DelegationSettings,
    DenialKind,
    Identity,
    Policy,
)


@pytest.fixture
def validator() -> DelegationValidator:
    return DelegationValidator()


@pytest.fixture
def delegating_policy() -> Policy:
    return Policy(
        name="delegating",
        delegation=DelegationSettings(max_depth=2, permission_ceiling=["read:*", "write:notes"]),
    )


def _chain(*grants: list[str]) -> DelegationChain:
    """Build a chain by hand, bypassing extend()'s checks."""
    links = tuple(
        DelegationLink(from_agent=f"a{i}", to_agent=f"a{i + 1}", granted_permissions=g)
        for i, g in enumerate(grants)
    )
    return DelegationChain(links=links)


class TestValidate:
    """Tests for DelegationValidator.validate()."""

    def test_within_ceiling_keeps_allow(
        self, validator: DelegationValidator, delegating_policy: Policy
    ) -> None:
        proposed = Decision.allow("read:contacts", policy_name="delegating")
        result = validator.validate(_chain(["read:*"]), proposed, delegating_policy)
        assert result is proposed

    def test_depth_exceeded_denies(
        self, validator: DelegationValidator, delegating_policy: Policy
    ) -> None:
        chain = _chain(["read:*"], ["read:*"], ["read:*"])
        proposed = Decision.allow("read:contacts")
        result = validator.validate(chain, proposed, delegating_policy)
        assert result.allowed is False
        assert result.reason == REASON_DEPTH_EXCEEDED
        assert result.denial == DenialKind.DELEGATION
        assert result.trace_id == proposed.trace_id

    def test_depth_exceeded_overrides_rule_denial_reason(
        self, validator: DelegationValidator, delegating_policy: Policy
    ) -> None:
        chain = _chain(["read:*"], ["read:*"], ["read:*"])
        proposed = Decision.deny("read:contacts", "rule says no")
        result = validator.validate(chain, proposed, delegating_policy)
        assert result.reason == REASON_DEPTH_EXCEEDED

    def test_outside_policy_ceiling(
        self, validator: DelegationValidator, delegating_policy: Policy
    ) -> None:
        result = validator.validate(_chain(["*"]), Decision.allow("delete:notes"), delegating_policy)
        assert result.allowed is False
        assert result.reason == REASON_CEILING_EXCEEDED

    def test_outside_link_grant(
        self, validator: DelegationValidator, delegating_policy: Policy
    ) -> None:
        chain = _chain(["read:*", "write:notes"], ["read:*"])
        result = validator.validate(chain, Decision.allow("write:notes"), delegating_policy)
        assert result.allowed is False
        assert result.reason == REASON_CEILING_EXCEEDED

    def test_hand_built_widening_link_still_denied(
        self, validator: DelegationValidator, delegating_policy: Policy
    ) -> None:
        """A chain that widens mid-way is caught by the per-link check."""
        chain = _chain(["read:contacts"], ["read:*"])
        result = validator.validate(chain, Decision.allow("read:calendar"), delegating_policy)
        assert result.allowed is False

    def test_denied_never_escalated(
        self, validator: DelegationValidator, delegating_policy: Policy
    ) -> None:
        proposed = Decision.deny("read:contacts", "rule says no")
        assert validator.validate(_chain(["read:*"]), proposed, delegating_policy) is proposed

    def test_policy_without_delegation_block(self, validator: DelegationValidator) -> None:
        result = validator.validate(
            _chain(["read:*"]), Decision.allow("read:x"), Policy(name="plain")
        )
        assert result.allowed is False
        assert result.reason == REASON_NOT_PERMITTED

    def test_no_governing_policy(self, validator: DelegationValidator) -> None:
        result = validator.validate(_chain(["read:*"]), Decision.allow("read:x"), None)
        assert result.reason == REASON_NOT_PERMITTED


class TestEffectiveCeiling:
    """Tests for ceiling narrowing across hops."""

    def test_empty_chain(self) -> None:
        assert effective_ceiling(DelegationChain()) == []

    def test_last_link_is_narrowest(self) -> None:
        chain = DelegationChain.start("root", "a", ["read:*", "write:*"])
        chain = chain.extend("a", "b", ["read:*"])
        chain = chain.extend("b", "c", ["read:contacts"])
        assert effective_ceiling(chain) == ["read:contacts"]

    def test_monotonic_narrowing(self) -> None:
        """The ceiling after N hops is covered by the ceiling after N-1 hops."""
        chain = DelegationChain.start("root", "a", ["*"])
        grants = [["read:*", "write:*"], ["read:*"], ["read:contacts:*"], ["read:contacts:42"]]
        previous = effective_ceiling(chain)
        for i, grant in enumerate(grants):
            chain = chain.extend(f"n{i}", f"n{i + 1}", grant)
            current = effective_ceiling(chain)
            assert covers_all(previous, current) == []
            previous = current


class TestEngineIntegration:
    """Delegation applied through DecisionEngine.evaluate()."""

    POLICY = """
name: assistants
rules:
  - effect: allow
    actions: ["read:*", "write:*"]
delegation:
  maxDepth: 1
  permissionCeiling: ["read:*"]
"""

    def test_delegated_read_allowed(
        self, make_engine: Callable[..., DecisionEngine], verified_identity: Identity
    ) -> None:
        engine = make_engine(self.POLICY)
        chain = DelegationChain.start("boss", verified_identity.id, ["read:*"])
        decision = engine.evaluate(verified_identity, "read:contacts", delegation_chain=chain)
        assert decision.allowed is True

    def test_delegated_write_capped_by_ceiling(
        self, make_engine: Callable[..., DecisionEngine], verified_identity: Identity
    ) -> None:
        engine = make_engine(self.POLICY)
        chain = DelegationChain.start("boss", verified_identity.id, ["read:*"])
        direct = engine.evaluate(verified_identity, "write:notes")
        delegated = engine.evaluate(verified_identity, "write:notes", delegation_chain=chain)
        assert direct.allowed is True
        assert delegated.allowed is False
        assert delegated.reason == REASON_CEILING_EXCEEDED

    def test_depth_beyond_max_always_denied(
        self, make_engine: Callable[..., DecisionEngine], verified_identity: Identity
    ) -> None:
        engine = make_engine(self.POLICY)
        chain = _chain(["read:*"], ["read:*"])
        decision = engine.evaluate(verified_identity, "read:contacts", delegation_chain=chain)
        assert decision.allowed is False
        assert decision.reason == REASON_DEPTH_EXCEEDED

    def test_empty_chain_is_not_delegated(
        self, make_engine: Callable[..., DecisionEngine], verified_identity: Identity
    ) -> None:
        engine = make_engine(self.POLICY)
        decision = engine.evaluate(
            verified_identity, "write:notes", delegation_chain=DelegationChain()
        )
        assert decision.allowed is True
