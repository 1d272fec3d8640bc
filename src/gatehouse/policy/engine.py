"""
Decision Engine for Gatehouse.

The Decision Engine is the security boundary of Gatehouse. Every governed
request passes through evaluate() before anything is forwarded.

How it works:
    1. Take one PolicySet snapshot for the whole evaluation
    2. Find the policies that apply to the identity, in load order
    3. No applicable policy: global default, reason "no applicable policy"
    4. Otherwise only the FIRST applicable policy is consulted. Its rules
       are scanned in order and the first rule whose action patterns match
       and whose conditions hold decides. No later rule is looked at.
    5. No rule matched: that policy's default_effect, reason "default effect"
    6. If the request came through a delegation chain, the Delegation
       Validator may turn an allow into a deny (never the reverse)

Design Principles:
    - First match wins: rule order is significant and preserved
    - Fail-closed: a revoked identity is denied outright
    - Isolated failures: a condition that errors skips its rule only
    - Predictable: same inputs and snapshot always produce the same outcome
    - Stateless: no locks, no counters; the snapshot is immutable
"""

import logging
from typing import Any

from gatehouse.conditions import evaluate_conditions
from gatehouse.delegation import DelegationValidator
from gatehouse.errors import RuleEvaluationSkip
from gatehouse.matcher import matches_any
from gatehouse.policy.policy_set import PolicyRegistry, PolicySet
from gatehouse.schema import (
    Decision,
    DelegationChain,
    DenialKind,
    Effect,
    Identity,
    Policy,
    Rule,
)

logger = logging.getLogger(__name__)

REASON_NO_POLICY = "no applicable policy"
REASON_DEFAULT_EFFECT = "default effect"
REASON_REVOKED = "identity revoked"


class DecisionEngine:
    """
    Central policy evaluator for Gatehouse.

    Usage:
        engine = DecisionEngine(registry)
        decision = engine.evaluate(identity, "read:contacts", "crm/123", {})
        if decision.allowed:
            # forward the request
        else:
            # reject with decision.reason

    Attributes:
        registry: Source of the current policy snapshot
        default_effect: Outcome when no policy applies (deny unless configured)
        delegation: Validator applied to delegated requests
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        default_effect: Effect = Effect.DENY,
        delegation: DelegationValidator | None = None,
    ) -> None:
        self.registry = registry
        self.default_effect = default_effect
        self.delegation = delegation or DelegationValidator()

    def decide(
        self,
        identity: Identity,
        action: str,
        resource: Any = None,
        context: dict[str, Any] | None = None,
    ) -> Decision:
        """
        Decide allow/deny for one action, ignoring delegation.

        Args:
            identity: The verified caller
            action: The action being attempted (e.g. "read:contacts")
            resource: The resource acted on (string or mapping)
            context: Free-form request context

        Returns:
            Decision with policy/rule attribution
        """
        decision, _ = self._decide(self.registry.snapshot(), identity, action, resource, context or {})
        return decision

    def evaluate(
        self,
        identity: Identity,
        action: str,
        resource: Any = None,
        context: dict[str, Any] | None = None,
        delegation_chain: DelegationChain | None = None,
    ) -> Decision:
        """
        Evaluate a request: decide, then apply delegation limits.

        This is the single call the governance pipeline makes into the core.
        """
        snapshot = self.registry.snapshot()
        decision, governing = self._decide(snapshot, identity, action, resource, context or {})

        if delegation_chain is not None and delegation_chain.links:
            decision = self.delegation.validate(delegation_chain, decision, governing)

        logger.debug(
            "Decision %s for %s on %s: %s (policy=%s rule=%s generation=%d)",
            decision.trace_id,
            identity.id,
            action,
            "allow" if decision.allowed else f"deny: {decision.reason}",
            decision.policy_name,
            decision.rule_index,
            snapshot.generation,
        )
        return decision

    def _decide(
        self,
        snapshot: PolicySet,
        identity: Identity,
        action: str,
        resource: Any,
        context: dict[str, Any],
    ) -> tuple[Decision, Policy | None]:
        if identity.revoked:
            return Decision.deny(action, REASON_REVOKED, DenialKind.AUTHENTICATION), None

        applicable = snapshot.applicable_policies(identity)
        if not applicable:
            if self.default_effect == Effect.ALLOW:
                return Decision.allow(action), None
            return Decision.deny(action, REASON_NO_POLICY), None

        # Only the first applicable policy is authoritative
        policy = applicable[0]
        for index, rule in enumerate(policy.rules):
            if self._rule_matches(policy, index, rule, action, resource, context):
                return self._rule_decision(policy, index, rule, action), policy

        if policy.default_effect == Effect.ALLOW:
            return Decision.allow(action, policy_name=policy.name), policy
        return Decision.deny(action, REASON_DEFAULT_EFFECT, policy_name=policy.name), policy

    def _rule_matches(
        self,
        policy: Policy,
        index: int,
        rule: Rule,
        action: str,
        resource: Any,
        context: dict[str, Any],
    ) -> bool:
        if not matches_any(rule.actions, action):
            return False
        if not rule.conditions:
            return True
        try:
            return evaluate_conditions(rule.conditions, resource, context)
        except RuleEvaluationSkip as e:
            skip = e
        except Exception as e:
            skip = RuleEvaluationSkip(underlying_error=f"{type(e).__name__}: {e}")
        logger.warning(
            "Skipping rule %d of policy %s for action %s: %s",
            index,
            policy.name,
            action,
            skip.underlying_error or skip.message,
        )
        return False

    def _rule_decision(self, policy: Policy, index: int, rule: Rule, action: str) -> Decision:
        if rule.effect == Effect.ALLOW:
            return Decision.allow(action, policy_name=policy.name, rule_index=index)
        reason = rule.reason or f"denied by rule {index} of policy {policy.name}"
        return Decision.deny(action, reason, policy_name=policy.name, rule_index=index)
