"""
Delegation validation for Gatehouse.

When an agent acts on behalf of another, the request carries a
DelegationChain. The validator applies two limits on top of whatever the
decision engine decided:

    1. Depth: a chain longer than the governing policy's max_depth is
       denied, whatever the rules say.
    2. Ceiling: the action must be covered by the policy's
       permission_ceiling AND by every link's granted_permissions.

A delegated request can therefore lose permissions but never gain them.
Narrowing between links is enforced when a link is appended (see
DelegationChain.extend); the validator re-checks every link anyway, so a
chain built by hand cannot smuggle a wider grant through.
"""

import logging

from gatehouse.matcher import matches_any
from gatehouse.schema import Decision, DelegationChain, DenialKind, Policy

logger = logging.getLogger(__name__)

REASON_DEPTH_EXCEEDED = "delegation depth exceeded"
REASON_CEILING_EXCEEDED = "exceeds delegated permission ceiling"
REASON_NOT_PERMITTED = "delegation not permitted by policy"


def effective_ceiling(chain: DelegationChain) -> list[str]:
    """
    Return the narrowest grant in a chain.

    By the narrowing invariant this is the last link's grant. An empty chain
    has no ceiling of its own.
    """
    if not chain.links:
        return []
    return list(chain.links[-1].granted_permissions)


class DelegationValidator:
    """
    Applies delegation depth and permission ceilings to a proposed decision.

    Usage:
        validator = DelegationValidator()
        decision = validator.validate(chain, proposed, governing_policy)
    """

    def validate(
        self,
        chain: DelegationChain,
        proposed_decision: Decision,
        governing_policy: Policy | None,
    ) -> Decision:
        """
        Intersect a proposed decision with a delegation chain's limits.

        Args:
            chain: The delegation chain the request arrived through
            proposed_decision: What the decision engine decided
            governing_policy: The first applicable policy for the identity

        Returns:
            The proposed decision, or a denial that keeps its trace id
        """
        settings = governing_policy.delegation if governing_policy else None
        if settings is None:
            if not proposed_decision.allowed:
                return proposed_decision
            logger.info(
                "Delegated request %s denied: no delegation block in %s",
                proposed_decision.trace_id,
                governing_policy.name if governing_policy else "any policy",
            )
            return proposed_decision.overridden(REASON_NOT_PERMITTED, DenialKind.DELEGATION)

        if chain.depth > settings.max_depth:
            logger.info(
                "Delegation chain %s denied: depth %d > %d",
                chain.chain_id,
                chain.depth,
                settings.max_depth,
            )
            return proposed_decision.overridden(REASON_DEPTH_EXCEEDED, DenialKind.DELEGATION)

        if not proposed_decision.allowed:
            return proposed_decision

        action = proposed_decision.action
        if not matches_any(settings.permission_ceiling, action):
            return proposed_decision.overridden(REASON_CEILING_EXCEEDED, DenialKind.DELEGATION)

        for index, link in enumerate(chain.links):
            if not matches_any(link.granted_permissions, action):
                logger.debug(
                    "Action %s outside grant of link %d (%s -> %s) in chain %s",
                    action,
                    index,
                    link.from_agent,
                    link.to_agent,
                    chain.chain_id,
                )
                return proposed_decision.overridden(
                    REASON_CEILING_EXCEEDED, DenialKind.DELEGATION
                )

        return proposed_decision
