"""
Policy decision module for Gatehouse.

This module implements the core security model: first-match-wins rule
evaluation over an atomically swapped policy snapshot.

Key concepts:
    - PolicySet: Immutable ordered snapshot of policies
    - PolicyRegistry: Holds the current snapshot; reloads swap one reference
    - DecisionEngine: Turns (identity, action, resource, context) into a Decision
    - YamlPolicyStore: Loads policies from YAML and notices file changes

The decision engine is the security boundary of Gatehouse. It must be:
    - Fail-closed: No applicable policy means deny unless configured otherwise
    - Predictable: Same inputs and snapshot always produce the same decision
    - Explainable: Every denial carries a reason and a trace id
"""

from gatehouse.policy.engine import DecisionEngine
from gatehouse.policy.policy_set import PolicyRegistry, PolicySet
from gatehouse.policy.store import YamlPolicyStore

__all__ = [
    "DecisionEngine",
    "PolicyRegistry",
    "PolicySet",
    "YamlPolicyStore",
]
