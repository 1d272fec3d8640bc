"""
Pytest configuration and fixtures for Gatehouse tests.

This module provides shared fixtures used across unit, integration,
and security tests.
"""

import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Generator

import pytest

from gatehouse.policy import DecisionEngine, PolicyRegistry
from gatehouse.schema import Identity, Policy, TrustTier, load_policies_from_string


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_policy_yaml() -> str:
    """A policy that denies deletes and allows everything else by default."""
    return """
name: no-deletes
version: 1
rules:
  - effect: deny
    actions: ["delete:*"]
    reason: deletes are not allowed
defaultEffect: allow
"""


@pytest.fixture
def tiered_policy_yaml() -> str:
    """Two policies: one for verified/trusted agents, one for a tag."""
    return """
policies:
  - name: verified-agents
    appliesTo:
      trustTiers: [verified, trusted]
    rules:
      - effect: allow
        actions: ["read:*"]
      - effect: deny
        actions: ["*"]
        reason: verified agents may only read
    defaultEffect: deny
  - name: billing-agents
    appliesTo:
      tags: [billing]
    rules:
      - effect: allow
        actions: ["invoke:billing:*"]
        conditions:
          - op: range
            field: context.amount
            max: 500
    defaultEffect: deny
    delegation:
      maxDepth: 2
      permissionCeiling: ["invoke:billing:*", "read:*"]
"""


@pytest.fixture
def untrusted_identity() -> Identity:
    return Identity(id="agent-u", name="Untrusted", trust_tier=TrustTier.UNTRUSTED)


@pytest.fixture
def verified_identity() -> Identity:
    return Identity(id="agent-v", name="Verified", trust_tier=TrustTier.VERIFIED)


@pytest.fixture
def billing_identity() -> Identity:
    return Identity(
        id="agent-b",
        name="Billing",
        trust_tier=TrustTier.UNTRUSTED,
        tags=frozenset({"billing"}),
        org_id="acme",
    )


@pytest.fixture
def make_engine() -> Callable[..., DecisionEngine]:
    """Build a DecisionEngine from policies or a YAML string."""

    def _make(policies: list[Policy] | str, **kwargs) -> DecisionEngine:
        if isinstance(policies, str):
            policies = load_policies_from_string(policies)
        return DecisionEngine(PolicyRegistry(policies), **kwargs)

    return _make
