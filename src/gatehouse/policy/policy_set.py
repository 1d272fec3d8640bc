"""
Policy sets and the registry that serves them.

A PolicySet is an immutable, ordered snapshot of policies. The decision
engine only ever reads from one snapshot for the whole of an evaluation.

The PolicyRegistry holds the current snapshot behind a single reference.
Readers take the reference without locking. Writers build a complete new
PolicySet off to the side and install it with compare_and_swap(), so a
concurrent evaluation sees either the old set or the new one, never a mix.

Writers serialize among themselves with a lock; readers never touch it.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Protocol

from gatehouse.errors import PolicyLoadError
from gatehouse.schema import Identity, Policy

logger = logging.getLogger(__name__)


class PolicySet:
    """
    Immutable ordered collection of policies.

    Usage:
        policy_set = PolicySet([strict_policy, default_policy])
        for policy in policy_set.applicable_policies(identity):
            ...

    Attributes:
        policies: Policies in load order
        generation: Monotonic counter assigned by the registry
    """

    __slots__ = ("_policies", "_by_name", "generation")

    def __init__(self, policies: Iterable[Policy] = (), generation: int = 0) -> None:
        ordered = tuple(policies)
        by_name: dict[str, Policy] = {}
        duplicates: list[str] = []
        for policy in ordered:
            if policy.name in by_name:
                duplicates.append(policy.name)
            by_name[policy.name] = policy
        if duplicates:
            raise PolicyLoadError(
                errors=[f"duplicate policy name: {name}" for name in duplicates],
            )
        self._policies = ordered
        self._by_name = by_name
        self.generation = generation

    @property
    def policies(self) -> tuple[Policy, ...]:
        """Policies in load order."""
        return self._policies

    def __len__(self) -> int:
        return len(self._policies)

    def __iter__(self):
        return iter(self._policies)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> Policy | None:
        """Look up a policy by name."""
        return self._by_name.get(name)

    def applicable_policies(self, identity: Identity) -> tuple[Policy, ...]:
        """
        Return the policies that govern an identity, in load order.

        A policy applies when any of its present applies_to filters match
        the identity, or when it has no filters at all.
        """
        return tuple(p for p in self._policies if p.applies_to.matches(identity))

    def with_policy(self, policy: Policy, generation: int) -> "PolicySet":
        """Return a new set with ``policy`` replacing its namesake, or appended."""
        if policy.name in self._by_name:
            updated = [policy if p.name == policy.name else p for p in self._policies]
        else:
            updated = [*self._policies, policy]
        return PolicySet(updated, generation)

    def without_policy(self, name: str, generation: int) -> "PolicySet":
        """Return a new set with the named policy removed."""
        return PolicySet((p for p in self._policies if p.name != name), generation)


class PolicySource(Protocol):
    """Anything that can produce the full list of policies."""

    def load_all(self) -> list[Policy]: ...


class PolicyRegistry:
    """
    Holds the current PolicySet and swaps it atomically.

    Usage:
        registry = PolicyRegistry(load_policies("policies/"))
        snapshot = registry.snapshot()          # lock-free read
        registry.apply(updated_policy)          # replace by name
        registry.reload_from(store)             # full reload, keeps old set on error
    """

    def __init__(self, policies: Iterable[Policy] = ()) -> None:
        self._current = PolicySet(policies, generation=0)
        self._write_lock = threading.Lock()
        self._listeners: list[Callable[[PolicySet], None]] = []

    def snapshot(self) -> PolicySet:
        """Return the current policy set. Never blocks."""
        return self._current

    def subscribe(self, listener: Callable[[PolicySet], None]) -> None:
        """Register a callback invoked after every successful swap."""
        self._listeners.append(listener)

    def compare_and_swap(self, expected: PolicySet, new: PolicySet) -> bool:
        """
        Install ``new`` only if ``expected`` is still current.

        Returns:
            True if the swap happened
        """
        with self._write_lock:
            if self._current is not expected:
                return False
            self._current = new
        self._notify(new)
        return True

    def _update(self, build: Callable[[PolicySet, int], PolicySet]) -> PolicySet:
        while True:
            current = self._current
            candidate = build(current, current.generation + 1)
            if self.compare_and_swap(current, candidate):
                return candidate

    def replace_all(self, policies: Iterable[Policy]) -> PolicySet:
        """
        Replace the whole set.

        Raises:
            PolicyLoadError: If the new policies are inconsistent; the
                current set stays in service
        """
        policies = list(policies)
        new_set = self._update(lambda _current, gen: PolicySet(policies, gen))
        logger.info(
            "Policy set replaced (generation %d, %d policies)",
            new_set.generation,
            len(new_set),
        )
        return new_set

    def apply(self, policy: Policy) -> PolicySet:
        """Add a policy, replacing any existing policy with the same name."""
        new_set = self._update(lambda current, gen: current.with_policy(policy, gen))
        logger.info("Applied policy %s version %s", policy.name, policy.version)
        return new_set

    def remove(self, name: str) -> PolicySet:
        """
        Delete a policy by name.

        Raises:
            KeyError: If no policy has that name
        """
        if name not in self._current:
            raise KeyError(name)
        new_set = self._update(lambda current, gen: current.without_policy(name, gen))
        logger.info("Removed policy %s", name)
        return new_set

    def reload_from(self, source: PolicySource) -> bool:
        """
        Reload every policy from a source.

        A source that fails to load leaves the current set untouched.

        Returns:
            True if the new set was installed
        """
        try:
            policies = source.load_all()
            self.replace_all(policies)
        except PolicyLoadError as e:
            logger.error("Policy reload rejected, keeping generation %d: %s",
                         self._current.generation, e)
            return False
        return True

    def _notify(self, new_set: PolicySet) -> None:
        for listener in list(self._listeners):
            try:
                listener(new_set)
            except Exception:
                logger.exception("Policy set listener failed")
