"""
Integration tests for hot policy reload.

Tests cover:
- Decisions switch over once a reload is installed
- Concurrent evaluation never sees a partially applied set
- A broken edit leaves the running policies in place
"""

import threading
from pathlib import Path

from gatehouse.policy import DecisionEngine, PolicyRegistry, YamlPolicyStore
from gatehouse.schema import Effect, Identity, Policy, Rule

OLD = """
policies:
  - name: gate
    rules:
      - effect: allow
        actions: ["read:*"]
    defaultEffect: deny
  - name: unused
    rules: []
"""

NEW = """
policies:
  - name: gate
    version: 2
    rules:
      - effect: deny
        actions: ["read:*"]
        reason: reads suspended
    defaultEffect: deny
"""


def _engine_for(path: Path) -> tuple[DecisionEngine, YamlPolicyStore]:
    store = YamlPolicyStore([path])
    registry = PolicyRegistry(store.load_all())
    store.on_change(lambda: registry.reload_from(store))
    return DecisionEngine(registry), store


class TestReloadFromFiles:
    """Reload driven by the YAML store."""

    def test_decisions_follow_reload(self, temp_dir: Path, verified_identity: Identity) -> None:
        path = temp_dir / "policies.yaml"
        path.write_text(OLD)
        engine, store = _engine_for(path)
        assert engine.decide(verified_identity, "read:x").allowed is True

        path.write_text(NEW + "\n# edited\n")
        assert store.poll() is True
        decision = engine.decide(verified_identity, "read:x")
        assert decision.allowed is False
        assert decision.reason == "reads suspended"
        assert "unused" not in engine.registry.snapshot()

    def test_broken_edit_keeps_serving(self, temp_dir: Path, verified_identity: Identity) -> None:
        path = temp_dir / "policies.yaml"
        path.write_text(OLD)
        engine, store = _engine_for(path)

        path.write_text("policies:\n  - name: gate\n    rules: [{effect: maybe, actions: ['*']}]\n")
        store.poll()
        assert engine.decide(verified_identity, "read:x").allowed is True

    def test_undecodable_edit_keeps_serving(
        self, temp_dir: Path, verified_identity: Identity
    ) -> None:
        path = temp_dir / "policies.yaml"
        path.write_text(OLD)
        engine, store = _engine_for(path)
        generation = engine.registry.snapshot().generation

        path.write_bytes(OLD.encode() + b"# \xff\xfe bad\n")
        assert store.poll() is True
        assert engine.registry.snapshot().generation == generation
        assert engine.decide(verified_identity, "read:x").allowed is True

        path.write_text(NEW)
        assert store.poll() is True
        assert engine.decide(verified_identity, "read:x").allowed is False


class TestConcurrentReload:
    """Readers racing a writer."""

    def test_readers_see_old_or_new_never_mixed(self, verified_identity: Identity) -> None:
        old = [
            Policy(name="a", rules=[Rule(effect=Effect.ALLOW, actions=["read:*"])]),
            Policy(name="b", rules=[Rule(effect=Effect.ALLOW, actions=["read:*"])]),
        ]
        new = [
            Policy(name="a", version="2", rules=[Rule(effect=Effect.DENY, actions=["read:*"])]),
            Policy(name="b", version="2", rules=[Rule(effect=Effect.DENY, actions=["read:*"])]),
        ]
        registry = PolicyRegistry(old)
        engine = DecisionEngine(registry)
        stop = threading.Event()
        problems: list[str] = []

        def reader() -> None:
            while not stop.is_set():
                snapshot = registry.snapshot()
                versions = {p.version for p in snapshot}
                if len(versions) != 1:
                    problems.append(f"mixed snapshot {versions}")
                decision = engine.decide(verified_identity, "read:x")
                if decision.policy_name != "a":
                    problems.append(f"unexpected policy {decision.policy_name}")

        def writer() -> None:
            for i in range(200):
                registry.replace_all(new if i % 2 == 0 else old)
            stop.set()

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for t in readers:
            t.start()
        writer_thread = threading.Thread(target=writer)
        writer_thread.start()
        writer_thread.join(timeout=10)
        stop.set()
        for t in readers:
            t.join(timeout=10)

        assert problems == []
        assert registry.snapshot().generation == 200
