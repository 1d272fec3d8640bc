"""
Gatehouse - Governance gateway for the actions AI agents attempt.

Every agent request is authenticated, counted against a usage ceiling,
decided against an ordered rule set, recorded, and only then forwarded.
It provides:
- First-match-wins policy decisions with a traceable explanation
- Delegation chains whose permissions can only narrow
- Per-identity usage ceilings (fail-open or fail-closed)
- An append-only SQLite audit log

Example usage:
    $ gatehouse check ./policies
    $ gatehouse evaluate delete:records -p ./policies -i agent.yaml
    $ gatehouse audit --since 24h
"""

__version__ = "0.1.0"
__author__ = "Gatehouse Contributors"

__all__ = [
    "__version__",
    "__author__",
]
