"""
Audit storage for Gatehouse.

Every decision is appended to a SQLite log keyed by trace id, and can be
listed again by time range for review.

Tables:
    - decisions: One row per decision (identity, action, outcome, reason,
      policy attribution, resource/context and an input hash)

Design principles:
    - Append-only: a trace id is written exactly once
    - Acknowledged: the pipeline waits for the sink before finishing
    - Self-contained: a single .db file holds the whole log
"""

from gatehouse.store.db import AuditDB, AuditRecord, compute_hash
from gatehouse.store.sink import AuditSink, MemoryAuditSink, SqliteAuditSink

__all__ = [
    "AuditDB",
    "AuditRecord",
    "AuditSink",
    "MemoryAuditSink",
    "SqliteAuditSink",
    "compute_hash",
]
