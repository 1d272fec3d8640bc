"""
SQLite audit log for Gatehouse.

Every decision the gateway reaches is appended to a single SQLite file,
keyed by trace id, together with the identity snapshot, the resource and
the context it was evaluated against.

Design Principles:
    - Append-only: a trace id is written once and never updated
    - Integrity: each row stores a hash of its request inputs
    - Queryable: time-range listing for operators and reports

Tables:
    - decisions: One row per decision (allowed or denied)
"""

import hashlib
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

from gatehouse.errors import StorageConnectionError, StorageReadError, StorageWriteError
from gatehouse.schema import Decision, DenialKind, Identity

SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS decisions (
    trace_id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    identity_id TEXT NOT NULL,
    trust_tier TEXT NOT NULL,
    org_id TEXT,
    action TEXT NOT NULL,
    allowed INTEGER NOT NULL,
    reason TEXT,
    denial TEXT,
    policy_name TEXT,
    rule_index INTEGER,
    resource_json TEXT NOT NULL,
    context_json TEXT NOT NULL,
    input_hash TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_decisions_timestamp ON decisions(timestamp);
CREATE INDEX IF NOT EXISTS idx_decisions_identity ON decisions(identity_id, timestamp);
"""


def compute_hash(data: Any) -> str:
    """Compute SHA256 hash of data."""
    if data is None:
        return ""
    if isinstance(data, str):
        content = data.encode("utf-8")
    elif isinstance(data, bytes):
        content = data
    else:
        content = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


def _iso(value: datetime) -> str:
    # Stored timestamps are UTC so lexical order matches time order
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


class AuditRecord(dict):
    """A row of the audit log as a plain dict with a few typed accessors."""

    @property
    def allowed(self) -> bool:
        return bool(self["allowed"])

    @property
    def timestamp(self) -> datetime:
        return datetime.fromisoformat(self["timestamp"])


class AuditDB:
    """
    SQLite database for Gatehouse decisions.

    Usage:
        db = AuditDB("gatehouse.db")
        db.record(decision, identity, resource, context)
        rows = db.query(start=yesterday, end=now)
        db.close()

    Or use as context manager:
        with AuditDB("gatehouse.db") as db:
            ...
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file.
                     Will be created if it doesn't exist.
        """
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        # Writes arrive from worker threads (asyncio.to_thread)
        self._lock = threading.Lock()
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connect",
                message=f"Failed to connect to database: {e}",
            ) from e

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            cursor = self._conn.executescript(CREATE_TABLES_SQL)
            cursor.close()

            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            if cursor.fetchone() is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now_iso()),
                )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for database transactions."""
        with self._lock:
            try:
                yield
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "AuditDB":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Write Operations
    # =========================================================================

    def record(
        self,
        decision: Decision,
        identity: Identity,
        resource: Any = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """
        Append one decision to the log.

        Args:
            decision: The decision reached for the request
            identity: Identity snapshot the decision was made for
            resource: Resource the action targeted
            context: Free-form request context

        Raises:
            StorageWriteError: If the row could not be written, including a
                second write for the same trace id
        """
        context = context or {}
        resource_json = json.dumps(resource, sort_keys=True, default=str)
        context_json = json.dumps(context, sort_keys=True, default=str)
        input_hash = compute_hash({
            "identity": identity.id,
            "action": decision.action,
            "resource": resource,
            "context": context,
        })

        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT INTO decisions (
                        trace_id, timestamp, identity_id, trust_tier, org_id,
                        action, allowed, reason, denial, policy_name, rule_index,
                        resource_json, context_json, input_hash
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        decision.trace_id,
                        _iso(decision.timestamp),
                        identity.id,
                        identity.trust_tier.value,
                        identity.org_id,
                        decision.action,
                        int(decision.allowed),
                        decision.reason,
                        decision.denial.value if decision.denial else None,
                        decision.policy_name,
                        decision.rule_index,
                        resource_json,
                        context_json,
                        input_hash,
                    ),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="record",
                underlying_error=str(e),
            ) from e

    # =========================================================================
    # Read Operations
    # =========================================================================

    def _row_to_record(self, row: sqlite3.Row) -> AuditRecord:
        record = AuditRecord(dict(row))
        record["resource"] = json.loads(record.pop("resource_json"))
        record["context"] = json.loads(record.pop("context_json"))
        return record

    def get(self, trace_id: str) -> AuditRecord | None:
        """Get the audit record for a trace id, or None."""
        try:
            cursor = self._conn.execute(
                "SELECT * FROM decisions WHERE trace_id = ?",
                (trace_id,),
            )
            row = cursor.fetchone()
            return self._row_to_record(row) if row is not None else None
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="get",
                underlying_error=str(e),
            ) from e

    def get_decision(self, trace_id: str) -> Decision | None:
        """Rebuild the Decision stored under a trace id."""
        record = self.get(trace_id)
        if record is None:
            return None
        return Decision(
            allowed=record.allowed,
            action=record["action"],
            policy_name=record["policy_name"],
            rule_index=record["rule_index"],
            reason=record["reason"],
            trace_id=record["trace_id"],
            timestamp=record.timestamp,
            denial=DenialKind(record["denial"]) if record["denial"] else None,
        )

    def query(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        identity_id: str | None = None,
        allowed: bool | None = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """
        List decisions in a time range, oldest first.

        Args:
            start: Inclusive lower bound on the decision timestamp
            end: Exclusive upper bound on the decision timestamp
            identity_id: Only this identity's decisions
            allowed: Only allowed (True) or denied (False) decisions
            limit: Maximum number of rows to return
        """
        clauses: list[str] = []
        params: list[Any] = []
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(_iso(start))
        if end is not None:
            clauses.append("timestamp < ?")
            params.append(_iso(end))
        if identity_id is not None:
            clauses.append("identity_id = ?")
            params.append(identity_id)
        if allowed is not None:
            clauses.append("allowed = ?")
            params.append(int(allowed))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        try:
            cursor = self._conn.execute(
                f"SELECT * FROM decisions {where} ORDER BY timestamp, trace_id LIMIT ?",
                params,
            )
            return [self._row_to_record(row) for row in cursor]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="query",
                underlying_error=str(e),
            ) from e

    def summary(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Aggregate counts over a time range.

        Returns:
            Dict with total/allowed/denied counts, denials by kind and the
            identities with the most denials
        """
        clauses: list[str] = []
        params: list[Any] = []
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(_iso(start))
        if end is not None:
            clauses.append("timestamp < ?")
            params.append(_iso(end))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        denied_where = f"{where} AND allowed = 0" if where else "WHERE allowed = 0"

        try:
            row = self._conn.execute(
                f"SELECT COUNT(*) AS total, COALESCE(SUM(allowed), 0) AS allowed "
                f"FROM decisions {where}",
                params,
            ).fetchone()
            by_kind = {
                r["denial"]: r["n"]
                for r in self._conn.execute(
                    f"SELECT denial, COUNT(*) AS n FROM decisions {denied_where} "
                    f"GROUP BY denial ORDER BY denial",
                    params,
                )
            }
            top_denied = [
                (r["identity_id"], r["n"])
                for r in self._conn.execute(
                    f"SELECT identity_id, COUNT(*) AS n FROM decisions {denied_where} "
                    f"GROUP BY identity_id ORDER BY n DESC, identity_id LIMIT 5",
                    params,
                )
            ]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="summary",
                underlying_error=str(e),
            ) from e

        total = row["total"]
        allowed = row["allowed"]
        return {
            "total": total,
            "allowed": allowed,
            "denied": total - allowed,
            "denied_by_kind": by_kind,
            "top_denied_identities": top_denied,
        }
