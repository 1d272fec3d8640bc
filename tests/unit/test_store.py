"""
Unit tests for the audit store.

Tests cover:
- Database initialization
- Recording decisions (append-only by trace id)
- Reading records back and rebuilding decisions
- Time-range queries and summaries
- Hash computation
- The async SQLite sink
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from gatehouse.errors import AuditRecordError, StorageWriteError
from gatehouse.schema import Decision, DenialKind, Identity
from gatehouse.store import AuditDB, MemoryAuditSink, SqliteAuditSink, compute_hash

T0 = datetime(2025, 6, 1, 9, 0, tzinfo=UTC)


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def db(temp_dir: Path) -> AuditDB:
    """Create a database instance."""
    database = AuditDB(temp_dir / "audit.db")
    yield database
    database.close()


def _allow(action: str = "read:contacts", at: datetime = T0) -> Decision:
    return Decision.allow(action, policy_name="p", rule_index=0).model_copy(
        update={"timestamp": at}
    )


def _deny(
    action: str = "delete:contacts",
    at: datetime = T0,
    denial: DenialKind = DenialKind.POLICY,
) -> Decision:
    return Decision.deny(action, "no", denial=denial, policy_name="p").model_copy(
        update={"timestamp": at}
    )


# =============================================================================
# Utility Functions
# =============================================================================


class TestComputeHash:
    """Tests for compute_hash()."""

    def test_string(self) -> None:
        assert len(compute_hash("hello")) == 64
        assert compute_hash("hello") == compute_hash("hello")

    def test_dict_key_order_irrelevant(self) -> None:
        assert compute_hash({"a": 1, "b": 2}) == compute_hash({"b": 2, "a": 1})

    def test_none(self) -> None:
        assert compute_hash(None) == ""

    def test_bytes_match_string(self) -> None:
        assert compute_hash(b"hello") == compute_hash("hello")


# =============================================================================
# Database Initialization
# =============================================================================


class TestDatabaseInit:
    """Tests for database initialization."""

    def test_create_new_database(self, temp_dir: Path) -> None:
        path = temp_dir / "new.db"
        with AuditDB(path):
            assert path.exists()

    def test_reopen_existing_database(self, temp_dir: Path, verified_identity: Identity) -> None:
        path = temp_dir / "reopen.db"
        decision = _allow()
        with AuditDB(path) as first:
            first.record(decision, verified_identity)
        with AuditDB(path) as second:
            assert second.get(decision.trace_id) is not None

    def test_in_memory_database(self, verified_identity: Identity) -> None:
        with AuditDB(":memory:") as memory:
            memory.record(_allow(), verified_identity)
            assert len(memory.query()) == 1


# =============================================================================
# Recording
# =============================================================================


class TestRecord:
    """Tests for AuditDB.record() and reads by trace id."""

    def test_record_and_get(self, db: AuditDB, billing_identity: Identity) -> None:
        decision = _deny()
        db.record(decision, billing_identity, resource="inv/1", context={"amount": 5})

        record = db.get(decision.trace_id)
        assert record is not None
        assert record.allowed is False
        assert record.timestamp == T0
        assert record["identity_id"] == "agent-b"
        assert record["org_id"] == "acme"
        assert record["denial"] == "policy"
        assert record["resource"] == "inv/1"
        assert record["context"] == {"amount": 5}
        assert record["input_hash"] == compute_hash({
            "identity": "agent-b",
            "action": "delete:contacts",
            "resource": "inv/1",
            "context": {"amount": 5},
        })

    def test_get_missing(self, db: AuditDB) -> None:
        assert db.get("nope") is None
        assert db.get_decision("nope") is None

    def test_decision_round_trips(self, db: AuditDB, verified_identity: Identity) -> None:
        decision = _deny(denial=DenialKind.RATE_LIMIT)
        db.record(decision, verified_identity)
        assert db.get_decision(decision.trace_id) == decision

    def test_trace_id_written_once(self, db: AuditDB, verified_identity: Identity) -> None:
        decision = _allow()
        db.record(decision, verified_identity)
        with pytest.raises(StorageWriteError):
            db.record(decision.overridden("later", DenialKind.AUDIT), verified_identity)
        assert db.get(decision.trace_id).allowed is True

    def test_resource_json_serializable_fallback(
        self, db: AuditDB, verified_identity: Identity
    ) -> None:
        decision = _allow()
        db.record(decision, verified_identity, resource={"at": T0})
        assert db.get(decision.trace_id)["resource"] == {"at": str(T0)}


# =============================================================================
# Queries
# =============================================================================


class TestQuery:
    """Tests for time-range listing."""

    @pytest.fixture
    def populated(
        self, db: AuditDB, verified_identity: Identity, untrusted_identity: Identity
    ) -> AuditDB:
        db.record(_allow(at=T0), verified_identity)
        db.record(_deny(at=T0 + timedelta(minutes=1)), untrusted_identity)
        db.record(_deny(at=T0 + timedelta(minutes=2), denial=DenialKind.RATE_LIMIT), untrusted_identity)
        db.record(_allow(at=T0 + timedelta(hours=2)), verified_identity)
        return db

    def test_oldest_first(self, populated: AuditDB) -> None:
        rows = populated.query()
        assert [r.timestamp for r in rows] == sorted(r.timestamp for r in rows)
        assert len(rows) == 4

    def test_range_bounds(self, populated: AuditDB) -> None:
        rows = populated.query(start=T0 + timedelta(minutes=1), end=T0 + timedelta(minutes=2))
        assert len(rows) == 1
        assert rows[0].timestamp == T0 + timedelta(minutes=1)

    def test_naive_bounds_treated_as_utc(self, populated: AuditDB) -> None:
        rows = populated.query(start=datetime(2025, 6, 1, 10, 0))
        assert len(rows) == 1

    def test_filters(self, populated: AuditDB) -> None:
        assert len(populated.query(identity_id="agent-u")) == 2
        assert len(populated.query(allowed=True)) == 2
        assert len(populated.query(identity_id="agent-v", allowed=False)) == 0

    def test_limit(self, populated: AuditDB) -> None:
        assert len(populated.query(limit=3)) == 3

    def test_summary(self, populated: AuditDB) -> None:
        summary = populated.summary()
        assert summary["total"] == 4
        assert summary["allowed"] == 2
        assert summary["denied"] == 2
        assert summary["denied_by_kind"] == {"policy": 1, "rate_limit": 1}
        assert summary["top_denied_identities"] == [("agent-u", 2)]

    def test_summary_in_range(self, populated: AuditDB) -> None:
        summary = populated.summary(start=T0 + timedelta(hours=1))
        assert summary["total"] == 1
        assert summary["denied"] == 0
        assert summary["denied_by_kind"] == {}

    def test_summary_empty(self, db: AuditDB) -> None:
        assert db.summary()["total"] == 0


# =============================================================================
# Sinks
# =============================================================================


class TestSqliteAuditSink:
    """Tests for the async sink wrapper."""

    @pytest.mark.asyncio
    async def test_record_is_committed(self, db: AuditDB, verified_identity: Identity) -> None:
        sink = SqliteAuditSink(db)
        decision = _allow()
        await sink.record(decision, verified_identity, None, {})
        assert db.get(decision.trace_id) is not None

    @pytest.mark.asyncio
    async def test_storage_error_becomes_audit_error(
        self, db: AuditDB, verified_identity: Identity
    ) -> None:
        sink = SqliteAuditSink(db)
        decision = _allow()
        await sink.record(decision, verified_identity, None, {})
        with pytest.raises(AuditRecordError) as exc_info:
            await sink.record(decision, verified_identity, None, {})
        assert exc_info.value.trace_id == decision.trace_id


class TestMemoryAuditSink:
    """Tests for the in-memory sink."""

    @pytest.mark.asyncio
    async def test_keeps_records(self, verified_identity: Identity) -> None:
        sink = MemoryAuditSink()
        decision = _deny()
        await sink.record(decision, verified_identity, "r", {"k": 1})
        assert sink.decisions == [decision]
        assert sink.records[0][2:] == ("r", {"k": 1})
