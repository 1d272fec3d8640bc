"""
JSON audit report for Gatehouse.

Structured output of a time range of the audit log, for export into other
tooling.

Design Principles:
    - Complete data: every stored field of every decision
    - Consistent schema: same structure for every export
    - ISO timestamps: standard datetime format
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gatehouse.store import AuditDB

REPORT_VERSION = "1.0"


def generate_json_report(
    db_path: str | Path = "gatehouse.db",
    start: datetime | None = None,
    end: datetime | None = None,
    identity_id: str | None = None,
    limit: int = 1000,
    indent: int = 2,
) -> str:
    """Render an audit report as a JSON string."""
    report = build_report_dict(db_path, start, end, identity_id, limit)
    return json.dumps(report, indent=indent, default=_json_serializer)


def build_report_dict(
    db_path: str | Path = "gatehouse.db",
    start: datetime | None = None,
    end: datetime | None = None,
    identity_id: str | None = None,
    limit: int = 1000,
) -> dict[str, Any]:
    """
    Build an audit report dictionary.

    Args:
        db_path: Path to the SQLite audit log
        start: Inclusive lower time bound
        end: Exclusive upper time bound
        identity_id: Only this identity's decisions
        limit: Maximum number of decisions

    Returns:
        Dictionary with range, decisions and summary
    """
    with AuditDB(db_path) as db:
        records = db.query(start=start, end=end, identity_id=identity_id, limit=limit)
        summary = db.summary(start=start, end=end)

    return {
        "report_version": REPORT_VERSION,
        "generated_at": datetime.now(UTC).isoformat(),
        "range": {
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
            "identity_id": identity_id,
        },
        "decisions": [
            {
                "trace_id": r["trace_id"],
                "timestamp": r["timestamp"],
                "identity": {
                    "id": r["identity_id"],
                    "trust_tier": r["trust_tier"],
                    "org_id": r["org_id"],
                },
                "action": r["action"],
                "allowed": r.allowed,
                "reason": r["reason"],
                "denial": r["denial"],
                "policy_name": r["policy_name"],
                "rule_index": r["rule_index"],
                "resource": r["resource"],
                "context": r["context"],
                "input_hash": r["input_hash"],
            }
            for r in records
        ],
        "summary": {
            "total": summary["total"],
            "allowed": summary["allowed"],
            "denied": summary["denied"],
            "denied_by_kind": summary["denied_by_kind"],
            "top_denied_identities": [
                {"identity_id": i, "count": n} for i, n in summary["top_denied_identities"]
            ],
        },
    }


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for non-standard types."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
