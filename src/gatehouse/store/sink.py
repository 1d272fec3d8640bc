"""
Audit sinks.

The pipeline hands every decision to an audit sink and waits for the sink
to acknowledge it before reaching a terminal state. An acknowledgement
means the record is durably queued; a sink that cannot say so raises
AuditRecordError and the request is rejected.
"""

import asyncio
import logging
from typing import Any, Protocol

from gatehouse.errors import AuditRecordError, StorageError
from gatehouse.schema import Decision, Identity
from gatehouse.store.db import AuditDB

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """Accepts append-only decision records."""

    async def record(
        self,
        decision: Decision,
        identity: Identity,
        resource: Any,
        context: dict[str, Any],
    ) -> None: ...


class SqliteAuditSink:
    """
    Audit sink backed by AuditDB.

    SQLite calls block, so each write runs in a worker thread and the event
    loop stays free for other requests.
    """

    def __init__(self, db: AuditDB) -> None:
        self.db = db

    async def record(
        self,
        decision: Decision,
        identity: Identity,
        resource: Any,
        context: dict[str, Any],
    ) -> None:
        """
        Write one decision and return once it is committed.

        Raises:
            AuditRecordError: If the write failed
        """
        try:
            await asyncio.to_thread(self.db.record, decision, identity, resource, context)
        except StorageError as e:
            raise AuditRecordError(
                trace_id=decision.trace_id,
                underlying_error=e.message,
            ) from e
        logger.debug("Recorded decision %s for %s", decision.trace_id, identity.id)


class MemoryAuditSink:
    """Keeps records in a list. For tests and dry runs."""

    def __init__(self) -> None:
        self.records: list[tuple[Decision, Identity, Any, dict[str, Any]]] = []

    async def record(
        self,
        decision: Decision,
        identity: Identity,
        resource: Any,
        context: dict[str, Any],
    ) -> None:
        self.records.append((decision, identity, resource, context))

    @property
    def decisions(self) -> list[Decision]:
        return [r[0] for r in self.records]
