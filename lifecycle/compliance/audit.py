"""Audit sink: append-only lifecycle event log.

Every component writes its lifecycle events here, and some read it back as
an idempotency ledger ("has this subject already been anonymized?").

Design:
- The sink is bound to the caller's session, so an audit entry commits or
  rolls back together with the state change it documents. An entry is never
  written for a mutation that did not happen.
- Write failures propagate. A compliance record that silently failed to
  persist is worse than a failed operation that can be retried.
- Metadata is normalised to JSON-safe values (UUIDs and datetimes become
  strings) before it is stored.
- The sink is a plain class (not a singleton) to keep it testable.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.core.clock import Clock, utc_now
from lifecycle.models.audit import AuditRecord

log = structlog.get_logger(__name__)


def jsonable(value: Any) -> Any:
    """Normalise UUIDs and datetimes (recursively) to JSON-safe strings."""
    if isinstance(value, Mapping):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class AuditSink:
    """Append-only audit writer and ledger reader.

    Usage:
        audit = AuditSink(session, clock=clock)
        await audit.record(
            "dsr.request_created",
            subject_id=subject_id,
            reference=str(request_id),
            metadata={"request_type": "export"},
        )
        if await audit.exists("subject.anonymized", subject_id=subject_id):
            ...
    """

    def __init__(self, session: AsyncSession, *, clock: Clock = utc_now) -> None:
        self._session = session
        self._clock = clock

    async def record(
        self,
        action: str,
        *,
        subject_id: uuid.UUID | None = None,
        reference: str | uuid.UUID | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditRecord:
        """Append one audit record inside the current transaction.

        Args:
            action: Dotted action name, e.g. "retention.sweep_completed"
            subject_id: Data subject the entry concerns (None for system entries)
            reference: Id of the request or policy the entry refers to
            metadata: Extra structured context
        """
        entry = AuditRecord(
            id=uuid.uuid4(),
            subject_id=subject_id,
            action=action,
            reference=str(reference) if reference is not None else None,
            details=jsonable(dict(metadata or {})),
            created_at=self._clock(),
        )
        self._session.add(entry)
        await self._session.flush()

        log.debug(
            "audit.recorded",
            action=action,
            subject_id=str(subject_id) if subject_id else None,
            reference=entry.reference,
        )
        return entry

    async def exists(
        self,
        action: str,
        *,
        subject_id: uuid.UUID | None = None,
        reference: str | uuid.UUID | None = None,
    ) -> bool:
        """Return True if a matching entry is already in the ledger."""
        clauses = [AuditRecord.action == action]
        if subject_id is not None:
            clauses.append(AuditRecord.subject_id == subject_id)
        if reference is not None:
            clauses.append(AuditRecord.reference == str(reference))

        result = await self._session.execute(
            select(AuditRecord.id).where(and_(*clauses)).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def history(
        self,
        *,
        subject_id: uuid.UUID | None = None,
        actions: Sequence[str] | None = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """Most recent entries first, optionally filtered by subject and action."""
        stmt = select(AuditRecord)
        if subject_id is not None:
            stmt = stmt.where(AuditRecord.subject_id == subject_id)
        if actions:
            stmt = stmt.where(AuditRecord.action.in_(list(actions)))
        stmt = stmt.order_by(AuditRecord.created_at.desc()).limit(limit)

        result = await self._session.execute(stmt)
        return list(result.scalars().all())
