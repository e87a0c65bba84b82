"""AuditRecord model - append-only compliance evidence and idempotency ledger.

Design principles:
- Append-only: the engine never updates or deletes audit rows
- subject_id is nullable for system-initiated entries (sweeps, scheduled runs)
- No FK to users: the trail must outlive the subject row it describes
- ``reference`` carries the id of the object an entry is about (usually a
  request id) so "has X already happened for Y" is a single indexed lookup
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from lifecycle.database import Base


class AuditRecord(Base):
    __tablename__ = "audit_records"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)

    # Action identifier, e.g. "dsr.request_created", "subject.anonymized"
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    reference: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        index=True,
        comment="Id of the request or policy the entry refers to",
    )

    # ``metadata`` is reserved on declarative classes, hence the attribute name
    details: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )

    __table_args__ = (
        Index("ix_audit_records_action_subject", "action", "subject_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditRecord id={self.id} action={self.action!r} subject={self.subject_id}>"
