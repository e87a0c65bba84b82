"""SQLAlchemy ORM model for data subject request persistence.

Tracks export, deletion, rectification, consent withdrawal, portability and
processing restriction requests from submission to a terminal status.
Rows are never physically deleted by request handling; terminal requests age
out through the ``gdpr_completed_requests`` retention policy.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from lifecycle.database import Base


class DataSubjectRequestRecord(Base):
    """Persistent record of a data subject rights request."""

    __tablename__ = "data_subject_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
        comment="Request primary key",
    )
    # No FK to users.id - the user row is anonymized (and later pruned) by
    # the very requests recorded here
    subject_id: Mapped[uuid.UUID] = mapped_column(
        nullable=False,
        index=True,
        comment="Id of the data subject",
    )
    request_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment=(
            "export | deletion | rectification | consent_withdrawal | "
            "portability | processing_restriction"
        ),
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="pending | processing | completed | failed | cancelled",
    )
    verification_token: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
        comment="Single-use token, present only while pending",
    )

    requested_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    deletion_scheduled_for: Mapped[datetime | None] = mapped_column(
        nullable=True,
        index=True,
        comment="Earliest execution time of a graced deletion",
    )

    export_artifact_ref: Mapped[str | None] = mapped_column(String(512), nullable=True)
    artifact_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    details: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        nullable=False,
        default=dict,
        comment="Caller context (origin, reason, format) plus appended notes",
    )
    outcome: Mapped[dict[str, Any] | None] = mapped_column(
        nullable=True,
        comment="Handler result summary, e.g. review_required for rectification",
    )

    __table_args__ = (
        Index("ix_dsr_type_status_scheduled", "request_type", "status", "deletion_scheduled_for"),
    )

    def __repr__(self) -> str:
        return (
            f"<DataSubjectRequestRecord id={self.id} subject={self.subject_id} "
            f"type={self.request_type!r} status={self.status!r}>"
        )
