"""Billing history and metered usage.

Billing line items are financial records: only drafts, voided invoices and
zero-amount rows are ever eligible for retention cleanup, and none of them
are touched by anonymization.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from lifecycle.database import Base


class BillingRecord(Base):
    __tablename__ = "billing_records"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Payment provider invoice id"
    )
    invoice_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="paid",
        comment="draft | open | paid | void | uncollectible",
    )
    amount_total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("ix_billing_records_status_created", "invoice_status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingRecord id={self.id} status={self.invoice_status!r} "
            f"amount={self.amount_total_cents}>"
        )


class UsageRecord(Base):
    """Metered usage; rows are only prunable once reported to the provider."""

    __tablename__ = "usage_records"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    metric: Mapped[str] = mapped_column(String(64), nullable=False, default="bookings")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    timestamp: Mapped[datetime] = mapped_column(
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )
    reported_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<UsageRecord id={self.id} metric={self.metric!r} qty={self.quantity}>"
