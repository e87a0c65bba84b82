"""User model - the data subject of every compliance request.

Users are never hard-deleted by request handling. An erasure request
anonymizes the row in place (see AnonymizationExecutor) so that bookings and
billing rows keep a valid owner; the ``deleted_users`` retention policy
removes anonymized rows later, once nothing references them any more.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lifecycle.database import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    # Directly identifying fields (scrubbed on anonymization)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Credentials (invalidated on anonymization)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_verification_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email_verification_expires: Mapped[datetime | None] = mapped_column(nullable=True)
    password_reset_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    password_reset_expires: Mapped[datetime | None] = mapped_column(nullable=True)

    # Consent flags. data_processing is required while the account is active.
    data_processing_consent: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    marketing_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    analytics_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consent_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    processing_restricted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    restricted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Payment-provider references (severed on anonymization)
    billing_customer_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Payment provider customer id"
    )
    billing_subscription_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Payment provider subscription id"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    anonymized_at: Mapped[datetime | None] = mapped_column(nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    settings: Mapped[UserSettings | None] = relationship(
        "UserSettings", back_populates="user", uselist=False
    )

    __table_args__ = (
        Index("ix_users_email", "email"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} active={self.is_active}>"


class UserSettings(Base):
    """Per-user preferences (exported under the ``settings`` category)."""

    __tablename__ = "user_settings"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    language: Mapped[str] = mapped_column(String(16), nullable=False, default="en")
    notify_by_email: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notify_by_sms: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    meeting_duration_minutes: Mapped[int] = mapped_column(nullable=False, default=30)
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    user: Mapped[User] = relationship("User", back_populates="settings")

    def __repr__(self) -> str:
        return f"<UserSettings user={self.user_id} tz={self.timezone!r}>"
