"""Anonymization executor: irreversible scrubbing of one data subject.

Runs inside the caller's transaction, which makes it all-or-nothing: if any
step raises, the caller's transaction rolls back and no other session ever
sees a half-anonymized subject.

Steps, in order:
1. Scrub identifying fields with deterministic placeholders
2. Invalidate credentials (password hash, one-time tokens, sessions)
3. Sever third-party integrations (calendar tokens, payment references)
4. Withdraw optional consents
5. Scrub the subject's contact details from bookings they attended

Historical bookings the subject hosted, billing line items and usage rows
are left in place. They keep pointing at the same user id, which no longer
identifies anyone.

The ``subject.anonymized`` audit record written at the end doubles as the
idempotency ledger: a subject found in it is never processed twice.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.compliance.audit import AuditSink
from lifecycle.compliance.errors import AnonymizationFailed, SubjectNotFound
from lifecycle.core.clock import Clock, utc_now
from lifecycle.models.booking import Booking
from lifecycle.models.integration import CalendarIntegration
from lifecycle.models.session import RevokedToken, SessionRecord
from lifecycle.models.user import User

log = structlog.get_logger(__name__)

ANONYMIZED_ACTION = "subject.anonymized"
ANONYMIZED_NAME = "Deleted User"
ANONYMIZED_DOMAIN = "anonymized.local"


def anonymized_email(subject_id: uuid.UUID) -> str:
    return f"deleted-{subject_id}@{ANONYMIZED_DOMAIN}"


@dataclass
class AnonymizationResult:
    """Counts of what one anonymization touched."""

    subject_id: uuid.UUID
    anonymized_at: datetime
    already_anonymized: bool = False
    sessions_revoked: int = 0
    integrations_removed: int = 0
    bookings_scrubbed: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "subject_id": str(self.subject_id),
            "anonymized_at": self.anonymized_at.isoformat(),
            "already_anonymized": self.already_anonymized,
            "sessions_revoked": self.sessions_revoked,
            "integrations_removed": self.integrations_removed,
            "bookings_scrubbed": self.bookings_scrubbed,
        }


class AnonymizationExecutor:
    """Scrubs a subject's personal data in place.

    Usage:
        async with session_factory() as session, session.begin():
            result = await AnonymizationExecutor(clock=clock).anonymize(
                session, subject_id, request_id=request.id
            )
    """

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock

    async def anonymize(
        self,
        session: AsyncSession,
        subject_id: uuid.UUID,
        *,
        request_id: uuid.UUID | None = None,
    ) -> AnonymizationResult:
        """Anonymize ``subject_id`` within the caller's transaction.

        Raises:
            AnonymizationFailed: any step failed; the caller must roll back
        """
        now = self._clock()
        audit = AuditSink(session, clock=self._clock)

        if await audit.exists(ANONYMIZED_ACTION, subject_id=subject_id):
            log.info("anonymization.already_done", subject_id=str(subject_id))
            return AnonymizationResult(subject_id, now, already_anonymized=True)

        try:
            user = await session.get(User, subject_id, with_for_update=True)
            if user is None:
                raise SubjectNotFound(f"Subject {subject_id} not found")
            original_email = user.email

            result = AnonymizationResult(subject_id=subject_id, anonymized_at=now)
            await self._scrub_identity(session, user, now)
            result.sessions_revoked = await self._invalidate_credentials(session, user, now)
            result.integrations_removed = await self._sever_integrations(session, user)
            await self._withdraw_optional_consents(session, user, now)
            result.bookings_scrubbed = await self._scrub_attendance(
                session, subject_id, original_email
            )

            await session.flush()
            await audit.record(
                ANONYMIZED_ACTION,
                subject_id=subject_id,
                reference=request_id,
                metadata=result.to_dict(),
            )
        except AnonymizationFailed:
            raise
        except Exception as exc:
            log.error(
                "anonymization.failed",
                subject_id=str(subject_id),
                request_id=str(request_id) if request_id else None,
                error=str(exc),
            )
            raise AnonymizationFailed(
                f"Anonymization of subject {subject_id} failed: {exc}"
            ) from exc

        log.info(
            "anonymization.completed",
            subject_id=str(subject_id),
            sessions_revoked=result.sessions_revoked,
            integrations_removed=result.integrations_removed,
            bookings_scrubbed=result.bookings_scrubbed,
        )
        return result

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    async def _scrub_identity(self, session: AsyncSession, user: User, now: datetime) -> None:
        user.email = anonymized_email(user.id)
        user.display_name = ANONYMIZED_NAME
        user.phone = None
        user.is_active = False
        user.anonymized_at = now
        user.updated_at = now

    async def _invalidate_credentials(
        self, session: AsyncSession, user: User, now: datetime
    ) -> int:
        user.password_hash = None
        user.email_verified = False
        user.email_verification_token = None
        user.email_verification_expires = None
        user.password_reset_token = None
        user.password_reset_expires = None

        # Blacklist every live session until it would have expired anyway
        result = await session.execute(
            select(SessionRecord).where(SessionRecord.user_id == user.id)
        )
        sessions = list(result.scalars().all())
        for record in sessions:
            if record.expires > now:
                session.add(
                    RevokedToken(
                        jti=f"session:{record.sid}",
                        user_id=user.id,
                        reason="subject_anonymized",
                        expires_at=record.expires,
                        created_at=now,
                    )
                )
        await session.execute(delete(SessionRecord).where(SessionRecord.user_id == user.id))
        return len(sessions)

    async def _sever_integrations(self, session: AsyncSession, user: User) -> int:
        user.billing_customer_ref = None
        user.billing_subscription_ref = None
        result = await session.execute(
            delete(CalendarIntegration).where(CalendarIntegration.user_id == user.id)
        )
        return result.rowcount or 0

    async def _withdraw_optional_consents(
        self, session: AsyncSession, user: User, now: datetime
    ) -> None:
        user.marketing_consent = False
        user.analytics_consent = False
        user.consent_updated_at = now

    async def _scrub_attendance(
        self, session: AsyncSession, subject_id: uuid.UUID, original_email: str
    ) -> int:
        result = await session.execute(
            update(Booking)
            .where(Booking.attendee_email == original_email)
            .values(
                attendee_email=anonymized_email(subject_id),
                attendee_name=ANONYMIZED_NAME,
                attendee_phone=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
