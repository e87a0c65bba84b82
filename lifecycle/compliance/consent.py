"""Consent management.

Two kinds of consent are tracked on the subject:

- required  ``data_processing``: the operational basis for running the
            account. It cannot be withdrawn while the account is active;
            the subject has to ask for deletion instead.
- optional  ``marketing`` and ``analytics``: can be granted and withdrawn
            at any time.

Every change stamps ``consent_updated_at`` and leaves a ``consent.updated``
audit record with the before/after values.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifecycle.compliance.audit import AuditSink
from lifecycle.compliance.errors import ConsentRequired, SubjectNotFound, UnknownConsent
from lifecycle.core.clock import Clock, utc_now
from lifecycle.models.user import User

log = structlog.get_logger(__name__)

REQUIRED_CONSENTS: tuple[str, ...] = ("data_processing",)
OPTIONAL_CONSENTS: tuple[str, ...] = ("marketing", "analytics")

_COLUMNS = {
    "data_processing": "data_processing_consent",
    "marketing": "marketing_consent",
    "analytics": "analytics_consent",
}


def consent_snapshot(user: User) -> dict[str, bool]:
    return {name: bool(getattr(user, column)) for name, column in _COLUMNS.items()}


class ConsentManager:
    """Applies consent changes for a subject.

    Usage:
        consent = ConsentManager(session_factory, clock=clock)
        await consent.update_preferences(subject_id, marketing=False)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def update_preferences(
        self,
        subject_id: uuid.UUID,
        *,
        marketing: bool | None = None,
        analytics: bool | None = None,
        data_processing: bool | None = None,
    ) -> dict[str, bool]:
        """Set consents directly; ``None`` leaves a consent unchanged.

        Raises:
            ConsentRequired: data_processing=False on an active account
        """
        changes = {
            name: value
            for name, value in (
                ("marketing", marketing),
                ("analytics", analytics),
                ("data_processing", data_processing),
            )
            if value is not None
        }
        async with self._session_factory() as session, session.begin():
            return await self.apply(session, subject_id, changes)

    async def withdraw(
        self,
        session: AsyncSession,
        subject_id: uuid.UUID,
        consents: Iterable[str] | None = None,
        *,
        reference: uuid.UUID | None = None,
    ) -> dict[str, bool]:
        """Withdraw the named consents (all optional ones by default).

        Runs inside the caller's transaction.
        """
        names = list(consents) if consents is not None else list(OPTIONAL_CONSENTS)
        return await self.apply(
            session, subject_id, {name: False for name in names}, reference=reference
        )

    async def apply(
        self,
        session: AsyncSession,
        subject_id: uuid.UUID,
        changes: dict[str, bool],
        *,
        reference: uuid.UUID | None = None,
    ) -> dict[str, bool]:
        unknown = sorted(set(changes) - set(_COLUMNS))
        if unknown:
            raise UnknownConsent(f"Unknown consent(s): {', '.join(unknown)}")

        user = await session.get(User, subject_id)
        if user is None or user.anonymized_at is not None:
            raise SubjectNotFound(f"Subject {subject_id} not found")

        for name in REQUIRED_CONSENTS:
            if changes.get(name) is False and user.is_active:
                log.info("consent.required_withdrawal_rejected", subject_id=str(subject_id))
                raise ConsentRequired(
                    f"'{name}' consent is required while the account is active; "
                    "request account deletion instead"
                )

        before = consent_snapshot(user)
        for name, value in changes.items():
            setattr(user, _COLUMNS[name], value)
        after = consent_snapshot(user)

        if after != before:
            now = self._clock()
            user.consent_updated_at = now
            user.updated_at = now
            await session.flush()
            await AuditSink(session, clock=self._clock).record(
                "consent.updated",
                subject_id=subject_id,
                reference=reference,
                metadata={"from": before, "to": after},
            )
            log.info(
                "consent.updated",
                subject_id=str(subject_id),
                changed=sorted(k for k in after if after[k] != before[k]),
            )
        return after

    async def current(self, session: AsyncSession, subject_id: uuid.UUID) -> dict[str, Any]:
        user = await session.get(User, subject_id)
        if user is None:
            raise SubjectNotFound(f"Subject {subject_id} not found")
        return {
            **consent_snapshot(user),
            "updated_at": user.consent_updated_at.isoformat() if user.consent_updated_at else None,
        }
