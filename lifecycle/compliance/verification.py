"""Verification gate: promotes a request from pending to processing.

A request is only acted upon after its subject proves control of the
contact channel by presenting the single-use token issued at creation.

    token issued at creation ──► verify(token) within the window
                                    │
                                    ├─ CAS pending -> processing (token cleared)
                                    └─ hand-off to the request processor

Unknown, expired and already-used tokens all fail the same way, with
TokenInvalidOrExpired, and without mutating anything.
"""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Mapping
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifecycle.compliance.audit import AuditSink
from lifecycle.compliance.errors import TokenInvalidOrExpired
from lifecycle.compliance.requests import (
    DataSubjectRequest,
    RequestRegistry,
    RequestStatus,
    RequestType,
)
from lifecycle.core.clock import Clock, utc_now
from lifecycle.models.data_subject_request import DataSubjectRequestRecord

if TYPE_CHECKING:
    from lifecycle.compliance.processor import RequestProcessor

log = structlog.get_logger(__name__)

DEFAULT_VERIFICATION_WINDOW = timedelta(hours=72)


def new_verification_token() -> str:
    """256 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(32)


class VerificationGate:
    """Issues and redeems request verification tokens.

    Usage:
        gate = VerificationGate(session_factory, registry, processor)
        request = await gate.open_request(subject_id, "deletion", {})
        # ... token travels to the subject out of band ...
        request = await gate.verify(request.verification_token)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: RequestRegistry,
        processor: RequestProcessor,
        *,
        window: timedelta = DEFAULT_VERIFICATION_WINDOW,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._processor = processor
        self._window = window
        self._clock = clock

    async def open_request(
        self,
        subject_id: uuid.UUID,
        request_type: str | RequestType,
        metadata: Mapping[str, Any] | None = None,
    ) -> DataSubjectRequest:
        """Create a pending request carrying a freshly issued token."""
        return await self._registry.create(
            subject_id,
            request_type,
            metadata,
            verification_token=new_verification_token(),
        )

    async def verify(self, token: str) -> DataSubjectRequest:
        """Redeem ``token`` and process the request it unlocks.

        Returns the request as left by the processor (completed, failed, or
        processing for a graced deletion).

        Raises:
            TokenInvalidOrExpired: unknown token, used token, or window elapsed
        """
        if not token:
            raise TokenInvalidOrExpired("Verification token is invalid or expired")

        now = self._clock()
        earliest = now - self._window

        async with self._session_factory() as session, session.begin():
            request = await self._registry.find_by_token(session, token)
            if request is None or request.status != RequestStatus.PENDING:
                log.info("dsr.verification_rejected", reason="unknown_token")
                raise TokenInvalidOrExpired("Verification token is invalid or expired")

            won = await self._registry.transition(
                session,
                request,
                RequestStatus.PROCESSING,
                conditions=(
                    DataSubjectRequestRecord.verification_token == token,
                    DataSubjectRequestRecord.requested_at >= earliest,
                ),
                values={"verified_at": now},
            )
            if not won:
                log.info(
                    "dsr.verification_rejected",
                    request_id=str(request.id),
                    reason="expired_or_used",
                )
                raise TokenInvalidOrExpired("Verification token is invalid or expired")

            await AuditSink(session, clock=self._clock).record(
                "dsr.request_verified",
                subject_id=request.subject_id,
                reference=request.id,
                metadata={"request_type": str(request.request_type)},
            )

        log.info(
            "dsr.request_verified",
            request_id=str(request.id),
            request_type=str(request.request_type),
        )
        return await self._processor.process(request.id)
