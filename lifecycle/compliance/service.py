"""DataLifecycleService - the engine's single entry point.

Constructs every component with explicit dependencies (session factory,
artifact store, clock, settings) and exposes the operations collaborators
call: the HTTP layer, the CLI, and the periodic trigger.

    create_request ──► VerificationGate.open_request ──► RequestRegistry
    verify ──────────► VerificationGate.verify ──► RequestProcessor
    cancel_deletion ─► GracePeriodScheduler.cancel
    run_due_deletions ► GracePeriodScheduler.run_due_deletions ──► AnonymizationExecutor
    run_retention_sweep / run_policy ──► RetentionSweepEngine
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifecycle.compliance.anonymization import AnonymizationExecutor
from lifecycle.compliance.artifacts import ArtifactStore, LocalArtifactStore
from lifecycle.compliance.consent import ConsentManager
from lifecycle.compliance.grace import (
    DEFAULT_CANCELLATION_REASON,
    DueDeletionReport,
    GracePeriodScheduler,
)
from lifecycle.compliance.processor import RequestProcessor
from lifecycle.compliance.requests import DataSubjectRequest, RequestRegistry, RequestType
from lifecycle.compliance.verification import VerificationGate
from lifecycle.config import Settings
from lifecycle.core.clock import Clock, utc_now
from lifecycle.retention.policies import RetentionPolicyRegistry
from lifecycle.retention.sweep import PolicyResult, RetentionSweepEngine, RetentionSweepReport

log = structlog.get_logger(__name__)

_AGREEMENT_RECENT_REQUESTS = 10

# Purposes each processed category serves, shown in the processing agreement
_PROCESSING_PURPOSES: dict[str, str] = {
    "profile": "Account administration and authentication",
    "settings": "Personalisation of the scheduling service",
    "scheduling_history": "Providing booked meetings to hosts and attendees",
    "communications": "Booking confirmations and reminders",
    "billing_summary": "Invoicing and legal bookkeeping obligations",
    "compliance_history": "Evidence of data subject request handling",
}


class DataLifecycleService:
    """Facade over the data lifecycle compliance engine.

    Usage:
        service = DataLifecycleService(session_factory, get_settings())
        request = await service.create_request(subject_id, "deletion", {})
        await service.verify(request.verification_token)
        report = await service.run_due_deletions()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        clock: Clock = utc_now,
        artifacts: ArtifactStore | None = None,
        policies: RetentionPolicyRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self.artifacts: ArtifactStore = artifacts or LocalArtifactStore(
            settings.artifact_dir,
            secret=settings.secret_key.get_secret_value().encode(),
            base_url=settings.artifact_base_url,
            clock=clock,
        )
        self.policies = policies or RetentionPolicyRegistry.from_overrides(
            settings.retention_overrides
        )

        self.registry = RequestRegistry(session_factory, clock=clock)
        self.anonymizer = AnonymizationExecutor(clock=clock)
        self.consent = ConsentManager(session_factory, clock=clock)
        self.processor = RequestProcessor(
            session_factory,
            self.registry,
            self.anonymizer,
            self.artifacts,
            self.consent,
            grace_period_days=settings.deletion_grace_period_days,
            artifact_ttl=timedelta(days=settings.export_artifact_ttl_days),
            clock=clock,
        )
        self.gate = VerificationGate(
            session_factory,
            self.registry,
            self.processor,
            window=timedelta(hours=settings.verification_window_hours),
            clock=clock,
        )
        self.grace = GracePeriodScheduler(
            session_factory, self.registry, self.anonymizer, clock=clock
        )
        self.retention = RetentionSweepEngine(
            session_factory,
            self.policies,
            artifacts=self.artifacts,
            temp_dir=settings.temp_dir,
            log_dir=settings.log_dir,
            policy_timeout_seconds=settings.retention_policy_timeout_seconds,
            daily_run_hour_utc=settings.daily_run_hour_utc,
            clock=clock,
        )
        self._session_factory = session_factory

    # ------------------------------------------------------------------ #
    # Data subject requests
    # ------------------------------------------------------------------ #

    async def create_request(
        self,
        subject_id: uuid.UUID,
        request_type: str | RequestType,
        metadata: Mapping[str, Any] | None = None,
    ) -> DataSubjectRequest:
        return await self.gate.open_request(subject_id, request_type, metadata)

    async def verify(self, token: str) -> DataSubjectRequest:
        return await self.gate.verify(token)

    async def cancel_deletion(
        self,
        request_id: uuid.UUID,
        *,
        subject_id: uuid.UUID | None = None,
        reason: str = DEFAULT_CANCELLATION_REASON,
    ) -> DataSubjectRequest:
        return await self.grace.cancel(request_id, subject_id=subject_id, reason=reason)

    async def get_request(
        self, request_id: uuid.UUID, subject_id: uuid.UUID
    ) -> DataSubjectRequest:
        return await self.registry.get_for_subject(request_id, subject_id)

    async def list_requests(self, subject_id: uuid.UUID) -> list[DataSubjectRequest]:
        return await self.registry.list_for_subject(subject_id)

    # ------------------------------------------------------------------ #
    # Consent and transparency
    # ------------------------------------------------------------------ #

    async def update_consent(
        self,
        subject_id: uuid.UUID,
        *,
        marketing: bool | None = None,
        analytics: bool | None = None,
        data_processing: bool | None = None,
    ) -> dict[str, bool]:
        return await self.consent.update_preferences(
            subject_id,
            marketing=marketing,
            analytics=analytics,
            data_processing=data_processing,
        )

    async def processing_agreement(self, subject_id: uuid.UUID) -> dict[str, Any]:
        """What is processed about a subject, why, for how long, and their recent requests."""
        async with self._session_factory() as session:
            consents = await self.consent.current(session, subject_id)
        recent = await self.registry.list_for_subject(
            subject_id, limit=_AGREEMENT_RECENT_REQUESTS
        )
        return {
            "subject_id": str(subject_id),
            "consents": consents,
            "data_categories": [
                {"category": name, "purpose": purpose}
                for name, purpose in _PROCESSING_PURPOSES.items()
            ],
            "retention": [
                {
                    "policy": p.name,
                    "category": str(p.category),
                    "retention_days": p.retention_days,
                    "description": p.description,
                }
                for p in self.policies
            ],
            "deletion_grace_period_days": self._settings.deletion_grace_period_days,
            "recent_requests": [r.to_dict() for r in recent],
        }

    async def open_artifact(self, key: str, *, expires: int, signature: str) -> bytes:
        return await self.artifacts.open(key, expires=expires, signature=signature)

    # ------------------------------------------------------------------ #
    # Periodic operations
    # ------------------------------------------------------------------ #

    async def run_due_deletions(self) -> DueDeletionReport:
        return await self.grace.run_due_deletions()

    async def run_retention_sweep(self) -> RetentionSweepReport:
        return await self.retention.run()

    async def run_policy(self, name: str) -> PolicyResult:
        return await self.retention.run_policy(name)

    def retention_status(self) -> dict[str, Any]:
        return self.retention.status()
