"""Request processor: runs the handler for a verified request.

The handler table is built once, at construction, keyed by RequestType.
Each handler runs in a single transaction that ends with the request's
terminal compare-and-swap. If a handler raises, that transaction rolls back
and a second, independent transaction marks the request ``failed``, records
the cause in its metadata, and writes ``dsr.request_failed``. A request is
never left in ``processing`` without a cause, except a deletion waiting out
its grace period.

    export / portability    snapshot -> artifact store -> completed
    deletion                grace > 0: schedule, stay processing
                            grace = 0: anonymize inline -> completed
    consent_withdrawal      clear optional consents -> completed
    processing_restriction  set restriction flag -> completed
    rectification           apply self-service corrections -> completed
                            (review_required when anything is left over)
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifecycle.compliance.anonymization import AnonymizationExecutor
from lifecycle.compliance.artifacts import ArtifactStore
from lifecycle.compliance.audit import AuditSink, jsonable
from lifecycle.compliance.consent import ConsentManager
from lifecycle.compliance.errors import (
    ExportFailed,
    InvalidTransition,
    LifecycleError,
    SubjectNotFound,
)
from lifecycle.compliance.export import (
    SUPPORTED_EXPORT_FORMATS,
    SubjectDataCollector,
    render_csv,
    render_json,
    render_portability,
)
from lifecycle.compliance.requests import (
    DataSubjectRequest,
    RequestRegistry,
    RequestStatus,
    RequestType,
)
from lifecycle.core.clock import Clock, utc_now
from lifecycle.models.data_subject_request import DataSubjectRequestRecord
from lifecycle.models.user import User

log = structlog.get_logger(__name__)

Handler = Callable[[AsyncSession, DataSubjectRequest], Awaitable[None]]

MAX_GRACE_PERIOD_DAYS = 90

# Fields a subject may correct without human review
SELF_SERVICE_FIELDS: tuple[str, ...] = ("display_name", "phone")


def resolve_grace_period(metadata: dict[str, Any], default_days: int) -> timedelta:
    """Grace period requested in a deletion's metadata.

    ``immediate: true`` or ``grace_period_days: 0`` means no grace period.
    Other explicit values are clamped to 1..MAX_GRACE_PERIOD_DAYS.
    """
    if metadata.get("immediate") is True:
        return timedelta(0)
    raw = metadata.get("grace_period_days")
    if raw is None:
        return timedelta(days=default_days)
    try:
        days = int(raw)
    except (TypeError, ValueError):
        return timedelta(days=default_days)
    if days <= 0:
        return timedelta(0)
    return timedelta(days=min(days, MAX_GRACE_PERIOD_DAYS))


class RequestProcessor:
    """Dispatches verified requests to their handlers.

    Usage:
        processor = RequestProcessor(
            session_factory, registry, anonymizer, artifacts, consent
        )
        request = await processor.process(request_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: RequestRegistry,
        anonymizer: AnonymizationExecutor,
        artifacts: ArtifactStore,
        consent: ConsentManager,
        *,
        collector: SubjectDataCollector | None = None,
        grace_period_days: int = 30,
        artifact_ttl: timedelta = timedelta(days=30),
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._anonymizer = anonymizer
        self._artifacts = artifacts
        self._consent = consent
        self._collector = collector or SubjectDataCollector()
        self._grace_period_days = grace_period_days
        self._artifact_ttl = artifact_ttl
        self._clock = clock

        self._handlers: dict[RequestType, Handler] = {
            RequestType.EXPORT: self._handle_export,
            RequestType.PORTABILITY: self._handle_export,
            RequestType.DELETION: self._handle_deletion,
            RequestType.CONSENT_WITHDRAWAL: self._handle_consent_withdrawal,
            RequestType.PROCESSING_RESTRICTION: self._handle_restriction,
            RequestType.RECTIFICATION: self._handle_rectification,
        }

    async def process(self, request_id: uuid.UUID) -> DataSubjectRequest:
        """Run the handler for a request in ``processing`` and return its new state.

        Handler failures do not propagate: they end the request as ``failed``.
        """
        try:
            async with self._session_factory() as session, session.begin():
                request = await self._registry.load(session, request_id)
                if request.status != RequestStatus.PROCESSING:
                    raise InvalidTransition(
                        f"Request {request_id} is {request.status}, not processing"
                    )
                handler = self._handlers[request.request_type]
                log.info(
                    "dsr.processing",
                    request_id=str(request_id),
                    request_type=str(request.request_type),
                )
                await handler(session, request)
        except InvalidTransition:
            raise
        except Exception as exc:
            await self._fail(request_id, exc)

        return await self._registry.get(request_id)

    # ------------------------------------------------------------------ #
    # Failure path
    # ------------------------------------------------------------------ #

    async def _fail(self, request_id: uuid.UUID, exc: Exception) -> None:
        code = exc.code if isinstance(exc, LifecycleError) else "internal_error"
        reason = exc.message if isinstance(exc, LifecycleError) else str(exc)

        log.error(
            "dsr.request_failed",
            request_id=str(request_id),
            error_code=code,
            error=reason,
        )
        async with self._session_factory() as session, session.begin():
            request = await self._registry.load(session, request_id)
            won = await self._registry.transition(
                session,
                request,
                RequestStatus.FAILED,
                from_status=RequestStatus.PROCESSING,
                notes={"failure_code": code, "failure_reason": reason},
            )
            if not won:
                log.warning(
                    "dsr.fail_transition_lost",
                    request_id=str(request_id),
                    status=str(request.status),
                )
                return
            await AuditSink(session, clock=self._clock).record(
                "dsr.request_failed",
                subject_id=request.subject_id,
                reference=request_id,
                metadata={
                    "request_type": str(request.request_type),
                    "error_code": code,
                    "error": reason,
                },
            )

    async def _complete(
        self,
        session: AsyncSession,
        request: DataSubjectRequest,
        *,
        values: dict[str, Any] | None = None,
        outcome: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(values or {})
        if outcome is not None:
            merged["outcome"] = jsonable(outcome)
        won = await self._registry.transition(
            session, request, RequestStatus.COMPLETED, values=merged
        )
        if not won:
            raise InvalidTransition(f"Request {request.id} changed while being processed")
        await AuditSink(session, clock=self._clock).record(
            "dsr.request_completed",
            subject_id=request.subject_id,
            reference=request.id,
            metadata={"request_type": str(request.request_type), "outcome": outcome or {}},
        )
        log.info(
            "dsr.request_completed",
            request_id=str(request.id),
            request_type=str(request.request_type),
        )

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #

    async def _handle_export(self, session: AsyncSession, request: DataSubjectRequest) -> None:
        now = self._clock()
        snapshot = await self._collector.collect(session, request.subject_id, collected_at=now)

        if request.request_type == RequestType.PORTABILITY:
            fmt = "json"
            content = render_portability(snapshot, request_id=request.id)
        else:
            fmt = str(request.metadata.get("format", "json")).lower()
            if fmt not in SUPPORTED_EXPORT_FORMATS:
                raise ExportFailed(f"Unsupported export format {fmt!r}")
            content = render_csv(snapshot) if fmt == "csv" else render_json(snapshot)

        key = await self._artifacts.write(f"{request.request_type}-{request.id}.{fmt}", content)
        expires_at = now + self._artifact_ttl
        try:
            await self._complete(
                session,
                request,
                values={"export_artifact_ref": key, "artifact_expires_at": expires_at},
                outcome={
                    "format": fmt,
                    "size_bytes": len(content),
                    "download_url": self._artifacts.retrieval_reference(key, expires_at),
                },
            )
        except Exception:
            await self._artifacts.delete(key)
            raise

    async def _handle_deletion(self, session: AsyncSession, request: DataSubjectRequest) -> None:
        grace = resolve_grace_period(request.metadata, self._grace_period_days)

        if grace == timedelta(0):
            result = await self._anonymizer.anonymize(
                session, request.subject_id, request_id=request.id
            )
            await self._complete(
                session,
                request,
                outcome={"immediate": True, **result.to_dict()},
            )
            return

        scheduled_for = self._clock() + grace
        won = await self._registry.set_fields(
            session,
            request,
            conditions=(DataSubjectRequestRecord.deletion_scheduled_for.is_(None),),
            deletion_scheduled_for=scheduled_for,
        )
        if not won:
            raise InvalidTransition(f"Deletion {request.id} is already scheduled")
        await AuditSink(session, clock=self._clock).record(
            "grace.deletion_scheduled",
            subject_id=request.subject_id,
            reference=request.id,
            metadata={
                "scheduled_for": scheduled_for,
                "grace_period_days": grace.days,
            },
        )
        log.info(
            "grace.deletion_scheduled",
            request_id=str(request.id),
            scheduled_for=scheduled_for.isoformat(),
        )

    async def _handle_consent_withdrawal(
        self, session: AsyncSession, request: DataSubjectRequest
    ) -> None:
        consents = request.metadata.get("consents")
        if isinstance(consents, str):
            consents = [consents]
        after = await self._consent.withdraw(
            session, request.subject_id, consents, reference=request.id
        )
        await self._complete(session, request, outcome={"consents": after})

    async def _handle_restriction(
        self, session: AsyncSession, request: DataSubjectRequest
    ) -> None:
        user = await self._subject(session, request.subject_id)
        now = self._clock()
        if not user.processing_restricted:
            user.processing_restricted = True
            user.restricted_at = now
            user.updated_at = now
            await session.flush()
        await AuditSink(session, clock=self._clock).record(
            "subject.processing_restricted",
            subject_id=request.subject_id,
            reference=request.id,
            metadata={"reason": request.metadata.get("reason")},
        )
        await self._complete(
            session,
            request,
            outcome={"processing_restricted": True, "restricted_at": user.restricted_at},
        )

    async def _handle_rectification(
        self, session: AsyncSession, request: DataSubjectRequest
    ) -> None:
        user = await self._subject(session, request.subject_id)
        corrections = request.metadata.get("corrections") or {}
        if not isinstance(corrections, dict):
            corrections = {}

        applied: dict[str, Any] = {}
        for name in SELF_SERVICE_FIELDS:
            if name in corrections:
                setattr(user, name, corrections[name])
                applied[name] = corrections[name]
        pending = sorted(k for k in corrections if k not in SELF_SERVICE_FIELDS)

        if applied:
            user.updated_at = self._clock()
            await session.flush()
            await AuditSink(session, clock=self._clock).record(
                "subject.rectified",
                subject_id=request.subject_id,
                reference=request.id,
                metadata={"fields": sorted(applied)},
            )

        review_required = bool(pending) or not applied
        if review_required:
            log.info(
                "dsr.rectification_review_required",
                request_id=str(request.id),
                pending_fields=pending,
            )
        await self._complete(
            session,
            request,
            outcome={
                "applied_fields": sorted(applied),
                "pending_fields": pending,
                "review_required": review_required,
            },
        )

    async def _subject(self, session: AsyncSession, subject_id: uuid.UUID) -> User:
        user = await session.get(User, subject_id)
        if user is None or user.anonymized_at is not None:
            raise SubjectNotFound(f"Subject {subject_id} not found")
        return user
