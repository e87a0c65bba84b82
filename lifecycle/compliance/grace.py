"""Grace-period scheduler for deletion requests.

A verified deletion waits ``deletion_scheduled_for`` out in ``processing``.
Until then the subject may cancel; afterwards the daily trigger executes it.

Cancellation and execution race on the same row. Both are a single
conditional UPDATE on (status, deletion_scheduled_for):

    cancel      processing -> cancelled   WHERE scheduled_for >  now
    execute     processing -> completed   WHERE scheduled_for <= now

Only one of them can match a given row, and the second writer finds the
status already moved, so a deletion is executed or cancelled exactly once.
Execution anonymizes in the same transaction as its swap: if
anonymization fails, the swap rolls back with it and the request is marked
``failed`` separately.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifecycle.compliance.anonymization import AnonymizationExecutor
from lifecycle.compliance.audit import AuditSink
from lifecycle.compliance.errors import (
    GracePeriodExpired,
    LifecycleError,
    NotCancellable,
    RequestNotFound,
)
from lifecycle.compliance.requests import (
    DataSubjectRequest,
    RequestRegistry,
    RequestStatus,
    RequestType,
)
from lifecycle.core.clock import Clock, utc_now
from lifecycle.models.data_subject_request import DataSubjectRequestRecord

log = structlog.get_logger(__name__)

DEFAULT_CANCELLATION_REASON = "Cancelled by data subject"


@dataclass
class DueDeletionReport:
    """Outcome of one run_due_deletions() pass."""

    processed: int = 0
    skipped: int = 0
    errors: int = 0
    completed_request_ids: list[str] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "completed_request_ids": list(self.completed_request_ids),
            "failures": list(self.failures),
        }


class GracePeriodScheduler:
    """Cancels or executes graced deletions.

    Usage:
        grace = GracePeriodScheduler(session_factory, registry, anonymizer)
        await grace.cancel(request_id, subject_id=subject_id)
        report = await grace.run_due_deletions()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: RequestRegistry,
        anonymizer: AnonymizationExecutor,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._anonymizer = anonymizer
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Cancellation
    # ------------------------------------------------------------------ #

    async def cancel(
        self,
        request_id: uuid.UUID,
        *,
        subject_id: uuid.UUID | None = None,
        reason: str = DEFAULT_CANCELLATION_REASON,
    ) -> DataSubjectRequest:
        """Withdraw a deletion that is still inside its grace period.

        Raises:
            RequestNotFound: unknown id, or owned by another subject
            GracePeriodExpired: the scheduled time has been reached
            NotCancellable: not a deletion in its grace period
        """
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            request = await self._registry.load(session, request_id)
            if subject_id is not None and request.subject_id != subject_id:
                raise RequestNotFound(f"Request {request_id} not found")

            won = False
            if (
                request.request_type == RequestType.DELETION
                and request.status == RequestStatus.PROCESSING
            ):
                won = await self._registry.transition(
                    session,
                    request,
                    RequestStatus.CANCELLED,
                    conditions=(
                        DataSubjectRequestRecord.request_type == str(RequestType.DELETION),
                        DataSubjectRequestRecord.deletion_scheduled_for.is_not(None),
                        DataSubjectRequestRecord.deletion_scheduled_for > now,
                    ),
                    values={"deletion_scheduled_for": None},
                    notes={"cancellation_reason": reason, "cancelled_at": now.isoformat()},
                )

            if not won:
                self._raise_not_cancelled(await self._registry.load(session, request_id), now)

            await AuditSink(session, clock=self._clock).record(
                "grace.deletion_cancelled",
                subject_id=request.subject_id,
                reference=request_id,
                metadata={"reason": reason, "was_scheduled_for": request.deletion_scheduled_for},
            )

        log.info("grace.deletion_cancelled", request_id=str(request_id))
        return await self._registry.get(request_id)

    @staticmethod
    def _raise_not_cancelled(current: DataSubjectRequest, now: datetime) -> None:
        if (
            current.request_type == RequestType.DELETION
            and current.status == RequestStatus.PROCESSING
            and current.deletion_scheduled_for is not None
            and current.deletion_scheduled_for <= now
        ):
            raise GracePeriodExpired(
                "The grace period has ended; the deletion can no longer be cancelled"
            )
        raise NotCancellable(
            f"Request {current.id} ({current.request_type}, {current.status}) "
            "is not a deletion awaiting execution"
        )

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def run_due_deletions(self) -> DueDeletionReport:
        """Execute every deletion whose grace period has ended.

        Each request is handled in its own transaction; a failure is counted
        and recorded, never propagated to the rest of the batch.
        """
        now = self._clock()
        report = DueDeletionReport()
        candidates = await self._registry.list_due_deletions(now)

        log.info("grace.due_deletions_started", candidates=len(candidates))

        for request in candidates:
            try:
                executed = await self._execute(request, now)
            except Exception as exc:
                report.errors += 1
                report.failures.append({"request_id": str(request.id), "error": str(exc)})
                try:
                    await self._mark_failed(request, exc)
                except Exception:
                    log.exception("grace.mark_failed_error", request_id=str(request.id))
                continue

            if executed:
                report.processed += 1
                report.completed_request_ids.append(str(request.id))
            else:
                report.skipped += 1

        log.info(
            "grace.due_deletions_completed",
            processed=report.processed,
            skipped=report.skipped,
            errors=report.errors,
        )
        return report

    async def _execute(self, request: DataSubjectRequest, now: datetime) -> bool:
        async with self._session_factory() as session, session.begin():
            won = await self._registry.transition(
                session,
                request,
                RequestStatus.COMPLETED,
                from_status=RequestStatus.PROCESSING,
                conditions=(
                    DataSubjectRequestRecord.deletion_scheduled_for.is_not(None),
                    DataSubjectRequestRecord.deletion_scheduled_for <= now,
                ),
                values={"deletion_scheduled_for": None, "completed_at": now},
            )
            if not won:
                log.info("grace.deletion_already_handled", request_id=str(request.id))
                return False

            result = await self._anonymizer.anonymize(
                session, request.subject_id, request_id=request.id
            )
            await self._registry.record_outcome(session, request.id, result.to_dict())
            await AuditSink(session, clock=self._clock).record(
                "grace.deletion_executed",
                subject_id=request.subject_id,
                reference=request.id,
                metadata={"scheduled_for": request.deletion_scheduled_for},
            )

        log.info(
            "grace.deletion_executed",
            request_id=str(request.id),
            subject_id=str(request.subject_id),
        )
        return True

    async def _mark_failed(self, request: DataSubjectRequest, exc: Exception) -> None:
        code = exc.code if isinstance(exc, LifecycleError) else "internal_error"
        log.error(
            "grace.deletion_failed",
            request_id=str(request.id),
            error_code=code,
            error=str(exc),
        )
        async with self._session_factory() as session, session.begin():
            won = await self._registry.transition(
                session,
                request,
                RequestStatus.FAILED,
                from_status=RequestStatus.PROCESSING,
                values={"deletion_scheduled_for": None},
                notes={"failure_code": code, "failure_reason": str(exc)},
            )
            if won:
                await AuditSink(session, clock=self._clock).record(
                    "dsr.request_failed",
                    subject_id=request.subject_id,
                    reference=request.id,
                    metadata={
                        "request_type": str(request.request_type),
                        "error_code": code,
                        "error": str(exc),
                    },
                )
