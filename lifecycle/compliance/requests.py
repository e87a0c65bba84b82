"""Request registry: durable store and state machine of data subject requests.

State graph:

    pending -> processing -> completed
                          -> failed
                          -> cancelled   (deletion only, before its scheduled time)

Every status change goes through ``RequestRegistry.transition``, a single
conditional UPDATE (compare-and-swap on ``status`` plus any extra guard the
caller supplies). Two writers racing for the same request cannot both win;
the loser sees ``False`` and decides what that means for its operation.

Invariants kept here:
- completed_at is set exactly when the request enters a terminal status
- verification_token only exists while the request is pending
- metadata is append-only: notes may add keys, never overwrite them
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import ColumnElement, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifecycle.compliance.audit import AuditSink, jsonable
from lifecycle.compliance.errors import (
    InvalidRequestType,
    InvalidTransition,
    RequestNotFound,
    SubjectNotFound,
)
from lifecycle.core.clock import Clock, utc_now
from lifecycle.models.data_subject_request import DataSubjectRequestRecord
from lifecycle.models.user import User

log = structlog.get_logger(__name__)


class RequestType(StrEnum):
    """Data subject request types."""

    EXPORT = "export"  # Right of access
    DELETION = "deletion"  # Right to erasure
    RECTIFICATION = "rectification"  # Right to rectification
    CONSENT_WITHDRAWAL = "consent_withdrawal"
    PORTABILITY = "portability"  # Machine-readable export
    PROCESSING_RESTRICTION = "processing_restriction"


class RequestStatus(StrEnum):
    """Lifecycle status of a data subject request."""

    PENDING = "pending"  # Awaiting identity verification
    PROCESSING = "processing"  # Verified; handler running or deletion in grace period
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"  # Deletion withdrawn during its grace period


TERMINAL_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.PROCESSING}),
    RequestStatus.PROCESSING: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.CANCELLED}
    ),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.FAILED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}


def parse_request_type(value: str | RequestType) -> RequestType:
    """Validate a caller-supplied request type."""
    try:
        return RequestType(value)
    except ValueError:
        raise InvalidRequestType(
            f"Unknown request type {value!r}; expected one of "
            + ", ".join(t.value for t in RequestType)
        ) from None


def check_transition(
    from_status: RequestStatus,
    to_status: RequestStatus,
    request_type: RequestType | None = None,
) -> None:
    """Raise InvalidTransition unless from -> to is an edge of the state graph."""
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransition(f"{from_status} -> {to_status} is not allowed")
    if (
        to_status == RequestStatus.CANCELLED
        and request_type is not None
        and request_type != RequestType.DELETION
    ):
        raise InvalidTransition("only deletion requests can be cancelled")


@dataclass
class DataSubjectRequest:
    """Detached snapshot of a data subject request."""

    id: uuid.UUID
    subject_id: uuid.UUID
    request_type: RequestType
    status: RequestStatus
    requested_at: datetime
    verified_at: datetime | None = None
    completed_at: datetime | None = None
    deletion_scheduled_for: datetime | None = None
    export_artifact_ref: str | None = None
    artifact_expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    outcome: dict[str, Any] | None = None
    verification_token: str | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Public representation (never includes the verification token)."""

        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "request_id": str(self.id),
            "subject_id": str(self.subject_id),
            "request_type": str(self.request_type),
            "status": str(self.status),
            "requested_at": _iso(self.requested_at),
            "verified_at": _iso(self.verified_at),
            "completed_at": _iso(self.completed_at),
            "deletion_scheduled_for": _iso(self.deletion_scheduled_for),
            "export_artifact_ref": self.export_artifact_ref,
            "artifact_expires_at": _iso(self.artifact_expires_at),
            "metadata": dict(self.metadata),
            "outcome": dict(self.outcome) if self.outcome is not None else None,
        }


def _record_to_dataclass(record: DataSubjectRequestRecord) -> DataSubjectRequest:
    return DataSubjectRequest(
        id=record.id,
        subject_id=record.subject_id,
        request_type=RequestType(record.request_type),
        status=RequestStatus(record.status),
        requested_at=record.requested_at,
        verified_at=record.verified_at,
        completed_at=record.completed_at,
        deletion_scheduled_for=record.deletion_scheduled_for,
        export_artifact_ref=record.export_artifact_ref,
        artifact_expires_at=record.artifact_expires_at,
        metadata=dict(record.details or {}),
        outcome=dict(record.outcome) if record.outcome is not None else None,
        verification_token=record.verification_token,
    )


class RequestRegistry:
    """Durable store of data subject requests.

    Read helpers open their own short sessions. Mutating helpers that are
    part of a larger unit of work (``transition``, ``append_notes``,
    ``load``) take the caller's session so the change commits or rolls back
    with the rest of that work.

    Usage:
        registry = RequestRegistry(session_factory, clock=clock)
        request = await registry.create(
            subject_id, "export", {"format": "csv"}, verification_token=token
        )
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    async def create(
        self,
        subject_id: uuid.UUID,
        request_type: str | RequestType,
        metadata: Mapping[str, Any] | None = None,
        *,
        verification_token: str,
    ) -> DataSubjectRequest:
        """Persist a new request in ``pending`` status.

        Raises:
            InvalidRequestType: request_type is not one of RequestType
            SubjectNotFound: no active subject with this id
        """
        rtype = parse_request_type(request_type)
        now = self._clock()

        async with self._session_factory() as session, session.begin():
            subject = await session.get(User, subject_id)
            if subject is None or subject.anonymized_at is not None:
                raise SubjectNotFound(f"Subject {subject_id} not found")

            record = DataSubjectRequestRecord(
                id=uuid.uuid4(),
                subject_id=subject_id,
                request_type=str(rtype),
                status=str(RequestStatus.PENDING),
                verification_token=verification_token,
                requested_at=now,
                details=jsonable(dict(metadata or {})),
            )
            session.add(record)
            await session.flush()

            await AuditSink(session, clock=self._clock).record(
                "dsr.request_created",
                subject_id=subject_id,
                reference=record.id,
                metadata={"request_type": str(rtype), "origin": record.details.get("origin")},
            )
            request = _record_to_dataclass(record)

        log.info(
            "dsr.request_created",
            request_id=str(request.id),
            subject_id=str(subject_id),
            request_type=str(rtype),
        )
        return request

    # ------------------------------------------------------------------ #
    # Compare-and-swap writer
    # ------------------------------------------------------------------ #

    async def transition(
        self,
        session: AsyncSession,
        request: DataSubjectRequest,
        to_status: RequestStatus,
        *,
        from_status: RequestStatus | None = None,
        conditions: Iterable[ColumnElement[bool]] = (),
        values: Mapping[str, Any] | None = None,
        notes: Mapping[str, Any] | None = None,
    ) -> bool:
        """Atomically move ``request`` from ``from_status`` to ``to_status``.

        The UPDATE only matches while the stored status still equals
        ``from_status`` (defaults to the snapshot's status) and every extra
        condition holds. Returns True if this call won the swap.

        Raises:
            InvalidTransition: the edge is not part of the state graph
        """
        source = from_status or request.status
        check_transition(source, to_status, request.request_type)

        now = self._clock()
        new_values: dict[str, Any] = dict(values or {})
        new_values["status"] = str(to_status)
        if source == RequestStatus.PENDING:
            new_values["verification_token"] = None
        if to_status in TERMINAL_STATUSES:
            new_values.setdefault("completed_at", now)

        stmt = (
            update(DataSubjectRequestRecord)
            .where(
                DataSubjectRequestRecord.id == request.id,
                DataSubjectRequestRecord.status == str(source),
                *conditions,
            )
            .values(**new_values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        won = result.rowcount == 1

        if won and notes:
            await self.append_notes(session, request.id, notes)

        log.debug(
            "dsr.transition",
            request_id=str(request.id),
            from_status=str(source),
            to_status=str(to_status),
            won=won,
        )
        return won

    async def set_fields(
        self,
        session: AsyncSession,
        request: DataSubjectRequest,
        *,
        conditions: Iterable[ColumnElement[bool]] = (),
        **values: Any,
    ) -> bool:
        """Conditionally update non-status columns of a request in its current status."""
        stmt = (
            update(DataSubjectRequestRecord)
            .where(
                DataSubjectRequestRecord.id == request.id,
                DataSubjectRequestRecord.status == str(request.status),
                *conditions,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def record_outcome(
        self,
        session: AsyncSession,
        request_id: uuid.UUID,
        outcome: Mapping[str, Any],
    ) -> None:
        """Attach the handler's result summary to a request."""
        await session.execute(
            update(DataSubjectRequestRecord)
            .where(DataSubjectRequestRecord.id == request_id)
            .values(outcome=jsonable(dict(outcome)))
            .execution_options(synchronize_session=False)
        )

    async def append_notes(
        self,
        session: AsyncSession,
        request_id: uuid.UUID,
        notes: Mapping[str, Any],
    ) -> None:
        """Add keys to a request's metadata; existing keys are never overwritten."""
        record = await self._load_record(session, request_id)
        merged = dict(record.details or {})
        for key, value in notes.items():
            if key in merged:
                log.warning("dsr.metadata_key_exists", request_id=str(request_id), key=key)
                continue
            merged[key] = value
        await session.execute(
            update(DataSubjectRequestRecord)
            .where(DataSubjectRequestRecord.id == request_id)
            .values(details=merged)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    async def _load_record(
        self, session: AsyncSession, request_id: uuid.UUID
    ) -> DataSubjectRequestRecord:
        result = await session.execute(
            select(DataSubjectRequestRecord)
            .where(DataSubjectRequestRecord.id == request_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise RequestNotFound(f"Request {request_id} not found")
        return record

    async def load(self, session: AsyncSession, request_id: uuid.UUID) -> DataSubjectRequest:
        """Fresh snapshot of a request within the caller's transaction."""
        return _record_to_dataclass(await self._load_record(session, request_id))

    async def find_by_token(
        self, session: AsyncSession, token: str
    ) -> DataSubjectRequest | None:
        result = await session.execute(
            select(DataSubjectRequestRecord).where(
                DataSubjectRequestRecord.verification_token == token
            )
        )
        record = result.scalar_one_or_none()
        return _record_to_dataclass(record) if record else None

    async def get(self, request_id: uuid.UUID) -> DataSubjectRequest:
        """Return a request by id (raises RequestNotFound)."""
        async with self._session_factory() as session:
            return await self.load(session, request_id)

    async def get_for_subject(
        self, request_id: uuid.UUID, subject_id: uuid.UUID
    ) -> DataSubjectRequest:
        """Return a request only if it belongs to ``subject_id``.

        A request owned by someone else is reported exactly like a missing
        one, so callers cannot discover other subjects' request ids.
        """
        request = await self.get(request_id)
        if request.subject_id != subject_id:
            raise RequestNotFound(f"Request {request_id} not found")
        return request

    async def list_for_subject(
        self, subject_id: uuid.UUID, *, limit: int = 50
    ) -> list[DataSubjectRequest]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataSubjectRequestRecord)
                .where(DataSubjectRequestRecord.subject_id == subject_id)
                .order_by(DataSubjectRequestRecord.requested_at.desc())
                .limit(limit)
            )
            return [_record_to_dataclass(r) for r in result.scalars().all()]

    async def list_due_deletions(self, now: datetime) -> list[DataSubjectRequest]:
        """Deletion requests in their grace period whose scheduled time has passed."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataSubjectRequestRecord)
                .where(
                    DataSubjectRequestRecord.request_type == str(RequestType.DELETION),
                    DataSubjectRequestRecord.status == str(RequestStatus.PROCESSING),
                    DataSubjectRequestRecord.deletion_scheduled_for.is_not(None),
                    DataSubjectRequestRecord.deletion_scheduled_for <= now,
                )
                .order_by(DataSubjectRequestRecord.deletion_scheduled_for)
            )
            return [_record_to_dataclass(r) for r in result.scalars().all()]
