"""Subject data collection and export rendering.

Collects everything the engine holds about one data subject, grouped by the
categories a subject can ask about:

- profile              account fields (never credentials or tokens)
- settings             per-user preferences
- scheduling_history   bookings hosted by the subject or attended under their address
- communications       notifications sent to or for the subject
- billing_summary      invoices and metered usage
- compliance_history   the subject's own requests and audit trail

Rendering:
- export (json)  the snapshot as an indented JSON document
- export (csv)   one row per record, ``type`` column first, union of all fields
- portability    a versioned JSON envelope meant for import by another controller
"""

from __future__ import annotations

import csv
import io
import json
import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.compliance.audit import AuditSink
from lifecycle.compliance.errors import ExportFailed, SubjectNotFound
from lifecycle.models.billing import BillingRecord, UsageRecord
from lifecycle.models.booking import Booking
from lifecycle.models.data_subject_request import DataSubjectRequestRecord
from lifecycle.models.notification import Notification
from lifecycle.models.user import User, UserSettings

log = structlog.get_logger(__name__)

PORTABILITY_FORMAT_VERSION = "1.0"
SUPPORTED_EXPORT_FORMATS = ("json", "csv")

_AUDIT_HISTORY_LIMIT = 1000

# Credentials and one-time tokens are never exported
_PROFILE_FIELDS = (
    "id",
    "email",
    "display_name",
    "phone",
    "email_verified",
    "data_processing_consent",
    "marketing_consent",
    "analytics_consent",
    "consent_updated_at",
    "processing_restricted",
    "restricted_at",
    "is_active",
    "created_at",
    "updated_at",
)


def _value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _row(obj: Any, fields: tuple[str, ...]) -> dict[str, Any]:
    return {name: _value(getattr(obj, name)) for name in fields}


class SubjectDataCollector:
    """Builds the structured snapshot of one subject's data.

    Runs on the caller's session so that the snapshot reflects the same
    transaction in which the export request is completed.
    """

    async def collect(
        self, session: AsyncSession, subject_id: uuid.UUID, *, collected_at: datetime
    ) -> dict[str, Any]:
        user = await session.get(User, subject_id)
        if user is None:
            raise SubjectNotFound(f"Subject {subject_id} not found")

        try:
            snapshot = {
                "profile": _row(user, _PROFILE_FIELDS),
                "settings": await self._settings(session, subject_id),
                "scheduling_history": await self._bookings(session, user),
                "communications": await self._notifications(session, subject_id),
                "billing_summary": await self._billing(session, subject_id),
                "compliance_history": await self._compliance(session, subject_id),
                "export_metadata": {
                    "exported_at": collected_at.isoformat(),
                    "subject_id": str(subject_id),
                },
            }
        except SubjectNotFound:
            raise
        except Exception as exc:
            log.error("export.collection_failed", subject_id=str(subject_id), error=str(exc))
            raise ExportFailed(f"Failed to collect data for subject {subject_id}") from exc

        log.info(
            "export.collected",
            subject_id=str(subject_id),
            bookings=len(snapshot["scheduling_history"]),
            notifications=len(snapshot["communications"]),
        )
        return snapshot

    async def _settings(
        self, session: AsyncSession, subject_id: uuid.UUID
    ) -> dict[str, Any] | None:
        result = await session.execute(
            select(UserSettings).where(UserSettings.user_id == subject_id)
        )
        settings = result.scalar_one_or_none()
        if settings is None:
            return None
        return _row(
            settings,
            (
                "timezone",
                "language",
                "notify_by_email",
                "notify_by_sms",
                "meeting_duration_minutes",
                "updated_at",
            ),
        )

    async def _bookings(self, session: AsyncSession, user: User) -> list[dict[str, Any]]:
        result = await session.execute(
            select(Booking)
            .where(or_(Booking.host_id == user.id, Booking.attendee_email == user.email))
            .order_by(Booking.start_time)
        )
        return [
            {
                **_row(
                    b,
                    (
                        "id",
                        "title",
                        "attendee_name",
                        "attendee_email",
                        "attendee_phone",
                        "status",
                        "start_time",
                        "end_time",
                        "created_at",
                    ),
                ),
                "role": "host" if b.host_id == user.id else "attendee",
            }
            for b in result.scalars().all()
        ]

    async def _notifications(
        self, session: AsyncSession, subject_id: uuid.UUID
    ) -> list[dict[str, Any]]:
        result = await session.execute(
            select(Notification)
            .where(Notification.user_id == subject_id)
            .order_by(Notification.created_at)
        )
        return [
            _row(n, ("id", "channel", "recipient", "subject", "status", "sent_at", "created_at"))
            for n in result.scalars().all()
        ]

    async def _billing(self, session: AsyncSession, subject_id: uuid.UUID) -> dict[str, Any]:
        invoices = await session.execute(
            select(BillingRecord)
            .where(BillingRecord.user_id == subject_id)
            .order_by(BillingRecord.created_at)
        )
        usage = await session.execute(
            select(UsageRecord).where(UsageRecord.user_id == subject_id)
        )
        usage_totals: dict[str, int] = {}
        for record in usage.scalars().all():
            usage_totals[record.metric] = usage_totals.get(record.metric, 0) + record.quantity

        return {
            "invoices": [
                _row(
                    inv,
                    (
                        "id",
                        "invoice_status",
                        "amount_total_cents",
                        "currency",
                        "period_start",
                        "period_end",
                        "created_at",
                    ),
                )
                for inv in invoices.scalars().all()
            ],
            "usage_totals": usage_totals,
        }

    async def _compliance(
        self, session: AsyncSession, subject_id: uuid.UUID
    ) -> dict[str, Any]:
        requests = await session.execute(
            select(DataSubjectRequestRecord)
            .where(DataSubjectRequestRecord.subject_id == subject_id)
            .order_by(DataSubjectRequestRecord.requested_at)
        )
        audit = await AuditSink(session).history(
            subject_id=subject_id, limit=_AUDIT_HISTORY_LIMIT
        )
        return {
            "requests": [
                _row(r, ("id", "request_type", "status", "requested_at", "completed_at"))
                for r in requests.scalars().all()
            ],
            "audit_trail": [
                _row(a, ("action", "reference", "created_at")) for a in audit
            ],
        }


# ------------------------------------------------------------------ #
# Rendering
# ------------------------------------------------------------------ #


def render_json(snapshot: dict[str, Any]) -> bytes:
    return json.dumps(snapshot, indent=2, sort_keys=True).encode("utf-8")


def flatten_for_csv(snapshot: dict[str, Any]) -> list[dict[str, Any]]:
    """One row per record, tagged with the record's type."""
    rows: list[dict[str, Any]] = [{"type": "profile", **snapshot["profile"]}]
    if snapshot.get("settings"):
        rows.append({"type": "settings", **snapshot["settings"]})
    rows.extend({"type": "booking", **b} for b in snapshot["scheduling_history"])
    rows.extend({"type": "notification", **n} for n in snapshot["communications"])
    billing = snapshot["billing_summary"]
    rows.extend({"type": "invoice", **inv} for inv in billing["invoices"])
    rows.extend(
        {"type": "usage", "metric": metric, "quantity": qty}
        for metric, qty in sorted(billing["usage_totals"].items())
    )
    rows.extend({"type": "request", **r} for r in snapshot["compliance_history"]["requests"])
    return rows


def render_csv(snapshot: dict[str, Any]) -> bytes:
    rows = flatten_for_csv(snapshot)
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=columns, restval="")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return output.getvalue().encode("utf-8")


def render_portability(snapshot: dict[str, Any], *, request_id: uuid.UUID) -> bytes:
    """Versioned, self-describing document for transfer to another controller."""
    document = {
        "format": "data-lifecycle-portability",
        "version": PORTABILITY_FORMAT_VERSION,
        "request_id": str(request_id),
        "generated_at": snapshot["export_metadata"]["exported_at"],
        "subject": snapshot["profile"],
        "data": {
            key: value
            for key, value in snapshot.items()
            if key not in ("profile", "export_metadata")
        },
    }
    return json.dumps(document, indent=2, sort_keys=True).encode("utf-8")
