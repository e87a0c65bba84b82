"""Retention policy registry.

Each policy pairs one data category with a retention window in days and a
cleanup operation. The cutoff handed to a cleanup is ``now - retention_days``.

| Policy                     | Days | Category        | Cleanup                                        |
|----------------------------|------|-----------------|------------------------------------------------|
| deleted_users              |   30 | account         | delete anonymized users nothing references     |
| email_verification_tokens  |    7 | security        | null expired verification tokens               |
| password_reset_tokens      |    1 | security        | null expired reset tokens                      |
| jwt_blacklist              |   30 | security        | delete expired revocation entries              |
| session_data               |   30 | security        | delete expired sessions                        |
| notification_logs          |  365 | communications  | delete delivered/failed notifications          |
| gdpr_export_files          |   30 | compliance      | delete expired export artifacts                |
| gdpr_completed_requests    |  365 | compliance      | delete old terminal requests                   |
| billing_history            | 2555 | billing         | delete draft/void/zero-amount invoices         |
| usage_records              |  365 | billing         | delete reported usage rows                     |
| completed_bookings         | 1095 | scheduling      | delete completed bookings by end time          |
| cancelled_bookings         |  365 | scheduling      | delete cancelled bookings by last update       |
| temp_files                 |    7 | files           | delete stale files under temp_dir              |
| log_files                  |   90 | files           | delete rotated log files under log_dir         |

Audit records are deliberately absent: the engine never deletes them.

Every cleanup is idempotent: running it twice against the same cutoff
affects zero rows the second time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from pathlib import Path

import structlog
from sqlalchemy import delete, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.compliance.artifacts import ArtifactStore
from lifecycle.compliance.errors import UnknownPolicy
from lifecycle.compliance.requests import TERMINAL_STATUSES
from lifecycle.models.billing import BillingRecord, UsageRecord
from lifecycle.models.booking import Booking, BookingStatus
from lifecycle.models.data_subject_request import DataSubjectRequestRecord
from lifecycle.models.notification import Notification
from lifecycle.models.session import RevokedToken, SessionRecord
from lifecycle.models.user import User

log = structlog.get_logger(__name__)


class DataCategory(StrEnum):
    ACCOUNT = "account"
    SECURITY = "security"
    COMMUNICATIONS = "communications"
    COMPLIANCE = "compliance"
    BILLING = "billing"
    SCHEDULING = "scheduling"
    FILES = "files"


@dataclass(frozen=True)
class CleanupContext:
    """Everything a cleanup operation may touch during one run."""

    session: AsyncSession
    now: datetime
    cutoff: datetime
    artifacts: ArtifactStore | None = None
    temp_dir: Path | None = None
    log_dir: Path | None = None


Cleanup = Callable[[CleanupContext], Awaitable[int]]


@dataclass(frozen=True)
class RetentionPolicy:
    """A named retention rule over one data category."""

    name: str
    retention_days: int
    category: DataCategory
    cleanup: Cleanup
    description: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "retention_days": self.retention_days,
            "category": str(self.category),
            "description": self.description,
        }


# ---------------------------------------------------------------------------
# Cleanup operations
# ---------------------------------------------------------------------------


async def _clean_deleted_users(ctx: CleanupContext) -> int:
    # Hosted bookings and billing rows keep the anonymized user alive
    referenced = or_(
        exists().where(Booking.host_id == User.id),
        exists().where(BillingRecord.user_id == User.id),
        exists().where(UsageRecord.user_id == User.id),
    )
    result = await ctx.session.execute(
        delete(User)
        .where(
            User.anonymized_at.is_not(None),
            User.anonymized_at < ctx.cutoff,
            ~referenced,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_email_verification_tokens(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        update(User)
        .where(
            User.email_verification_token.is_not(None),
            or_(
                User.email_verification_expires < ctx.cutoff,
                User.email_verification_expires < ctx.now,
            ),
        )
        .values(email_verification_token=None, email_verification_expires=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_password_reset_tokens(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        update(User)
        .where(
            User.password_reset_token.is_not(None),
            or_(
                User.password_reset_expires < ctx.cutoff,
                User.password_reset_expires < ctx.now,
            ),
        )
        .values(password_reset_token=None, password_reset_expires=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_jwt_blacklist(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        delete(RevokedToken)
        .where(or_(RevokedToken.expires_at < ctx.cutoff, RevokedToken.expires_at < ctx.now))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_session_data(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        delete(SessionRecord)
        .where(or_(SessionRecord.expires < ctx.cutoff, SessionRecord.expires < ctx.now))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_notification_logs(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        delete(Notification)
        .where(
            Notification.created_at < ctx.cutoff,
            Notification.status.in_(("sent", "failed", "cancelled")),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_gdpr_export_files(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        select(DataSubjectRequestRecord.id, DataSubjectRequestRecord.export_artifact_ref).where(
            DataSubjectRequestRecord.export_artifact_ref.is_not(None),
            or_(
                DataSubjectRequestRecord.artifact_expires_at < ctx.cutoff,
                DataSubjectRequestRecord.artifact_expires_at < ctx.now,
            ),
        )
    )
    expired = list(result.all())
    for request_id, key in expired:
        if ctx.artifacts is not None:
            await ctx.artifacts.delete(key)
        await ctx.session.execute(
            update(DataSubjectRequestRecord)
            .where(DataSubjectRequestRecord.id == request_id)
            .values(export_artifact_ref=None)
            .execution_options(synchronize_session=False)
        )
    return len(expired)


async def _clean_gdpr_completed_requests(ctx: CleanupContext) -> int:
    terminal = [str(s) for s in TERMINAL_STATUSES]
    result = await ctx.session.execute(
        delete(DataSubjectRequestRecord)
        .where(
            DataSubjectRequestRecord.status.in_(terminal),
            DataSubjectRequestRecord.completed_at < ctx.cutoff,
            # The artifact must be gone before its request row is
            DataSubjectRequestRecord.export_artifact_ref.is_(None),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_billing_history(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        delete(BillingRecord)
        .where(
            BillingRecord.created_at < ctx.cutoff,
            or_(
                BillingRecord.invoice_status.in_(("draft", "void")),
                BillingRecord.amount_total_cents == 0,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_usage_records(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        delete(UsageRecord)
        .where(UsageRecord.timestamp < ctx.cutoff, UsageRecord.reported_at.is_not(None))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_completed_bookings(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        delete(Booking)
        .where(Booking.status == str(BookingStatus.COMPLETED), Booking.end_time < ctx.cutoff)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _clean_cancelled_bookings(ctx: CleanupContext) -> int:
    result = await ctx.session.execute(
        delete(Booking)
        .where(Booking.status == str(BookingStatus.CANCELLED), Booking.updated_at < ctx.cutoff)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def _remove_files_older_than(directory: Path, cutoff: datetime, pattern: str) -> int:
    if not directory.is_dir():
        return 0
    threshold = cutoff.timestamp()
    removed = 0
    for path in directory.rglob(pattern):
        if path.is_file() and path.stat().st_mtime < threshold:
            path.unlink(missing_ok=True)
            removed += 1
    return removed


async def _clean_temp_files(ctx: CleanupContext) -> int:
    if ctx.temp_dir is None:
        return 0
    return await asyncio.to_thread(_remove_files_older_than, ctx.temp_dir, ctx.cutoff, "*")


async def _clean_log_files(ctx: CleanupContext) -> int:
    if ctx.log_dir is None:
        return 0
    # Rotated files only (app.log.1, app.log.2026-01-01, ...); the live log stays
    return await asyncio.to_thread(_remove_files_older_than, ctx.log_dir, ctx.cutoff, "*.log.*")


def default_policies() -> list[RetentionPolicy]:
    """The built-in policy table, in execution order."""
    return [
        RetentionPolicy("deleted_users", 30, DataCategory.ACCOUNT, _clean_deleted_users,
                        "Anonymized accounts with no remaining references"),
        RetentionPolicy("email_verification_tokens", 7, DataCategory.SECURITY,
                        _clean_email_verification_tokens, "Expired email verification tokens"),
        RetentionPolicy("password_reset_tokens", 1, DataCategory.SECURITY,
                        _clean_password_reset_tokens, "Expired password reset tokens"),
        RetentionPolicy("jwt_blacklist", 30, DataCategory.SECURITY, _clean_jwt_blacklist,
                        "Revocation entries for tokens that have expired"),
        RetentionPolicy("session_data", 30, DataCategory.SECURITY, _clean_session_data,
                        "Expired login sessions"),
        RetentionPolicy("notification_logs", 365, DataCategory.COMMUNICATIONS,
                        _clean_notification_logs, "Delivered, failed or cancelled notifications"),
        RetentionPolicy("gdpr_export_files", 30, DataCategory.COMPLIANCE,
                        _clean_gdpr_export_files, "Expired export artifacts"),
        RetentionPolicy("gdpr_completed_requests", 365, DataCategory.COMPLIANCE,
                        _clean_gdpr_completed_requests, "Terminal data subject requests"),
        RetentionPolicy("billing_history", 2555, DataCategory.BILLING, _clean_billing_history,
                        "Draft, void and zero-amount invoices"),
        RetentionPolicy("usage_records", 365, DataCategory.BILLING, _clean_usage_records,
                        "Usage already reported to the payment provider"),
        RetentionPolicy("completed_bookings", 1095, DataCategory.SCHEDULING,
                        _clean_completed_bookings, "Completed bookings, by end time"),
        RetentionPolicy("cancelled_bookings", 365, DataCategory.SCHEDULING,
                        _clean_cancelled_bookings, "Cancelled bookings, by last update"),
        RetentionPolicy("temp_files", 7, DataCategory.FILES, _clean_temp_files,
                        "Stale temporary files"),
        RetentionPolicy("log_files", 90, DataCategory.FILES, _clean_log_files,
                        "Rotated application log files"),
    ]


class RetentionPolicyRegistry:
    """Ordered, immutable set of retention policies resolved at startup.

    Usage:
        registry = RetentionPolicyRegistry.from_overrides({"notification_logs": 180})
        policy = registry.get("notification_logs")
    """

    def __init__(self, policies: list[RetentionPolicy] | None = None) -> None:
        policies = default_policies() if policies is None else list(policies)
        self._policies: dict[str, RetentionPolicy] = {}
        for policy in policies:
            if policy.name in self._policies:
                raise ValueError(f"Duplicate retention policy {policy.name!r}")
            if policy.retention_days < 0:
                raise ValueError(f"Negative retention window for {policy.name!r}")
            self._policies[policy.name] = policy

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, int] | None = None) -> RetentionPolicyRegistry:
        """Default policies with administrative window overrides applied.

        Raises:
            UnknownPolicy: an override names a policy that does not exist
        """
        registry = cls()
        for name, days in (overrides or {}).items():
            registry = registry.override(name, days)
        return registry

    def get(self, name: str) -> RetentionPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise UnknownPolicy(f"Unknown retention policy {name!r}") from None

    def override(self, name: str, retention_days: int) -> RetentionPolicyRegistry:
        """Return a new registry with one policy's window replaced."""
        if retention_days < 0:
            raise ValueError("retention_days must be >= 0")
        current = self.get(name)
        log.info(
            "retention.policy_overridden",
            policy=name,
            from_days=current.retention_days,
            to_days=retention_days,
        )
        return RetentionPolicyRegistry(
            [
                replace(p, retention_days=retention_days) if p.name == name else p
                for p in self._policies.values()
            ]
        )

    @property
    def names(self) -> list[str]:
        return list(self._policies)

    def __iter__(self) -> Iterator[RetentionPolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, name: object) -> bool:
        return name in self._policies

    def to_dict(self) -> dict[str, dict[str, object]]:
        return {p.name: p.to_dict() for p in self}


__all__ = [
    "CleanupContext",
    "DataCategory",
    "RetentionPolicy",
    "RetentionPolicyRegistry",
    "default_policies",
]
