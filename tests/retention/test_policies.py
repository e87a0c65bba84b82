"""Tests for the retention policy registry and each cleanup operation."""

import os
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import select

from lifecycle.compliance.errors import UnknownPolicy
from lifecycle.models import (
    BillingRecord,
    Booking,
    BookingStatus,
    DataSubjectRequestRecord,
    Notification,
    RevokedToken,
    SessionRecord,
    UsageRecord,
    User,
)
from lifecycle.retention.policies import (
    DataCategory,
    RetentionPolicy,
    RetentionPolicyRegistry,
    default_policies,
)
from tests.conftest import START, count_rows, create_user, load_user

EXPECTED_WINDOWS = {
    "deleted_users": 30,
    "email_verification_tokens": 7,
    "password_reset_tokens": 1,
    "jwt_blacklist": 30,
    "session_data": 30,
    "notification_logs": 365,
    "gdpr_export_files": 30,
    "gdpr_completed_requests": 365,
    "billing_history": 2555,
    "usage_records": 365,
    "completed_bookings": 1095,
    "cancelled_bookings": 365,
    "temp_files": 7,
    "log_files": 90,
}


async def _noop(ctx):
    return 0


class TestRegistry:
    """Test the policy table and administrative overrides."""

    def test_default_table(self):
        registry = RetentionPolicyRegistry()
        assert {p.name: p.retention_days for p in registry} == EXPECTED_WINDOWS
        assert registry.names == list(EXPECTED_WINDOWS)
        assert len(registry) == 14

    def test_override_returns_new_registry(self):
        registry = RetentionPolicyRegistry()
        changed = registry.override("notification_logs", 180)

        assert changed.get("notification_logs").retention_days == 180
        assert registry.get("notification_logs").retention_days == 365

    def test_from_overrides_validates_names(self):
        registry = RetentionPolicyRegistry.from_overrides({"session_data": 14})
        assert registry.get("session_data").retention_days == 14

        with pytest.raises(UnknownPolicy):
            RetentionPolicyRegistry.from_overrides({"audit_records": 30})

    def test_rejects_duplicates_and_negative_windows(self):
        policy = RetentionPolicy("x", 1, DataCategory.FILES, _noop)
        with pytest.raises(ValueError):
            RetentionPolicyRegistry([policy, policy])
        with pytest.raises(ValueError):
            RetentionPolicyRegistry([RetentionPolicy("y", -1, DataCategory.FILES, _noop)])

    def test_audit_records_have_no_policy(self):
        assert "audit_records" not in RetentionPolicyRegistry()
        assert all(p.category for p in default_policies())

    def test_to_dict(self):
        table = RetentionPolicyRegistry().to_dict()
        assert table["billing_history"] == {
            "name": "billing_history",
            "retention_days": 2555,
            "category": "billing",
            "description": "Draft, void and zero-amount invoices",
        }


class TestSecurityCleanups:
    @pytest.mark.asyncio
    async def test_session_data_removes_expired_only(self, service, subject, session_factory):
        result = await service.run_policy("session_data")

        assert result.cleaned_count == 1
        async with session_factory() as session:
            remaining = (await session.execute(select(SessionRecord.sid))).scalars().all()
        assert remaining == ["live-session"]

    @pytest.mark.asyncio
    async def test_password_reset_tokens_after_expiry(
        self, service, subject, clock, session_factory
    ):
        assert (await service.run_policy("password_reset_tokens")).cleaned_count == 0

        clock.advance(hours=2)
        assert (await service.run_policy("password_reset_tokens")).cleaned_count == 1
        user = await load_user(session_factory, subject.id)
        assert user.password_reset_token is None
        assert user.password_reset_expires is None

    @pytest.mark.asyncio
    async def test_email_verification_tokens(self, service, session_factory):
        await create_user(
            session_factory,
            email="new@example.com",
            email_verification_token="verify-me",
            email_verification_expires=START - timedelta(minutes=1),
        )
        await create_user(
            session_factory,
            email="fresh@example.com",
            email_verification_token="still-valid",
            email_verification_expires=START + timedelta(days=1),
        )

        assert (await service.run_policy("email_verification_tokens")).cleaned_count == 1

    @pytest.mark.asyncio
    async def test_jwt_blacklist(self, service, session_factory):
        async with session_factory() as session, session.begin():
            session.add_all(
                [
                    RevokedToken(jti="old", expires_at=START - timedelta(days=1), created_at=START),
                    RevokedToken(jti="live", expires_at=START + timedelta(days=1), created_at=START),
                ]
            )

        assert (await service.run_policy("jwt_blacklist")).cleaned_count == 1
        assert await count_rows(session_factory, RevokedToken) == 1


class TestDataCleanups:
    @pytest.mark.asyncio
    async def test_notification_logs_keep_queued(self, service, subject, session_factory):
        async with session_factory() as session, session.begin():
            for status in ("sent", "failed", "queued"):
                session.add(
                    Notification(
                        user_id=subject.id,
                        recipient=subject.email,
                        status=status,
                        created_at=START - timedelta(days=400),
                    )
                )

        assert (await service.run_policy("notification_logs")).cleaned_count == 2
        # The recent seeded notification and the old queued one
        assert await count_rows(session_factory, Notification) == 2

    @pytest.mark.asyncio
    async def test_billing_history_keeps_paid_invoices(self, service, subject, session_factory):
        old = START - timedelta(days=2600)
        async with session_factory() as session, session.begin():
            session.add_all(
                [
                    BillingRecord(user_id=subject.id, invoice_status="draft",
                                  amount_total_cents=500, created_at=old),
                    BillingRecord(user_id=subject.id, invoice_status="paid",
                                  amount_total_cents=0, created_at=old),
                    BillingRecord(user_id=subject.id, invoice_status="paid",
                                  amount_total_cents=900, created_at=old),
                ]
            )

        assert (await service.run_policy("billing_history")).cleaned_count == 2
        assert await count_rows(session_factory, BillingRecord) == 2

    @pytest.mark.asyncio
    async def test_usage_records_only_when_reported(self, service, subject, session_factory):
        old = START - timedelta(days=400)
        async with session_factory() as session, session.begin():
            session.add_all(
                [
                    UsageRecord(user_id=subject.id, timestamp=old, reported_at=old),
                    UsageRecord(user_id=subject.id, timestamp=old, reported_at=None),
                ]
            )

        assert (await service.run_policy("usage_records")).cleaned_count == 1

    @pytest.mark.asyncio
    async def test_booking_policies(self, service, subject, session_factory):
        async with session_factory() as session, session.begin():
            session.add_all(
                [
                    Booking(
                        host_id=subject.host_id,
                        status=BookingStatus.COMPLETED,
                        start_time=START - timedelta(days=1100),
                        end_time=START - timedelta(days=1100),
                        created_at=START - timedelta(days=1101),
                        updated_at=START - timedelta(days=1100),
                    ),
                    Booking(
                        host_id=subject.host_id,
                        status=BookingStatus.CANCELLED,
                        start_time=START - timedelta(days=10),
                        end_time=START - timedelta(days=10),
                        created_at=START - timedelta(days=400),
                        updated_at=START - timedelta(days=370),
                    ),
                ]
            )

        assert (await service.run_policy("completed_bookings")).cleaned_count == 1
        assert (await service.run_policy("cancelled_bookings")).cleaned_count == 1
        # Seeded bookings are recent and survive
        assert await count_rows(session_factory, Booking) == 3

    @pytest.mark.asyncio
    async def test_deleted_users_waits_for_references(self, service, subject, session_factory):
        orphan_id = await create_user(
            session_factory,
            email="deleted-orphan@anonymized.local",
            is_active=False,
            anonymized_at=START - timedelta(days=31),
        )
        async with session_factory() as session, session.begin():
            user = await session.get(User, subject.id)
            user.anonymized_at = START - timedelta(days=31)
            user.is_active = False

        assert (await service.run_policy("deleted_users")).cleaned_count == 1
        async with session_factory() as session:
            assert await session.get(User, orphan_id) is None
            # Still owns bookings and billing rows
            assert await session.get(User, subject.id) is not None


class TestComplianceCleanups:
    @pytest.mark.asyncio
    async def test_export_files_then_requests(self, service, subject, clock, settings):
        request = await service.create_request(subject.id, "export", {})
        done = await service.verify(request.verification_token)
        artifact = Path(settings.artifact_dir) / done.export_artifact_ref
        assert artifact.exists()

        # Request rows outlive their artifact
        clock.advance(days=31)
        assert (await service.run_policy("gdpr_export_files")).cleaned_count == 1
        assert not artifact.exists()
        assert (await service.registry.get(done.id)).export_artifact_ref is None
        assert (await service.run_policy("gdpr_completed_requests")).cleaned_count == 0

        clock.advance(days=365)
        assert (await service.run_policy("gdpr_completed_requests")).cleaned_count == 1

    @pytest.mark.asyncio
    async def test_open_requests_are_never_pruned(self, service, subject, clock, session_factory):
        await service.create_request(subject.id, "export", {})
        clock.advance(days=800)

        assert (await service.run_policy("gdpr_completed_requests")).cleaned_count == 0
        assert await count_rows(session_factory, DataSubjectRequestRecord) == 1


class TestFileCleanups:
    @staticmethod
    def _touch(path: Path, age: timedelta) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("x")
        stamp = (START - age).timestamp()
        os.utime(path, (stamp, stamp))

    @pytest.mark.asyncio
    async def test_temp_files(self, service, settings):
        tmp = Path(settings.temp_dir)
        self._touch(tmp / "upload-1.bin", timedelta(days=8))
        self._touch(tmp / "nested" / "upload-2.bin", timedelta(days=9))
        self._touch(tmp / "upload-3.bin", timedelta(days=1))

        assert (await service.run_policy("temp_files")).cleaned_count == 2
        assert (tmp / "upload-3.bin").exists()

    @pytest.mark.asyncio
    async def test_log_files_keep_live_log(self, service, settings):
        logs = Path(settings.log_dir)
        self._touch(logs / "app.log", timedelta(days=200))
        self._touch(logs / "app.log.1", timedelta(days=100))
        self._touch(logs / "app.log.2", timedelta(days=10))

        assert (await service.run_policy("log_files")).cleaned_count == 1
        assert (logs / "app.log").exists()
        assert (logs / "app.log.2").exists()

    @pytest.mark.asyncio
    async def test_missing_directories_clean_nothing(self, service):
        assert (await service.run_policy("temp_files")).cleaned_count == 0
        assert (await service.run_policy("log_files")).cleaned_count == 0
