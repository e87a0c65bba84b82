"""Tests for the anonymization executor."""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from lifecycle.compliance.anonymization import (
    ANONYMIZED_NAME,
    AnonymizationExecutor,
    anonymized_email,
)
from lifecycle.compliance.errors import AnonymizationFailed
from lifecycle.models import (
    BillingRecord,
    Booking,
    CalendarIntegration,
    RevokedToken,
    SessionRecord,
    UsageRecord,
)
from tests.conftest import START, audit_actions, count_rows, load_user


@pytest.fixture
def executor(clock):
    return AnonymizationExecutor(clock=clock)


async def anonymize(session_factory, executor, subject_id):
    async with session_factory() as session, session.begin():
        return await executor.anonymize(session, subject_id, request_id=uuid.uuid4())


class TestAnonymize:
    """Test what anonymization scrubs and what it keeps."""

    @pytest.mark.asyncio
    async def test_identity_and_credentials_scrubbed(self, session_factory, executor, subject):
        result = await anonymize(session_factory, executor, subject.id)

        assert result.already_anonymized is False
        user = await load_user(session_factory, subject.id)
        assert user.email == f"deleted-{subject.id}@anonymized.local"
        assert user.display_name == ANONYMIZED_NAME
        assert user.phone is None
        assert user.password_hash is None
        assert user.password_reset_token is None
        assert user.email_verified is False
        assert user.is_active is False
        assert user.anonymized_at == START

    @pytest.mark.asyncio
    async def test_third_party_links_severed(self, session_factory, executor, subject):
        result = await anonymize(session_factory, executor, subject.id)

        user = await load_user(session_factory, subject.id)
        assert user.billing_customer_ref is None
        assert user.billing_subscription_ref is None
        assert user.marketing_consent is False
        assert user.analytics_consent is False
        assert result.integrations_removed == 1
        assert await count_rows(session_factory, CalendarIntegration) == 0

    @pytest.mark.asyncio
    async def test_sessions_revoked_until_expiry(self, session_factory, executor, subject):
        result = await anonymize(session_factory, executor, subject.id)

        assert result.sessions_revoked == 2
        assert await count_rows(session_factory, SessionRecord) == 0
        async with session_factory() as session:
            revoked = (await session.execute(select(RevokedToken))).scalars().all()
        # Only the live session needs a revocation entry
        assert [r.jti for r in revoked] == ["session:live-session"]
        assert revoked[0].user_id == subject.id

    @pytest.mark.asyncio
    async def test_history_kept_attendance_scrubbed(self, session_factory, executor, subject):
        result = await anonymize(session_factory, executor, subject.id)

        assert result.bookings_scrubbed == 1
        async with session_factory() as session:
            attended = await session.get(Booking, subject.attended_booking_id)
            hosted = (
                await session.execute(
                    select(func.count()).select_from(Booking).where(Booking.host_id == subject.id)
                )
            ).scalar_one()
        assert attended.attendee_email == anonymized_email(subject.id)
        assert attended.attendee_name == ANONYMIZED_NAME
        assert attended.attendee_phone is None
        assert hosted == 2
        assert await count_rows(session_factory, BillingRecord) == 1
        assert await count_rows(session_factory, UsageRecord) == 2

    @pytest.mark.asyncio
    async def test_second_call_is_a_no_op(self, session_factory, executor, subject, clock):
        await anonymize(session_factory, executor, subject.id)
        clock.advance(days=1)

        again = await anonymize(session_factory, executor, subject.id)

        assert again.already_anonymized is True
        user = await load_user(session_factory, subject.id)
        assert user.anonymized_at == START
        actions = await audit_actions(session_factory, subject_id=subject.id)
        assert actions.count("subject.anonymized") == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_subject_untouched(self, session_factory, executor, subject):
        failing = AsyncMock(side_effect=RuntimeError("provider unreachable"))

        with (
            patch.object(executor, "_sever_integrations", failing),
            pytest.raises(AnonymizationFailed),
        ):
            await anonymize(session_factory, executor, subject.id)
        failing.assert_awaited_once()

        user = await load_user(session_factory, subject.id)
        assert user.email == subject.email
        assert user.password_hash is not None
        assert user.anonymized_at is None
        assert await count_rows(session_factory, SessionRecord) == 2
        assert await count_rows(session_factory, RevokedToken) == 0
        assert "subject.anonymized" not in await audit_actions(
            session_factory, subject_id=subject.id
        )

    @pytest.mark.asyncio
    async def test_unknown_subject_fails(self, session_factory, executor):
        with pytest.raises(AnonymizationFailed):
            await anonymize(session_factory, executor, uuid.uuid4())
