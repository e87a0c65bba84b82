"""
Shared test fixtures for pytest.

Every test runs against a real SQLite database (aiosqlite) created in the
test's tmp_path, so conditional UPDATEs, foreign keys and transactions
behave as they do in production.

- clock: FrozenClock, advanced explicitly by tests
- settings: Test configuration pointing at tmp_path
- engine / session_factory: Fresh schema per test
- subject: A seeded data subject with bookings, billing, sessions, integrations
- service: DataLifecycleService wired to all of the above
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from pydantic import SecretStr
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lifecycle.compliance.service import DataLifecycleService
from lifecycle.config import Environment, Settings, get_settings
from lifecycle.database import Base, build_engine, build_session_factory
from lifecycle.models import (
    AuditRecord,
    BillingRecord,
    Booking,
    BookingStatus,
    CalendarIntegration,
    Notification,
    SessionRecord,
    UsageRecord,
    User,
    UserSettings,
)

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Clock
# ------------------------------------------------------------------ #


class FrozenClock:
    """Deterministic clock; time only moves when a test advances it."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ------------------------------------------------------------------ #
# Settings and database
# ------------------------------------------------------------------ #


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        environment=Environment.TEST,
        secret_key=SecretStr("unit-test-signing-key"),
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'lifecycle.db'}",
        artifact_dir=str(tmp_path / "exports"),
        temp_dir=str(tmp_path / "tmp"),
        log_dir=str(tmp_path / "logs"),
        deletion_grace_period_days=30,
        verification_window_hours=72,
        export_artifact_ttl_days=30,
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(settings.database_url, null_pool=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def service(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: FrozenClock,
) -> DataLifecycleService:
    return DataLifecycleService(session_factory, settings, clock=clock)


# ------------------------------------------------------------------ #
# Seed data
# ------------------------------------------------------------------ #


@dataclass
class SeededSubject:
    id: uuid.UUID
    email: str
    host_id: uuid.UUID
    attended_booking_id: uuid.UUID


async def create_user(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    email: str,
    created_at: datetime = START,
    **fields: object,
) -> uuid.UUID:
    user_id = uuid.uuid4()
    async with session_factory() as session, session.begin():
        session.add(
            User(
                id=user_id,
                email=email,
                created_at=created_at,
                updated_at=created_at,
                **fields,
            )
        )
    return user_id


@pytest.fixture
async def subject(
    session_factory: async_sessionmaker[AsyncSession],
) -> SeededSubject:
    """A subject who hosts meetings, attended one elsewhere, and pays for the service."""
    email = "ada@example.com"
    host_id = await create_user(session_factory, email="host@example.com", display_name="Host")
    subject_id = await create_user(
        session_factory,
        email=email,
        display_name="Ada Lovelace",
        phone="+44 20 0000 0000",
        password_hash="$argon2id$v=19$m=65536,t=3,p=4$abc",
        email_verified=True,
        password_reset_token="reset-token",
        password_reset_expires=START + timedelta(hours=1),
        marketing_consent=True,
        analytics_consent=True,
        billing_customer_ref="cus_123",
        billing_subscription_ref="sub_456",
    )
    attended_id = uuid.uuid4()

    async with session_factory() as session, session.begin():
        session.add(UserSettings(user_id=subject_id, timezone="Europe/London", updated_at=START))
        session.add_all(
            [
                Booking(
                    host_id=subject_id,
                    title="Intro call",
                    attendee_name="Grace",
                    attendee_email="grace@example.com",
                    status=BookingStatus.COMPLETED,
                    start_time=START - timedelta(days=10),
                    end_time=START - timedelta(days=10) + timedelta(minutes=30),
                    created_at=START - timedelta(days=11),
                    updated_at=START - timedelta(days=10),
                ),
                Booking(
                    host_id=subject_id,
                    title="Follow-up",
                    attendee_name="Grace",
                    attendee_email="grace@example.com",
                    status=BookingStatus.CONFIRMED,
                    start_time=START + timedelta(days=5),
                    end_time=START + timedelta(days=5, minutes=30),
                    created_at=START - timedelta(days=1),
                    updated_at=START - timedelta(days=1),
                ),
                Booking(
                    id=attended_id,
                    host_id=host_id,
                    title="Consultation",
                    attendee_name="Ada Lovelace",
                    attendee_email=email,
                    attendee_phone="+44 20 0000 0000",
                    status=BookingStatus.CONFIRMED,
                    start_time=START + timedelta(days=2),
                    end_time=START + timedelta(days=2, minutes=45),
                    created_at=START - timedelta(days=3),
                    updated_at=START - timedelta(days=3),
                ),
            ]
        )
        session.add(
            Notification(
                user_id=subject_id,
                channel="email",
                recipient=email,
                subject="Your booking is confirmed",
                status="sent",
                sent_at=START - timedelta(days=1),
                created_at=START - timedelta(days=1),
            )
        )
        session.add(
            BillingRecord(
                user_id=subject_id,
                invoice_ref="in_001",
                invoice_status="paid",
                amount_total_cents=1200,
                currency="usd",
                created_at=START - timedelta(days=20),
            )
        )
        session.add_all(
            [
                UsageRecord(user_id=subject_id, metric="bookings", quantity=2, timestamp=START),
                UsageRecord(user_id=subject_id, metric="bookings", quantity=1, timestamp=START),
            ]
        )
        session.add_all(
            [
                SessionRecord(
                    sid="live-session",
                    user_id=subject_id,
                    data="{}",
                    expires=START + timedelta(days=7),
                    created_at=START,
                ),
                SessionRecord(
                    sid="stale-session",
                    user_id=subject_id,
                    data="{}",
                    expires=START - timedelta(days=1),
                    created_at=START - timedelta(days=8),
                ),
            ]
        )
        session.add(
            CalendarIntegration(
                user_id=subject_id,
                provider="google",
                external_account=email,
                access_token="ya29.token",
                refresh_token="1//refresh",
                created_at=START,
            )
        )

    return SeededSubject(
        id=subject_id, email=email, host_id=host_id, attended_booking_id=attended_id
    )


# ------------------------------------------------------------------ #
# Query helpers
# ------------------------------------------------------------------ #


async def audit_actions(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    subject_id: uuid.UUID | None = None,
    reference: str | uuid.UUID | None = None,
) -> list[str]:
    """Audit actions recorded so far (order not guaranteed under a frozen clock)."""
    stmt = select(AuditRecord.action).order_by(AuditRecord.created_at)
    if subject_id is not None:
        stmt = stmt.where(AuditRecord.subject_id == subject_id)
    if reference is not None:
        stmt = stmt.where(AuditRecord.reference == str(reference))
    async with session_factory() as session:
        return list((await session.execute(stmt)).scalars().all())


async def count_rows(session_factory: async_sessionmaker[AsyncSession], model: type) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def load_user(session_factory: async_sessionmaker[AsyncSession], user_id: uuid.UUID) -> User:
    async with session_factory() as session:
        user = await session.get(User, user_id)
        assert user is not None
        return user
