"""Create data lifecycle schema: subjects, their data, requests and audit trail.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid() -> sa.Uuid:
    return sa.Uuid()


def _json() -> sa.JSON:
    # JSONB on PostgreSQL, plain JSON on SQLite
    return sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _ts() -> sa.DateTime:
    return sa.DateTime(timezone=True)


def upgrade() -> None:
    """Create all data lifecycle tables."""
    op.create_table(
        'users',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(32), nullable=True),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('email_verified', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('email_verification_token', sa.String(128), nullable=True),
        sa.Column('email_verification_expires', _ts(), nullable=True),
        sa.Column('password_reset_token', sa.String(128), nullable=True),
        sa.Column('password_reset_expires', _ts(), nullable=True),
        sa.Column('data_processing_consent', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('marketing_consent', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('analytics_consent', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('consent_updated_at', _ts(), nullable=True),
        sa.Column('processing_restricted', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('restricted_at', _ts(), nullable=True),
        sa.Column('billing_customer_ref', sa.String(255), nullable=True,
                  comment='Payment provider customer id'),
        sa.Column('billing_subscription_ref', sa.String(255), nullable=True,
                  comment='Payment provider subscription id'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('anonymized_at', _ts(), nullable=True),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', _ts(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_anonymized_at', 'users', ['anonymized_at'])

    op.create_table(
        'user_settings',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('user_id', _uuid(), nullable=False, unique=True),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='UTC'),
        sa.Column('language', sa.String(16), nullable=False, server_default='en'),
        sa.Column('notify_by_email', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('notify_by_sms', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('meeting_duration_minutes', sa.Integer, nullable=False, server_default='30'),
        sa.Column('updated_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'bookings',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('host_id', _uuid(), nullable=False),
        sa.Column('title', sa.String(255), nullable=False, server_default='Meeting'),
        sa.Column('attendee_name', sa.String(255), nullable=True),
        sa.Column('attendee_email', sa.String(320), nullable=True),
        sa.Column('attendee_phone', sa.String(32), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='confirmed',
                  comment='confirmed | completed | cancelled'),
        sa.Column('start_time', _ts(), nullable=False),
        sa.Column('end_time', _ts(), nullable=False),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['host_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_bookings_host_id', 'bookings', ['host_id'])
    op.create_index('ix_bookings_attendee_email', 'bookings', ['attendee_email'])
    op.create_index('ix_bookings_status_end_time', 'bookings', ['status', 'end_time'])

    op.create_table(
        'notifications',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('user_id', _uuid(), nullable=True),
        sa.Column('channel', sa.String(16), nullable=False, server_default='email',
                  comment='email | sms'),
        sa.Column('recipient', sa.String(320), nullable=False),
        sa.Column('subject', sa.String(255), nullable=True),
        sa.Column('body', sa.Text, nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='sent',
                  comment='queued | sent | failed'),
        sa.Column('sent_at', _ts(), nullable=True),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])

    op.create_table(
        'billing_records',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('user_id', _uuid(), nullable=False),
        sa.Column('invoice_ref', sa.String(255), nullable=True,
                  comment='Payment provider invoice id'),
        sa.Column('invoice_status', sa.String(32), nullable=False, server_default='paid',
                  comment='draft | open | paid | void | uncollectible'),
        sa.Column('amount_total_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('period_start', _ts(), nullable=True),
        sa.Column('period_end', _ts(), nullable=True),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_billing_records_user_id', 'billing_records', ['user_id'])
    op.create_index(
        'ix_billing_records_status_created', 'billing_records', ['invoice_status', 'created_at']
    )

    op.create_table(
        'usage_records',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('user_id', _uuid(), nullable=False),
        sa.Column('metric', sa.String(64), nullable=False, server_default='bookings'),
        sa.Column('quantity', sa.Integer, nullable=False, server_default='1'),
        sa.Column('timestamp', _ts(), nullable=False, server_default=sa.func.now()),
        sa.Column('reported_at', _ts(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_usage_records_user_id', 'usage_records', ['user_id'])
    op.create_index('ix_usage_records_timestamp', 'usage_records', ['timestamp'])

    op.create_table(
        'calendar_integrations',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('user_id', _uuid(), nullable=False),
        sa.Column('provider', sa.String(32), nullable=False, comment='google | microsoft'),
        sa.Column('external_account', sa.String(320), nullable=True),
        sa.Column('access_token', sa.Text, nullable=True),
        sa.Column('refresh_token', sa.Text, nullable=True),
        sa.Column('token_expires_at', _ts(), nullable=True),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_calendar_integrations_user_id', 'calendar_integrations', ['user_id'])

    op.create_table(
        'sessions',
        sa.Column('sid', sa.String(64), primary_key=True),
        sa.Column('user_id', _uuid(), nullable=True),
        sa.Column('data', sa.Text, nullable=True),
        sa.Column('expires', _ts(), nullable=False),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_sessions_user_id', 'sessions', ['user_id'])
    op.create_index('ix_sessions_expires', 'sessions', ['expires'])

    op.create_table(
        'revoked_tokens',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('jti', sa.String(128), nullable=False, unique=True),
        sa.Column('user_id', _uuid(), nullable=True),
        sa.Column('reason', sa.String(64), nullable=True),
        sa.Column('expires_at', _ts(), nullable=False),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_revoked_tokens_user_id', 'revoked_tokens', ['user_id'])
    op.create_index('ix_revoked_tokens_expires_at', 'revoked_tokens', ['expires_at'])

    # No FK from requests or audit rows to users: both outlive the subject row
    op.create_table(
        'data_subject_requests',
        sa.Column('id', _uuid(), primary_key=True, comment='Request primary key'),
        sa.Column('subject_id', _uuid(), nullable=False, comment='Id of the data subject'),
        sa.Column('request_type', sa.String(32), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('verification_token', sa.String(128), nullable=True, unique=True),
        sa.Column('requested_at', _ts(), nullable=False, server_default=sa.func.now()),
        sa.Column('verified_at', _ts(), nullable=True),
        sa.Column('completed_at', _ts(), nullable=True),
        sa.Column('deletion_scheduled_for', _ts(), nullable=True),
        sa.Column('export_artifact_ref', sa.String(512), nullable=True),
        sa.Column('artifact_expires_at', _ts(), nullable=True),
        sa.Column('metadata', _json(), nullable=False, server_default='{}'),
        sa.Column('outcome', _json(), nullable=True),
    )
    op.create_index('ix_data_subject_requests_subject_id', 'data_subject_requests', ['subject_id'])
    op.create_index('ix_data_subject_requests_status', 'data_subject_requests', ['status'])
    op.create_index(
        'ix_data_subject_requests_deletion_scheduled_for',
        'data_subject_requests',
        ['deletion_scheduled_for'],
    )
    op.create_index(
        'ix_dsr_type_status_scheduled',
        'data_subject_requests',
        ['request_type', 'status', 'deletion_scheduled_for'],
    )

    op.create_table(
        'audit_records',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('subject_id', _uuid(), nullable=True),
        sa.Column('action', sa.String(128), nullable=False),
        sa.Column('reference', sa.String(128), nullable=True),
        sa.Column('metadata', _json(), nullable=False, server_default='{}'),
        sa.Column('created_at', _ts(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_records_subject_id', 'audit_records', ['subject_id'])
    op.create_index('ix_audit_records_action', 'audit_records', ['action'])
    op.create_index('ix_audit_records_reference', 'audit_records', ['reference'])
    op.create_index('ix_audit_records_created_at', 'audit_records', ['created_at'])
    op.create_index('ix_audit_records_action_subject', 'audit_records', ['action', 'subject_id'])


def downgrade() -> None:
    """Drop all data lifecycle tables."""
    for table in (
        'audit_records',
        'data_subject_requests',
        'revoked_tokens',
        'sessions',
        'calendar_integrations',
        'usage_records',
        'billing_records',
        'notifications',
        'bookings',
        'user_settings',
        'users',
    ):
        op.drop_table(table)
