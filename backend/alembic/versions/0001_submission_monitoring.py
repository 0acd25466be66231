"""Submission delivery and monitoring tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_submission_monitoring'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create submissions, error_logs, notification_rules and notification_events."""

    op.create_table(
        'submissions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('application_id', sa.Uuid(), nullable=False),
        sa.Column('university_id', sa.Uuid(), nullable=False),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=False),
        sa.Column('submitted_at', sa.DateTime()),
        sa.Column('confirmed_at', sa.DateTime()),
        sa.Column('last_error', sa.String(2000)),
        sa.Column('external_reference', sa.String(255)),

        # In-flight bookkeeping
        sa.Column('claim_token', sa.Uuid()),
        sa.Column('claimed_at', sa.DateTime()),

        # Timestamps
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),

        sa.UniqueConstraint(
            'application_id', 'university_id',
            name='uq_submissions_application_university',
        ),
        sa.CheckConstraint('priority BETWEEN 1 AND 10', name='ck_submissions_priority'),
    )
    op.create_index('ix_submissions_application_id', 'submissions', ['application_id'])
    op.create_index('ix_submissions_university_id', 'submissions', ['university_id'])
    op.create_index('ix_submissions_status', 'submissions', ['status'])
    op.create_index('ix_submissions_claim_token', 'submissions', ['claim_token'])
    op.create_index('ix_submissions_updated_at', 'submissions', ['updated_at'])

    # Dequeue order
    op.create_index(
        'ix_submissions_due',
        'submissions',
        ['status', 'priority', 'next_attempt_at'],
    )

    op.create_table(
        'error_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('level', sa.String(10), nullable=False),
        sa.Column('category', sa.String(20), nullable=False),
        sa.Column('message', sa.String(2000), nullable=False),
        sa.Column('context', postgresql.JSONB()),
        sa.Column('submission_id', sa.Uuid()),
        sa.Column('university_id', sa.Uuid()),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('resolved_by', sa.String(200)),
        sa.Column('resolved_at', sa.DateTime()),
        sa.Column('resolution', sa.String(2000)),
    )
    op.create_index('ix_error_logs_level', 'error_logs', ['level'])
    op.create_index('ix_error_logs_category', 'error_logs', ['category'])
    op.create_index('ix_error_logs_submission_id', 'error_logs', ['submission_id'])
    op.create_index('ix_error_logs_university_id', 'error_logs', ['university_id'])
    op.create_index('ix_error_logs_occurred_at', 'error_logs', ['occurred_at'])
    op.create_index('ix_error_logs_resolved', 'error_logs', ['resolved'])

    op.create_table(
        'notification_rules',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('conditions', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('actions', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('cooldown_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('last_triggered_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_notification_rules_type', 'notification_rules', ['type'])
    op.create_index('ix_notification_rules_enabled', 'notification_rules', ['enabled'])
    op.create_index('ix_notification_rules_updated_at', 'notification_rules', ['updated_at'])

    op.create_table(
        'notification_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'rule_id', sa.Uuid(),
            sa.ForeignKey('notification_rules.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('rule_type', sa.String(30), nullable=False),
        sa.Column('severity', sa.String(10), nullable=False),
        sa.Column('title', sa.String(300), nullable=False),
        sa.Column('message', sa.String(2000), nullable=False),
        sa.Column('data', postgresql.JSONB()),
        sa.Column('triggered_at', sa.DateTime(), nullable=False),
        sa.Column('acknowledged', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('acknowledged_by', sa.String(200)),
        sa.Column('acknowledged_at', sa.DateTime()),
    )
    op.create_index('ix_notification_events_rule_id', 'notification_events', ['rule_id'])
    op.create_index('ix_notification_events_severity', 'notification_events', ['severity'])
    op.create_index('ix_notification_events_triggered_at', 'notification_events', ['triggered_at'])
    op.create_index('ix_notification_events_acknowledged', 'notification_events', ['acknowledged'])


def downgrade() -> None:
    """Drop monitoring tables."""
    op.drop_table('notification_events')
    op.drop_table('notification_rules')
    op.drop_table('error_logs')
    op.drop_table('submissions')
