"""Baseline migration - campaigns, recipients and delivery tables

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19

Creates the tables the dispatch engine reads and writes.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create dispatch tables."""

    # ==========================================================================
    # Campaign content
    # ==========================================================================
    op.create_table(
        'email_templates',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('subject', sa.String(500), nullable=False),
        sa.Column('html_content', sa.Text(), nullable=False),
        sa.Column('is_rich_text', sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp('created_at', nullable=False),
    )
    op.create_index('ix_email_templates_user_id', 'email_templates', ['user_id'])

    op.create_table(
        'sender_profiles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('nickname', sa.String(200)),
        sa.Column('smtp_host', sa.String(255)),
        sa.Column('smtp_port', sa.Integer(), nullable=False, server_default='587'),
        sa.Column('smtp_username', sa.String(320)),
        sa.Column('smtp_password', sa.String(500)),
        sa.Column('use_tls', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp('created_at', nullable=False),
    )
    op.create_index('ix_sender_profiles_user_id', 'sender_profiles', ['user_id'])

    # ==========================================================================
    # Recipient sources
    # ==========================================================================
    op.create_table(
        'recipient_lists',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        _timestamp('created_at', nullable=False),
    )
    op.create_index('ix_recipient_lists_user_id', 'recipient_lists', ['user_id'])

    op.create_table(
        'recipients',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column(
            'list_id',
            sa.String(36),
            sa.ForeignKey('recipient_lists.id', ondelete='CASCADE'),
        ),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('name', sa.String(200)),
        sa.Column('group_name', sa.String(100)),
        sa.Column('fields', sa.JSON(), nullable=False),
        _timestamp('created_at', nullable=False),
    )
    op.create_index('idx_recipients_list_order', 'recipients', ['list_id', 'created_at', 'id'])
    op.create_index('idx_recipients_user_group', 'recipients', ['user_id', 'group_name'])

    op.create_table(
        'recipient_datasets',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('email_column', sa.String(100), nullable=False, server_default='email'),
        sa.Column('name_column', sa.String(100), server_default='name'),
        sa.Column('rows', sa.JSON(), nullable=False),
        _timestamp('created_at', nullable=False),
    )
    op.create_index('ix_recipient_datasets_user_id', 'recipient_datasets', ['user_id'])

    # ==========================================================================
    # Campaigns
    # ==========================================================================
    op.create_table(
        'campaigns',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column(
            'template_id',
            sa.String(36),
            sa.ForeignKey('email_templates.id', ondelete='SET NULL'),
        ),
        sa.Column(
            'sender_profile_id',
            sa.String(36),
            sa.ForeignKey('sender_profiles.id', ondelete='SET NULL'),
        ),
        sa.Column('recipient_source', sa.String(20), nullable=False, server_default='list'),
        sa.Column(
            'recipient_list_id',
            sa.String(36),
            sa.ForeignKey('recipient_lists.id', ondelete='SET NULL'),
        ),
        sa.Column(
            'dataset_id',
            sa.String(36),
            sa.ForeignKey('recipient_datasets.id', ondelete='SET NULL'),
        ),
        sa.Column('group_selection_mode', sa.String(20), nullable=False, server_default='all'),
        sa.Column('selected_groups', sa.JSON(), nullable=False),
        sa.Column('total_recipients', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sent_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        _timestamp('last_sent_at'),
        sa.Column('is_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('recovery_token', sa.String(64)),
        _timestamp('recovery_expires_at'),
        sa.Column('send_interval_seconds', sa.Float(), nullable=False, server_default='60'),
        sa.Column('enable_random_interval', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('random_interval_min', sa.Float()),
        sa.Column('random_interval_max', sa.Float()),
        _timestamp('scheduled_at'),
        _timestamp('started_at'),
        _timestamp('completed_at'),
        _timestamp('created_at', nullable=False),
        _timestamp('updated_at', nullable=False),
    )
    op.create_index('ix_campaigns_user_id', 'campaigns', ['user_id'])
    op.create_index('idx_campaigns_status', 'campaigns', ['status'])
    op.create_index('idx_campaigns_status_scheduled', 'campaigns', ['status', 'scheduled_at'])

    # ==========================================================================
    # Delivery records and logs
    # ==========================================================================
    op.create_table(
        'sent_emails',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column(
            'campaign_id',
            sa.String(36),
            sa.ForeignKey('campaigns.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('user_id', sa.String(36)),
        sa.Column('sender_profile_id', sa.String(36)),
        sa.Column('recipient_email', sa.String(320), nullable=False),
        sa.Column('recipient_name', sa.String(200)),
        sa.Column('subject', sa.String(500)),
        sa.Column('body', sa.Text()),
        sa.Column('status', sa.String(20), nullable=False, server_default='processing'),
        sa.Column('message_id', sa.String(255)),
        sa.Column('error_message', sa.String(500)),
        _timestamp('sent_at'),
        _timestamp('created_at', nullable=False),
        sa.UniqueConstraint(
            'campaign_id', 'recipient_email', name='uq_sent_email_campaign_recipient'
        ),
    )
    op.create_index('idx_sent_emails_status_created', 'sent_emails', ['status', 'created_at'])
    op.create_index('idx_sent_emails_campaign_sent', 'sent_emails', ['campaign_id', 'sent_at'])

    op.create_table(
        'campaign_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'campaign_id',
            sa.String(36),
            sa.ForeignKey('campaigns.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', sa.JSON()),
        _timestamp('created_at', nullable=False),
    )
    op.create_index(
        'idx_campaign_logs_campaign_created', 'campaign_logs', ['campaign_id', 'created_at']
    )


def downgrade() -> None:
    """Drop dispatch tables."""
    op.drop_table('campaign_logs')
    op.drop_table('sent_emails')
    op.drop_table('campaigns')
    op.drop_table('recipient_datasets')
    op.drop_table('recipients')
    op.drop_table('recipient_lists')
    op.drop_table('sender_profiles')
    op.drop_table('email_templates')
