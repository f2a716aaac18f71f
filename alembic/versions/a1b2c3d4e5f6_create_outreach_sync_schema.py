"""create_outreach_sync_schema

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 09:00:00.000000

Creates the outreach sync schema:
- data_sources (checkpoint + lease), sync_progress, sync_continuations
- companies, contacts, email_accounts
- campaigns, sequence_steps, campaign_variants
- email_activities, message_threads
- daily_metrics, enrollment_snapshots, platform_stats_snapshots
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1b2c3d4e5f6'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all outreach sync tables."""
    op.create_table(
        'data_sources',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('engagement_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('source_type', sa.String(), nullable=False),
        sa.Column('api_key', sa.Text(), nullable=True),
        sa.Column('additional_config', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('last_sync_status', sa.String(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('last_sync_records_processed', sa.Integer(), nullable=True),
        sa.Column('total_syncs', sa.Integer(), nullable=True),
        sa.Column('failed_syncs', sa.Integer(), nullable=True),
        sa.Column('checkpoint', sa.JSON(), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_until', sa.DateTime(), nullable=True),
        sa.Column('claim_token', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_data_sources_engagement_id', 'data_sources', ['engagement_id'])
    op.create_index('ix_data_sources_last_sync_status', 'data_sources', ['last_sync_status'])

    op.create_table(
        'sync_progress',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('data_source_id', sa.Integer(), sa.ForeignKey('data_sources.id', ondelete='CASCADE'), nullable=False),
        sa.Column('run_id', sa.String(), nullable=False, unique=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('current_phase', sa.String(), nullable=True),
        sa.Column('batch_number', sa.Integer(), nullable=True),
        sa.Column('total_units', sa.Integer(), nullable=True),
        sa.Column('processed_units', sa.Integer(), nullable=True),
        sa.Column('current_unit', sa.String(), nullable=True),
        sa.Column('counters', sa.JSON(), nullable=True),
        sa.Column('errors', sa.JSON(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_sync_progress_source_status', 'sync_progress', ['data_source_id', 'status'])

    op.create_table(
        'sync_continuations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('data_source_id', sa.Integer(), sa.ForeignKey('data_sources.id', ondelete='CASCADE'), nullable=False),
        sa.Column('run_id', sa.String(), nullable=True),
        sa.Column('batch_number', sa.Integer(), nullable=True),
        sa.Column('phase', sa.String(), nullable=True),
        sa.Column('lease_token', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('due_at', sa.DateTime(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_sync_continuations_status_due', 'sync_continuations', ['status', 'due_at'])

    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('engagement_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('name_normalized', sa.String(), nullable=True),
        sa.Column('domain', sa.String(), nullable=True),
        sa.Column('industry', sa.String(), nullable=True),
        sa.Column('location', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('engagement_id', 'domain', name='uq_company_engagement_domain'),
    )
    op.create_index('ix_company_engagement_name', 'companies', ['engagement_id', 'name_normalized'])
    op.create_index(
        'uq_company_engagement_name_no_domain', 'companies', ['engagement_id', 'name_normalized'],
        unique=True,
        sqlite_where=sa.text('domain IS NULL'),
        postgresql_where=sa.text('domain IS NULL'),
    )

    op.create_table(
        'contacts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('engagement_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id', ondelete='SET NULL'), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('linkedin_url', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('engagement_id', 'email', name='uq_contact_engagement_email'),
    )

    op.create_table(
        'email_accounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('data_source_id', sa.Integer(), sa.ForeignKey('data_sources.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('email_address', sa.String(), nullable=True),
        sa.Column('sender_name', sa.String(), nullable=True),
        sa.Column('daily_limit', sa.Integer(), nullable=True),
        sa.Column('warmup_enabled', sa.Boolean(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('data_source_id', 'external_id', name='uq_email_account_source_external'),
    )

    op.create_table(
        'campaigns',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('engagement_id', sa.String(), nullable=False),
        sa.Column('data_source_id', sa.Integer(), sa.ForeignKey('data_sources.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('platform_created_at', sa.DateTime(), nullable=True),
        sa.Column('total_sent', sa.Integer(), nullable=True),
        sa.Column('total_opened', sa.Integer(), nullable=True),
        sa.Column('total_clicked', sa.Integer(), nullable=True),
        sa.Column('total_replied', sa.Integer(), nullable=True),
        sa.Column('total_bounced', sa.Integer(), nullable=True),
        sa.Column('positive_replies', sa.Integer(), nullable=True),
        sa.Column('open_rate', sa.Float(), nullable=True),
        sa.Column('click_rate', sa.Float(), nullable=True),
        sa.Column('reply_rate', sa.Float(), nullable=True),
        sa.Column('bounce_rate', sa.Float(), nullable=True),
        sa.Column('positive_reply_rate', sa.Float(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('engagement_id', 'data_source_id', 'external_id', name='uq_campaign_natural_key'),
    )
    op.create_index('ix_campaigns_data_source_id', 'campaigns', ['data_source_id'])

    op.create_table(
        'sequence_steps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('step_type', sa.String(), nullable=True),
        sa.Column('delay_days', sa.Integer(), nullable=True),
        sa.Column('subject', sa.String(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('campaign_id', 'step_number', name='uq_sequence_step'),
    )

    op.create_table(
        'campaign_variants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('variant_label', sa.String(), nullable=True),
        sa.Column('subject_line', sa.Text(), nullable=True),
        sa.Column('body_preview', sa.Text(), nullable=True),
        sa.Column('word_count', sa.Integer(), nullable=True),
        sa.Column('total_sent', sa.Integer(), nullable=True),
        sa.Column('total_opened', sa.Integer(), nullable=True),
        sa.Column('total_clicked', sa.Integer(), nullable=True),
        sa.Column('total_replied', sa.Integer(), nullable=True),
        sa.Column('total_bounced', sa.Integer(), nullable=True),
        sa.Column('positive_replies', sa.Integer(), nullable=True),
        sa.Column('open_rate', sa.Float(), nullable=True),
        sa.Column('reply_rate', sa.Float(), nullable=True),
        sa.Column('positive_reply_rate', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('campaign_id', 'external_id', name='uq_variant_campaign_external'),
    )

    op.create_table(
        'email_activities',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), sa.ForeignKey('campaign_variants.id', ondelete='SET NULL'), nullable=True),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('external_message_id', sa.String(), nullable=True),
        sa.Column('sent', sa.Boolean(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('opened', sa.Boolean(), nullable=True),
        sa.Column('open_count', sa.Integer(), nullable=True),
        sa.Column('first_opened_at', sa.DateTime(), nullable=True),
        sa.Column('clicked', sa.Boolean(), nullable=True),
        sa.Column('click_count', sa.Integer(), nullable=True),
        sa.Column('first_clicked_at', sa.DateTime(), nullable=True),
        sa.Column('replied', sa.Boolean(), nullable=True),
        sa.Column('replied_at', sa.DateTime(), nullable=True),
        sa.Column('reply_text', sa.Text(), nullable=True),
        sa.Column('reply_category', sa.String(), nullable=True),
        sa.Column('reply_sentiment', sa.String(), nullable=True),
        sa.Column('bounced', sa.Boolean(), nullable=True),
        sa.Column('bounced_at', sa.DateTime(), nullable=True),
        sa.Column('unsubscribed', sa.Boolean(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('campaign_id', 'contact_id', 'step_number', name='uq_activity_touch'),
    )
    op.create_index('ix_email_activities_campaign_id', 'email_activities', ['campaign_id'])
    op.create_index('ix_email_activities_reply_category', 'email_activities', ['reply_category'])

    op.create_table(
        'message_threads',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('last_message_text', sa.Text(), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('message_count', sa.Integer(), nullable=True),
        sa.Column('raw_messages', sa.JSON(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('campaign_id', 'contact_id', 'step_number', name='uq_thread_touch'),
    )

    op.create_table(
        'daily_metrics',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('emails_sent', sa.Integer(), nullable=True),
        sa.Column('emails_opened', sa.Integer(), nullable=True),
        sa.Column('emails_clicked', sa.Integer(), nullable=True),
        sa.Column('emails_replied', sa.Integer(), nullable=True),
        sa.Column('emails_bounced', sa.Integer(), nullable=True),
        sa.Column('positive_replies', sa.Integer(), nullable=True),
        sa.Column('open_rate', sa.Float(), nullable=True),
        sa.Column('reply_rate', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('campaign_id', 'date', name='uq_daily_metric'),
    )

    op.create_table(
        'enrollment_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('snapshot_date', sa.Date(), nullable=False),
        sa.Column('total_leads', sa.Integer(), nullable=True),
        sa.Column('not_started', sa.Integer(), nullable=True),
        sa.Column('in_progress', sa.Integer(), nullable=True),
        sa.Column('completed', sa.Integer(), nullable=True),
        sa.Column('blocked', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('campaign_id', 'snapshot_date', name='uq_enrollment_snapshot'),
    )

    op.create_table(
        'platform_stats_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('data_source_id', sa.Integer(), sa.ForeignKey('data_sources.id', ondelete='CASCADE'), nullable=False),
        sa.Column('scope', sa.String(), nullable=False),
        sa.Column('scope_key', sa.String(), nullable=False),
        sa.Column('snapshot_date', sa.Date(), nullable=False),
        sa.Column('sent', sa.Integer(), nullable=True),
        sa.Column('opened', sa.Integer(), nullable=True),
        sa.Column('clicked', sa.Integer(), nullable=True),
        sa.Column('replied', sa.Integer(), nullable=True),
        sa.Column('bounced', sa.Integer(), nullable=True),
        sa.Column('positive_replies', sa.Integer(), nullable=True),
        sa.Column('raw', sa.JSON(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('data_source_id', 'scope', 'scope_key', 'snapshot_date', name='uq_platform_stats'),
    )


def downgrade() -> None:
    """Drop all outreach sync tables."""
    op.drop_table('platform_stats_snapshots')
    op.drop_table('enrollment_snapshots')
    op.drop_table('daily_metrics')
    op.drop_table('message_threads')
    op.drop_table('email_activities')
    op.drop_table('campaign_variants')
    op.drop_table('sequence_steps')
    op.drop_table('campaigns')
    op.drop_table('email_accounts')
    op.drop_table('contacts')
    op.drop_table('companies')
    op.drop_index('ix_sync_continuations_status_due', table_name='sync_continuations')
    op.drop_table('sync_continuations')
    op.drop_index('ix_sync_progress_source_status', table_name='sync_progress')
    op.drop_table('sync_progress')
    op.drop_table('data_sources')
