"""
Outreach entity models (companies, contacts, campaigns, activities)

Campaign and variant totals are derived from EmailActivity rows by the
aggregator and are never written anywhere else.
"""
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, JSON, Text,
    ForeignKey, UniqueConstraint, Index, text,
)

from outreach_sync.models.base import Base
from outreach_sync.utils.helpers import utcnow


class Company(Base):
    """Company, deduplicated by domain then name within an engagement"""
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    engagement_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    name_normalized = Column(String, index=True)  # lower/stripped name for lookup
    domain = Column(String, index=True, nullable=True)
    industry = Column(String, nullable=True)
    location = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("engagement_id", "domain", name="uq_company_engagement_domain"),
        Index("ix_company_engagement_name", "engagement_id", "name_normalized"),
        Index(
            "uq_company_engagement_name_no_domain", "engagement_id", "name_normalized",
            unique=True,
            sqlite_where=text("domain IS NULL"),
            postgresql_where=text("domain IS NULL"),
        ),
    )


class Contact(Base):
    """Prospect, deduplicated by email within an engagement"""
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, index=True)
    engagement_id = Column(String, index=True, nullable=False)
    email = Column(String, index=True, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)

    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    title = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    linkedin_url = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("engagement_id", "email", name="uq_contact_engagement_email"),
    )


class EmailAccount(Base):
    """Sending mailbox connected to a data source"""
    __tablename__ = "email_accounts"

    id = Column(Integer, primary_key=True, index=True)
    data_source_id = Column(Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), index=True, nullable=False)
    external_id = Column(String, nullable=False)
    email_address = Column(String, index=True)
    sender_name = Column(String, nullable=True)
    daily_limit = Column(Integer, nullable=True)
    warmup_enabled = Column(Boolean, nullable=True)
    status = Column(String, nullable=True)

    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("data_source_id", "external_id", name="uq_email_account_source_external"),
    )


class Campaign(Base):
    """Outreach campaign / sequence on a platform"""
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, index=True)
    engagement_id = Column(String, index=True, nullable=False)
    data_source_id = Column(Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), index=True, nullable=False)
    external_id = Column(String, nullable=False)

    name = Column(String)
    status = Column(String, index=True)  # active, paused, completed, archived, draft
    platform_created_at = Column(DateTime, nullable=True)

    # Derived totals (aggregator only)
    total_sent = Column(Integer, default=0)
    total_opened = Column(Integer, default=0)
    total_clicked = Column(Integer, default=0)
    total_replied = Column(Integer, default=0)
    total_bounced = Column(Integer, default=0)
    positive_replies = Column(Integer, default=0)

    # Rates are fractions (0-1)
    open_rate = Column(Float, default=0.0)
    click_rate = Column(Float, default=0.0)
    reply_rate = Column(Float, default=0.0)
    bounce_rate = Column(Float, default=0.0)
    positive_reply_rate = Column(Float, default=0.0)  # positive / replied

    last_synced_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("engagement_id", "data_source_id", "external_id", name="uq_campaign_natural_key"),
    )


class SequenceStep(Base):
    """One step of a campaign"""
    __tablename__ = "sequence_steps"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), index=True, nullable=False)
    step_number = Column(Integer, nullable=False)
    step_type = Column(String, default="email")
    delay_days = Column(Integer, nullable=True)
    subject = Column(String, nullable=True)

    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "step_number", name="uq_sequence_step"),
    )


class CampaignVariant(Base):
    """Message template at a campaign step, with derived per-step metrics"""
    __tablename__ = "campaign_variants"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), index=True, nullable=False)
    external_id = Column(String, nullable=False)
    step_number = Column(Integer, index=True, nullable=False)
    variant_label = Column(String, nullable=True)  # A, B, ...
    subject_line = Column(Text, nullable=True)
    body_preview = Column(Text, nullable=True)
    word_count = Column(Integer, nullable=True)

    # Derived totals (aggregator only)
    total_sent = Column(Integer, default=0)
    total_opened = Column(Integer, default=0)
    total_clicked = Column(Integer, default=0)
    total_replied = Column(Integer, default=0)
    total_bounced = Column(Integer, default=0)
    positive_replies = Column(Integer, default=0)
    open_rate = Column(Float, default=0.0)
    reply_rate = Column(Float, default=0.0)
    positive_reply_rate = Column(Float, default=0.0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "external_id", name="uq_variant_campaign_external"),
    )


class EmailActivity(Base):
    """
    Full lifecycle of one touch: (campaign, contact, step)

    The ledger every aggregate is derived from.
    """
    __tablename__ = "email_activities"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), index=True, nullable=False)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), index=True, nullable=False)
    step_number = Column(Integer, nullable=False)
    variant_id = Column(Integer, ForeignKey("campaign_variants.id", ondelete="SET NULL"), nullable=True)

    subject = Column(Text, nullable=True)
    external_message_id = Column(String, nullable=True)

    sent = Column(Boolean, default=False, index=True)
    sent_at = Column(DateTime, nullable=True, index=True)
    opened = Column(Boolean, default=False)
    open_count = Column(Integer, default=0)
    first_opened_at = Column(DateTime, nullable=True)
    clicked = Column(Boolean, default=False)
    click_count = Column(Integer, default=0)
    first_clicked_at = Column(DateTime, nullable=True)
    replied = Column(Boolean, default=False, index=True)
    replied_at = Column(DateTime, nullable=True)
    reply_text = Column(Text, nullable=True)
    reply_category = Column(String, nullable=True, index=True)
    reply_sentiment = Column(String, nullable=True)  # positive, neutral, negative
    bounced = Column(Boolean, default=False)
    bounced_at = Column(DateTime, nullable=True)
    unsubscribed = Column(Boolean, default=False)

    synced_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "contact_id", "step_number", name="uq_activity_touch"),
    )


class MessageThread(Base):
    """Reply thread for a touch"""
    __tablename__ = "message_threads"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), index=True, nullable=False)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), index=True, nullable=False)
    step_number = Column(Integer, nullable=False)
    subject = Column(Text, nullable=True)
    last_message_text = Column(Text, nullable=True)
    last_message_at = Column(DateTime, nullable=True)
    message_count = Column(Integer, default=0)
    raw_messages = Column(JSON, nullable=True)

    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "contact_id", "step_number", name="uq_thread_touch"),
    )
