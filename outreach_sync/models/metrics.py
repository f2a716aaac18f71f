"""
Time-bucketed rollups and platform-reported stats
"""
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, JSON, ForeignKey, UniqueConstraint

from outreach_sync.models.base import Base
from outreach_sync.utils.helpers import utcnow


class DailyMetric(Base):
    """Per-campaign daily rollup, rebuilt from activities on every pass"""
    __tablename__ = "daily_metrics"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), index=True, nullable=False)
    date = Column(Date, index=True, nullable=False)

    emails_sent = Column(Integer, default=0)
    emails_opened = Column(Integer, default=0)
    emails_clicked = Column(Integer, default=0)
    emails_replied = Column(Integer, default=0)
    emails_bounced = Column(Integer, default=0)
    positive_replies = Column(Integer, default=0)

    open_rate = Column(Float, default=0.0)
    reply_rate = Column(Float, default=0.0)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "date", name="uq_daily_metric"),
    )


class EnrollmentSnapshot(Base):
    """Lead enrollment state per campaign per day"""
    __tablename__ = "enrollment_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), index=True, nullable=False)
    snapshot_date = Column(Date, index=True, nullable=False)

    total_leads = Column(Integer, default=0)
    not_started = Column(Integer, default=0)
    in_progress = Column(Integer, default=0)
    completed = Column(Integer, default=0)
    blocked = Column(Integer, default=0)  # bounced or unsubscribed

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "snapshot_date", name="uq_enrollment_snapshot"),
    )


class PlatformStatsSnapshot(Base):
    """
    Totals as reported by the platform itself

    scope='global' for the account-wide stats phase, scope='campaign' for
    per-campaign stats. Informational only: campaign totals come from
    activities.
    """
    __tablename__ = "platform_stats_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    data_source_id = Column(Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), index=True, nullable=False)
    scope = Column(String, nullable=False)
    scope_key = Column(String, nullable=False)
    snapshot_date = Column(Date, nullable=False)

    sent = Column(Integer, default=0)
    opened = Column(Integer, default=0)
    clicked = Column(Integer, default=0)
    replied = Column(Integer, default=0)
    bounced = Column(Integer, default=0)
    positive_replies = Column(Integer, default=0)
    raw = Column(JSON, nullable=True)

    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("data_source_id", "scope", "scope_key", "snapshot_date", name="uq_platform_stats"),
    )
