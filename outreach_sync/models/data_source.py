"""
Data source connection, sync run tracking and continuation queue models
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Text, ForeignKey, Index

from outreach_sync.models.base import Base
from outreach_sync.utils.helpers import utcnow


class DataSource(Base):
    """
    One outreach platform connection per client engagement

    Carries the resumption checkpoint and the run lease.
    """
    __tablename__ = "data_sources"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(String, index=True, nullable=False)
    engagement_id = Column(String, index=True, nullable=False)

    name = Column(String, nullable=False)
    source_type = Column(String, index=True, nullable=False)  # replyio, smartlead, phoneburner
    api_key = Column(Text, nullable=True)  # Platform credential
    additional_config = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, index=True)

    # Last sync outcome (syncing, success, partial, error, idle)
    last_sync_status = Column(String, default="idle", index=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    last_sync_records_processed = Column(Integer, default=0)
    total_syncs = Column(Integer, default=0)
    failed_syncs = Column(Integer, default=0)

    # Resumption state (SyncCheckpoint as JSON), cleared on completion
    checkpoint = Column(JSON, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)

    # Run lease, claimed with a conditional UPDATE
    claimed_until = Column(DateTime, nullable=True)
    claim_token = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SyncProgress(Base):
    """
    One row per sync run (spans all batches of the run)

    At most one 'running' row per data source.
    """
    __tablename__ = "sync_progress"

    id = Column(Integer, primary_key=True, index=True)
    data_source_id = Column(Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), index=True, nullable=False)
    run_id = Column(String, unique=True, index=True, nullable=False)

    status = Column(String, default="running", index=True)  # running, completed, error
    current_phase = Column(String, nullable=True)
    batch_number = Column(Integer, default=1)

    total_units = Column(Integer, default=0)
    processed_units = Column(Integer, default=0)
    current_unit = Column(String, nullable=True)

    counters = Column(JSON, nullable=True)  # Cumulative record counters
    errors = Column(JSON, nullable=True)  # Per-unit error messages

    started_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_sync_progress_source_status", "data_source_id", "status"),
    )


class SyncContinuation(Base):
    """
    Durable continuation queue

    A pending row resumes a partial run once due. Claimed by the worker
    poll with a status compare-and-swap.
    """
    __tablename__ = "sync_continuations"

    id = Column(Integer, primary_key=True, index=True)
    data_source_id = Column(Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), index=True, nullable=False)
    run_id = Column(String, index=True, nullable=True)
    batch_number = Column(Integer, default=1)
    phase = Column(String, nullable=True)
    lease_token = Column(String, nullable=True)

    status = Column(String, default="pending", index=True)  # pending, running, done, failed, cancelled
    due_at = Column(DateTime, default=utcnow, index=True)
    attempts = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
