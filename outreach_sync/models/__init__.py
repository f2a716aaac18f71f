"""Database models for the outreach sync engine"""

from outreach_sync.models.data_source import (
    DataSource,
    SyncProgress,
    SyncContinuation
)

from outreach_sync.models.outreach import (
    Company,
    Contact,
    EmailAccount,
    Campaign,
    SequenceStep,
    CampaignVariant,
    EmailActivity,
    MessageThread
)

from outreach_sync.models.metrics import (
    DailyMetric,
    EnrollmentSnapshot,
    PlatformStatsSnapshot
)

__all__ = [
    "DataSource",
    "SyncProgress",
    "SyncContinuation",
    "Company",
    "Contact",
    "EmailAccount",
    "Campaign",
    "SequenceStep",
    "CampaignVariant",
    "EmailActivity",
    "MessageThread",
    "DailyMetric",
    "EnrollmentSnapshot",
    "PlatformStatsSnapshot",
]
