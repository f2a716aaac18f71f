"""
Reconciliation Service

Read-only consistency checks of the derived tables against the raw
activity ledger. Each check returns issue strings; after the checks the
service triggers a full metrics recompute, which is the only write it
causes.

Answers: "Do the dashboards still agree with the activities?"
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from outreach_sync.config import Settings, get_settings
from outreach_sync.models.data_source import SyncProgress
from outreach_sync.models.metrics import DailyMetric
from outreach_sync.models.outreach import Campaign, EmailActivity
from outreach_sync.services.aggregator import MetricsAggregator
from outreach_sync.services.reply_classification import POSITIVE_CATEGORIES
from outreach_sync.utils.helpers import utcnow
from outreach_sync.utils.logger import log


class Reconciler:
    """Cross-checks aggregate tables against Activity rows"""

    def __init__(self, db: Session, settings: Optional[Settings] = None, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.settings = settings or get_settings()
        self.now = now

    def run(self) -> Dict:
        """
        Run every check, then recompute all metrics.

        Returns {timestamp, recalculated, issues_found, issues}.
        """
        log.info("Running sync reconciliation")
        issues: List[str] = []

        checks = (
            ("campaign_totals", self.check_campaign_totals),
            ("uncategorized_replies", self.check_uncategorized_replies),
            ("stale_campaigns", self.check_stale_campaigns),
            ("daily_metric_drift", self.check_daily_metric_drift),
            ("concurrent_runs", self.check_concurrent_runs),
        )
        for name, check in checks:
            try:
                found = check()
                issues.extend(found)
                if found:
                    log.warning(f"Reconciliation check {name}: {len(found)} issues")
            except Exception as e:
                log.error(f"Reconciliation check {name} failed: {str(e)}")
                issues.append(f"Check {name} failed: {str(e)}")

        recalculated = MetricsAggregator(self.db, today=lambda: self.now().date()).recompute_all()

        log.info(f"Reconciliation finished: {len(issues)} issues, {recalculated} campaigns recalculated")
        return {
            "timestamp": self.now().isoformat(),
            "recalculated": recalculated,
            "issues_found": len(issues),
            "issues": issues,
        }

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _activity_counts(self) -> Dict[int, Dict[str, int]]:
        rows = (
            self.db.query(
                EmailActivity.campaign_id,
                func.sum(case((EmailActivity.sent.is_(True), 1), else_=0)),
                func.sum(case((EmailActivity.replied.is_(True), 1), else_=0)),
                func.sum(case(
                    (EmailActivity.replied.is_(True) & EmailActivity.reply_category.in_(POSITIVE_CATEGORIES), 1),
                    else_=0,
                )),
            )
            .group_by(EmailActivity.campaign_id)
            .all()
        )
        return {
            campaign_id: {"sent": int(sent or 0), "replied": int(replied or 0), "positive": int(positive or 0)}
            for campaign_id, sent, replied, positive in rows
        }

    def check_campaign_totals(self) -> List[str]:
        """Campaign totals must equal the counts of their Activity rows"""
        counts = self._activity_counts()
        issues = []
        for campaign in self.db.query(Campaign).all():
            actual = counts.get(campaign.id, {"sent": 0, "replied": 0, "positive": 0})
            for label, stored, expected in (
                ("total_sent", campaign.total_sent or 0, actual["sent"]),
                ("total_replied", campaign.total_replied or 0, actual["replied"]),
                ("positive_replies", campaign.positive_replies or 0, actual["positive"]),
            ):
                if stored != expected:
                    issues.append(
                        f"Campaign {campaign.id} ({campaign.name}): {label}={stored} "
                        f"but activities show {expected}"
                    )
        return issues

    def check_uncategorized_replies(self) -> List[str]:
        rows = (
            self.db.query(EmailActivity.campaign_id, func.count(EmailActivity.id))
            .filter(EmailActivity.replied.is_(True), EmailActivity.reply_category.is_(None))
            .group_by(EmailActivity.campaign_id)
            .all()
        )
        return [
            f"Campaign {campaign_id}: {count} replied activities without a reply category"
            for campaign_id, count in rows
        ]

    def check_stale_campaigns(self) -> List[str]:
        threshold = self.now() - timedelta(hours=self.settings.freshness_threshold_hours)
        stale = self.db.query(Campaign).filter(
            Campaign.status == "active",
            (Campaign.last_synced_at.is_(None)) | (Campaign.last_synced_at < threshold),
        ).all()
        issues = []
        for campaign in stale:
            if campaign.last_synced_at is None:
                issues.append(f"Campaign {campaign.id} ({campaign.name}) is active but has never been synced")
            else:
                hours = (self.now() - campaign.last_synced_at).total_seconds() / 3600
                issues.append(
                    f"Campaign {campaign.id} ({campaign.name}) last synced {hours:.0f}h ago "
                    f"(threshold {self.settings.freshness_threshold_hours}h)"
                )
        return issues

    def check_daily_metric_drift(self) -> List[str]:
        """Daily rollup sums must stay within tolerance of campaign totals"""
        sums = {
            campaign_id: (int(sent or 0), int(replied or 0))
            for campaign_id, sent, replied in self.db.query(
                DailyMetric.campaign_id,
                func.sum(DailyMetric.emails_sent),
                func.sum(DailyMetric.emails_replied),
            ).group_by(DailyMetric.campaign_id).all()
        }
        pct = self.settings.reconcile_tolerance_pct
        issues = []
        for campaign in self.db.query(Campaign).all():
            daily_sent, daily_replied = sums.get(campaign.id, (0, 0))
            total_sent = campaign.total_sent or 0
            total_replied = campaign.total_replied or 0

            if abs(daily_sent - total_sent) > pct * total_sent:
                issues.append(
                    f"Campaign {campaign.id} ({campaign.name}): daily sent sum {daily_sent} "
                    f"drifts from total_sent {total_sent}"
                )
            replied_tolerance = max(pct * total_replied, self.settings.reconcile_min_absolute_drift)
            if abs(daily_replied - total_replied) > replied_tolerance:
                issues.append(
                    f"Campaign {campaign.id} ({campaign.name}): daily replied sum {daily_replied} "
                    f"drifts from total_replied {total_replied}"
                )
        return issues

    def check_concurrent_runs(self) -> List[str]:
        rows = (
            self.db.query(SyncProgress.data_source_id, func.count(SyncProgress.id))
            .filter(SyncProgress.status == "running")
            .group_by(SyncProgress.data_source_id)
            .having(func.count(SyncProgress.id) > 1)
            .all()
        )
        return [
            f"Data source {data_source_id} has {count} running sync runs"
            for data_source_id, count in rows
        ]
