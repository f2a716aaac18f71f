"""
Metrics Aggregator

Recomputes campaign totals, variant totals, daily metrics and the
enrollment snapshot from EmailActivity rows. Values are overwritten, never
incremented, so re-running a campaign cannot double count.
"""
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from outreach_sync.models.metrics import DailyMetric, EnrollmentSnapshot
from outreach_sync.models.outreach import Campaign, CampaignVariant, EmailActivity, SequenceStep
from outreach_sync.services.reply_classification import is_positive
from outreach_sync.utils.helpers import rate, utcnow
from outreach_sync.utils.logger import log


@dataclass
class Tally:
    sent: int = 0
    opened: int = 0
    clicked: int = 0
    replied: int = 0
    bounced: int = 0
    positive: int = 0

    def add(self, activity: EmailActivity):
        if activity.sent:
            self.sent += 1
        if activity.opened:
            self.opened += 1
        if activity.clicked:
            self.clicked += 1
        if activity.replied:
            self.replied += 1
            if is_positive(activity.reply_category):
                self.positive += 1
        if activity.bounced:
            self.bounced += 1


def tally(activities: Iterable[EmailActivity]) -> Tally:
    result = Tally()
    for activity in activities:
        result.add(activity)
    return result


def _day(value: Optional[datetime], fallback: Optional[date]) -> Optional[date]:
    return value.date() if value else fallback


class MetricsAggregator:
    """Single writer of every derived metric column"""

    def __init__(self, db: Session, today: Callable[[], date] = lambda: utcnow().date()):
        self.db = db
        self.today = today

    def recompute(self, campaign_id: int) -> Optional[Tally]:
        """Rebuild all derived rows for one campaign (flushes, caller commits)"""
        campaign = self.db.query(Campaign).filter(Campaign.id == campaign_id).first()
        if campaign is None:
            return None

        activities = self.db.query(EmailActivity).filter(EmailActivity.campaign_id == campaign_id).all()
        totals = tally(activities)

        campaign.total_sent = totals.sent
        campaign.total_opened = totals.opened
        campaign.total_clicked = totals.clicked
        campaign.total_replied = totals.replied
        campaign.total_bounced = totals.bounced
        campaign.positive_replies = totals.positive
        campaign.open_rate = rate(totals.opened, totals.sent)
        campaign.click_rate = rate(totals.clicked, totals.sent)
        campaign.reply_rate = rate(totals.replied, totals.sent)
        campaign.bounce_rate = rate(totals.bounced, totals.sent)
        campaign.positive_reply_rate = rate(totals.positive, totals.replied)

        self._recompute_variants(campaign_id, activities)
        self._recompute_daily(campaign_id, activities)
        self._snapshot_enrollment(campaign_id, activities)

        self.db.flush()
        return totals

    def recompute_data_source(self, data_source_id: int) -> int:
        campaign_ids = [
            row.id for row in self.db.query(Campaign.id).filter(Campaign.data_source_id == data_source_id).all()
        ]
        for campaign_id in campaign_ids:
            self.recompute(campaign_id)
        self.db.commit()
        log.info(f"Recomputed metrics for {len(campaign_ids)} campaigns of data source {data_source_id}")
        return len(campaign_ids)

    def recompute_all(self) -> int:
        campaign_ids = [row.id for row in self.db.query(Campaign.id).all()]
        for campaign_id in campaign_ids:
            self.recompute(campaign_id)
        self.db.commit()
        log.info(f"Recomputed metrics for {len(campaign_ids)} campaigns")
        return len(campaign_ids)

    def _recompute_variants(self, campaign_id: int, activities: List[EmailActivity]):
        variants = self.db.query(CampaignVariant).filter(CampaignVariant.campaign_id == campaign_id).all()
        if not variants:
            return

        by_step: Dict[int, List[EmailActivity]] = defaultdict(list)
        by_variant: Dict[int, List[EmailActivity]] = defaultdict(list)
        for activity in activities:
            by_step[activity.step_number].append(activity)
            if activity.variant_id is not None:
                by_variant[activity.variant_id].append(activity)

        variants_per_step: Dict[int, int] = defaultdict(int)
        for variant in variants:
            variants_per_step[variant.step_number] += 1

        for variant in variants:
            # A lone template owns its whole step; A/B templates split by attribution
            if variants_per_step[variant.step_number] == 1:
                step_tally = tally(by_step.get(variant.step_number, []))
            else:
                step_tally = tally(by_variant.get(variant.id, []))

            variant.total_sent = step_tally.sent
            variant.total_opened = step_tally.opened
            variant.total_clicked = step_tally.clicked
            variant.total_replied = step_tally.replied
            variant.total_bounced = step_tally.bounced
            variant.positive_replies = step_tally.positive
            variant.open_rate = rate(step_tally.opened, step_tally.sent)
            variant.reply_rate = rate(step_tally.replied, step_tally.sent)
            variant.positive_reply_rate = rate(step_tally.positive, step_tally.replied)

    def _recompute_daily(self, campaign_id: int, activities: List[EmailActivity]):
        buckets: Dict[date, Tally] = defaultdict(Tally)

        for activity in activities:
            # Each event lands on the day it happened, falling back to the send day
            sent_day = _day(activity.sent_at, _day(activity.synced_at, self.today()))
            if activity.sent:
                buckets[sent_day].sent += 1
            if activity.opened:
                buckets[_day(activity.first_opened_at, sent_day)].opened += 1
            if activity.clicked:
                buckets[_day(activity.first_clicked_at, sent_day)].clicked += 1
            if activity.replied:
                reply_day = _day(activity.replied_at, sent_day)
                buckets[reply_day].replied += 1
                if is_positive(activity.reply_category):
                    buckets[reply_day].positive += 1
            if activity.bounced:
                buckets[_day(activity.bounced_at, sent_day)].bounced += 1

        self.db.query(DailyMetric).filter(DailyMetric.campaign_id == campaign_id).delete(synchronize_session=False)
        for day, counts in sorted(buckets.items()):
            self.db.add(DailyMetric(
                campaign_id=campaign_id,
                date=day,
                emails_sent=counts.sent,
                emails_opened=counts.opened,
                emails_clicked=counts.clicked,
                emails_replied=counts.replied,
                emails_bounced=counts.bounced,
                positive_replies=counts.positive,
                open_rate=rate(counts.opened, counts.sent),
                reply_rate=rate(counts.replied, counts.sent),
            ))

    def _snapshot_enrollment(self, campaign_id: int, activities: List[EmailActivity]):
        step_count = self.db.query(SequenceStep).filter(SequenceStep.campaign_id == campaign_id).count()
        if not step_count and activities:
            step_count = max(a.step_number for a in activities)

        by_contact: Dict[int, List[EmailActivity]] = defaultdict(list)
        for activity in activities:
            by_contact[activity.contact_id].append(activity)

        counts = {"not_started": 0, "in_progress": 0, "completed": 0, "blocked": 0}
        for touches in by_contact.values():
            sent_steps = {t.step_number for t in touches if t.sent}
            if any(t.bounced or t.unsubscribed for t in touches):
                counts["blocked"] += 1
            elif any(t.replied for t in touches) or (step_count and len(sent_steps) >= step_count):
                counts["completed"] += 1
            elif sent_steps:
                counts["in_progress"] += 1
            else:
                counts["not_started"] += 1

        snapshot_date = self.today()
        snapshot = self.db.query(EnrollmentSnapshot).filter(
            EnrollmentSnapshot.campaign_id == campaign_id,
            EnrollmentSnapshot.snapshot_date == snapshot_date,
        ).first()
        if snapshot is None:
            snapshot = EnrollmentSnapshot(campaign_id=campaign_id, snapshot_date=snapshot_date)
            self.db.add(snapshot)
        snapshot.total_leads = len(by_contact)
        for key, value in counts.items():
            setattr(snapshot, key, value)
