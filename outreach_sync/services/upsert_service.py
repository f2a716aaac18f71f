"""
Entity Upsert Layer

Every write the sync makes is a natural-key upsert, so re-running any unit
of work converges on the same rows. Inserts run inside a savepoint; a
unique violation means another writer got there first, so the existing
row is re-read and reused.
"""
from collections import Counter
from datetime import date
from typing import Any, Dict, Optional, Type

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from outreach_sync.connectors.base import (
    PlatformAccount, PlatformCampaign, PlatformContact, PlatformStats, PlatformVariant,
)
from outreach_sync.models.outreach import (
    Campaign, CampaignVariant, Company, Contact, EmailAccount, EmailActivity,
    MessageThread, SequenceStep,
)
from outreach_sync.models.metrics import PlatformStatsSnapshot
from outreach_sync.services.activity_builder import Touch
from outreach_sync.utils.helpers import company_domain, normalize_email, utcnow
from outreach_sync.utils.logger import log


class EntityUpserter:
    """
    Natural-key upserts for the outreach schema.

    `enrich_only` upserts fill empty columns and never overwrite values
    that are already set (companies and contacts).
    """

    def __init__(self, db: Session):
        self.db = db
        self.created = Counter()
        self.updated = Counter()

    def upsert(
        self,
        model: Type,
        natural_key: Dict[str, Any],
        fields: Optional[Dict[str, Any]] = None,
        enrich_only: bool = False,
    ) -> int:
        """Create or update the row identified by natural_key; return its id"""
        fields = fields or {}
        row = self._find(model, natural_key)

        if row is None:
            try:
                with self.db.begin_nested():
                    row = model(**natural_key, **fields)
                    self.db.add(row)
                    self.db.flush()
                self.created[model.__tablename__] += 1
                return row.id
            except IntegrityError:
                log.debug(f"{model.__tablename__} {natural_key} inserted concurrently, reusing existing row")
                row = self._find(model, natural_key)
                if row is None:
                    raise

        if self._apply(row, fields, enrich_only):
            self.updated[model.__tablename__] += 1
            self.db.flush()
        return row.id

    def _find(self, model: Type, natural_key: Dict[str, Any]):
        return self.db.query(model).filter_by(**natural_key).first()

    @staticmethod
    def _apply(row, fields: Dict[str, Any], enrich_only: bool) -> bool:
        changed = False
        for name, value in fields.items():
            current = getattr(row, name)
            if enrich_only and (value is None or current not in (None, "")):
                continue
            if current != value:
                setattr(row, name, value)
                changed = True
        return changed

    # ------------------------------------------------------------------
    # Entity helpers
    # ------------------------------------------------------------------

    def resolve_company(
        self,
        engagement_id: str,
        name: Optional[str],
        domain: Optional[str],
        industry: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Optional[int]:
        """
        Find a company by domain, then by name; create only if neither matches.
        """
        name = (name or "").strip() or None
        if not name and not domain:
            return None

        enrichment = {"industry": industry, "location": location}

        if domain:
            existing = self._find(Company, {"engagement_id": engagement_id, "domain": domain})
            if existing:
                self._apply(existing, enrichment, enrich_only=True)
                return existing.id

        if name:
            existing = self._find(Company, {"engagement_id": engagement_id, "name_normalized": name.lower()})
            if existing:
                # No company owns this domain yet (checked above), so it can be adopted
                self._apply(existing, {"domain": domain, **enrichment}, enrich_only=True)
                return existing.id

        if domain:
            return self.upsert(
                Company,
                {"engagement_id": engagement_id, "domain": domain},
                {"name": name or domain, "name_normalized": (name or domain).lower(), **enrichment},
                enrich_only=True,
            )

        # Name-only companies are unique per engagement while they have no domain
        return self.upsert(
            Company,
            {"engagement_id": engagement_id, "name_normalized": name.lower(), "domain": None},
            {"name": name, **enrichment},
            enrich_only=True,
        )

    def upsert_contact(self, engagement_id: str, contact: PlatformContact) -> Optional[int]:
        email = normalize_email(contact.email)
        if not email:
            return None

        company_id = self.resolve_company(
            engagement_id,
            contact.company_name,
            company_domain(email, contact.website),
            industry=contact.industry,
            location=contact.location,
        )
        return self.upsert(
            Contact,
            {"engagement_id": engagement_id, "email": email},
            {
                "company_id": company_id,
                "first_name": contact.first_name,
                "last_name": contact.last_name,
                "title": contact.title,
                "phone": contact.phone,
                "linkedin_url": contact.linkedin_url,
            },
            enrich_only=True,
        )

    def upsert_account(self, data_source_id: int, account: PlatformAccount) -> int:
        return self.upsert(
            EmailAccount,
            {"data_source_id": data_source_id, "external_id": account.external_id},
            {
                "email_address": account.email_address,
                "sender_name": account.sender_name,
                "daily_limit": account.daily_limit,
                "warmup_enabled": account.warmup_enabled,
                "status": account.status,
                "synced_at": utcnow(),
            },
        )

    def upsert_campaign(self, engagement_id: str, data_source_id: int, campaign: PlatformCampaign) -> int:
        return self.upsert(
            Campaign,
            {"engagement_id": engagement_id, "data_source_id": data_source_id, "external_id": campaign.external_id},
            {
                "name": campaign.name,
                "status": campaign.status,
                "platform_created_at": campaign.created_at,
            },
        )

    def upsert_variant(self, campaign_id: int, variant: PlatformVariant) -> int:
        self.upsert(
            SequenceStep,
            {"campaign_id": campaign_id, "step_number": variant.step_number},
            {
                "step_type": variant.step_type,
                "delay_days": variant.delay_days,
                "subject": variant.subject,
                "synced_at": utcnow(),
            },
        )
        body = variant.body or ""
        return self.upsert(
            CampaignVariant,
            {"campaign_id": campaign_id, "external_id": variant.external_id},
            {
                "step_number": variant.step_number,
                "variant_label": variant.variant_label,
                "subject_line": variant.subject,
                "body_preview": body[:500] or None,
                "word_count": len(body.split()) if body else None,
            },
        )

    def upsert_activity(
        self,
        campaign_id: int,
        contact_id: int,
        touch: Touch,
        variant_id: Optional[int] = None,
    ) -> int:
        return self.upsert(
            EmailActivity,
            {"campaign_id": campaign_id, "contact_id": contact_id, "step_number": touch.step_number},
            {**touch.activity_fields(), "variant_id": variant_id, "synced_at": utcnow()},
        )

    def upsert_thread(self, campaign_id: int, contact_id: int, touch: Touch) -> Optional[int]:
        if not touch.replied:
            return None
        return self.upsert(
            MessageThread,
            {"campaign_id": campaign_id, "contact_id": contact_id, "step_number": touch.step_number},
            {
                "subject": touch.subject,
                "last_message_text": touch.reply_text,
                "last_message_at": touch.replied_at,
                "message_count": len(touch.messages),
                "raw_messages": touch.messages,
                "synced_at": utcnow(),
            },
        )

    def upsert_stats_snapshot(
        self,
        data_source_id: int,
        scope: str,
        scope_key: str,
        stats: PlatformStats,
        snapshot_date: Optional[date] = None,
    ) -> int:
        return self.upsert(
            PlatformStatsSnapshot,
            {
                "data_source_id": data_source_id,
                "scope": scope,
                "scope_key": scope_key,
                "snapshot_date": snapshot_date or utcnow().date(),
            },
            {
                "sent": stats.sent,
                "opened": stats.opened,
                "clicked": stats.clicked,
                "replied": stats.replied,
                "bounced": stats.bounced,
                "positive_replies": stats.positive_replies,
                "raw": stats.raw,
                "synced_at": utcnow(),
            },
        )

    def variant_ids_by_step(self, campaign_id: int) -> Dict[int, Dict[Optional[str], int]]:
        """step -> {subject or None: variant id}, used to attribute touches"""
        mapping: Dict[int, Dict[Optional[str], int]] = {}
        rows = (
            self.db.query(CampaignVariant)
            .filter(CampaignVariant.campaign_id == campaign_id)
            .order_by(CampaignVariant.step_number, func.coalesce(CampaignVariant.variant_label, ""), CampaignVariant.id)
            .all()
        )
        for row in rows:
            by_subject = mapping.setdefault(row.step_number, {})
            by_subject.setdefault(None, row.id)  # first variant is the step default
            if row.subject_line:
                by_subject.setdefault(row.subject_line.strip().lower(), row.id)
        return mapping
