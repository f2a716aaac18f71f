"""
SmartLead Adapter

Campaigns, sequences (with A/B variants), leads and per-lead message
history from the SmartLead v1 API. The API key travels as a query param.
"""
from typing import Any, Dict, List, Optional, Tuple

from outreach_sync.connectors.base import (
    PlatformAdapter, PlatformAccount, PlatformCampaign, PlatformContact,
    PlatformEvent, PlatformStats, PlatformVariant,
)
from outreach_sync.connectors.http_client import RateLimitedClient

# SmartLead message-history types -> event types
EVENT_TYPES = {
    "SENT": "sent",
    "OPEN": "opened",
    "OPENED": "opened",
    "CLICK": "clicked",
    "CLICKED": "clicked",
    "REPLY": "replied",
    "REPLIED": "replied",
    "BOUNCE": "bounced",
    "BOUNCED": "bounced",
    "UNSUBSCRIBE": "unsubscribed",
    "UNSUBSCRIBED": "unsubscribed",
}

STATUS_MAP = {
    "ACTIVE": "active",
    "STARTED": "active",
    "PAUSED": "paused",
    "STOPPED": "completed",
    "COMPLETED": "completed",
    "ARCHIVED": "archived",
    "DRAFTED": "draft",
}


class SmartleadAdapter(PlatformAdapter):
    """SmartLead API adapter (single delay for all endpoints)"""

    source_type = "smartlead"

    def __init__(self, client: RateLimitedClient, page_size: int = 100):
        super().__init__(client, page_size=page_size)

    async def list_accounts(self) -> List[PlatformAccount]:
        accounts: List[PlatformAccount] = []
        offset: Optional[int] = 0
        while offset is not None:
            payload = await self.client.request(
                "/email-accounts/", params={"offset": offset, "limit": self.page_size}, allow_404=True
            )
            items = self._unwrap(payload, "data", "email_accounts")
            for item in items:
                warmup = item.get("warmup_details") or {}
                accounts.append(PlatformAccount(
                    external_id=str(item.get("id")),
                    email_address=(item.get("from_email") or "").lower() or None,
                    sender_name=item.get("from_name"),
                    daily_limit=item.get("message_per_day"),
                    warmup_enabled=(warmup.get("status") == "ACTIVE") if warmup else None,
                    status=item.get("type"),
                ))
            offset = self._next_offset(offset, items)
        return accounts

    async def get_global_stats(self) -> Optional[PlatformStats]:
        payload = await self.client.request("/analytics/overall-stats", allow_404=True)
        if not payload:
            return None
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        return self._stats(data)

    async def list_campaigns_page(self, offset: int) -> Tuple[List[PlatformCampaign], Optional[int]]:
        # The campaigns endpoint is not paginated
        payload = await self.client.request("/campaigns")
        campaigns = [
            PlatformCampaign(
                external_id=str(item.get("id")),
                name=item.get("name") or f"Campaign {item.get('id')}",
                status=STATUS_MAP.get(str(item.get("status") or "").upper(), "draft"),
                created_at=self._date(item.get("created_at")),
            )
            for item in self._unwrap(payload, "data", "campaigns")
        ]
        # Active first so fresh data lands before any time budget runs out
        campaigns.sort(key=lambda c: 0 if c.status == "active" else 1)
        return campaigns, None

    async def get_campaign_stats(self, campaign: PlatformCampaign) -> Optional[PlatformStats]:
        payload = await self.client.request(f"/campaigns/{campaign.external_id}/analytics", allow_404=True)
        if not payload:
            return None
        return self._stats(payload)

    async def list_variants(self, campaign: PlatformCampaign) -> List[PlatformVariant]:
        payload = await self.client.request(f"/campaigns/{campaign.external_id}/sequences", allow_404=True)
        variants: List[PlatformVariant] = []
        for seq in self._unwrap(payload, "data", "sequences"):
            step_number = self._int(seq.get("seq_number")) or 1
            delay_days = (seq.get("seq_delay_details") or {}).get("delay_in_days")
            seq_variants = seq.get("sequence_variants") or []
            if not seq_variants and (seq.get("subject") or seq.get("email_body")):
                # Steps without A/B tests carry the template on the step itself
                seq_variants = [{
                    "id": f"seq_{campaign.external_id}_{step_number}",
                    "variant_label": None,
                    "subject": seq.get("subject"),
                    "email_body": seq.get("email_body"),
                }]
            for variant in seq_variants:
                variants.append(PlatformVariant(
                    external_id=str(variant.get("id") or f"seq_{campaign.external_id}_{step_number}"),
                    step_number=step_number,
                    variant_label=variant.get("variant_label"),
                    subject=variant.get("subject"),
                    body=variant.get("email_body"),
                    delay_days=delay_days,
                ))
        return variants

    async def list_contacts_page(self, campaign: PlatformCampaign, offset: int) -> Tuple[List[PlatformContact], Optional[int]]:
        payload = await self.client.request(
            f"/campaigns/{campaign.external_id}/leads",
            params={"offset": offset, "limit": self.page_size},
        )
        items = self._unwrap(payload, "data", "leads")
        contacts = [self._contact(item) for item in items]
        return [c for c in contacts if c.email], self._next_offset(offset, items)

    async def list_contact_events(self, campaign: PlatformCampaign, contact: PlatformContact) -> List[PlatformEvent]:
        payload = await self.client.request(
            f"/campaigns/{campaign.external_id}/leads/{contact.external_id}/message-history",
            allow_404=True,
        )
        events: List[PlatformEvent] = []
        for msg in self._unwrap(payload, "history", "data"):
            event_type = EVENT_TYPES.get(str(msg.get("type") or "").upper())
            if not event_type:
                continue
            events.append(PlatformEvent(
                event_type=event_type,
                step_number=self._int(msg.get("seq_number")) or None,
                occurred_at=self._date(msg.get("time")),
                subject=msg.get("email_subject"),
                body=msg.get("email_body"),
                message_id=str(msg["id"]) if msg.get("id") is not None else msg.get("message_id"),
                category=contact.category if event_type == "replied" else None,
            ))
        return events

    def _contact(self, item: Dict[str, Any]) -> PlatformContact:
        # Lead listings nest the lead under "lead" alongside its category
        lead = item.get("lead") if isinstance(item.get("lead"), dict) else item
        category = item.get("lead_category") or lead.get("category")
        if isinstance(category, dict):
            category = category.get("name")
        return PlatformContact(
            external_id=str(lead.get("id") or item.get("id") or lead.get("email")),
            email=lead.get("email"),
            first_name=lead.get("first_name"),
            last_name=lead.get("last_name"),
            title=lead.get("designation") or lead.get("title"),
            phone=lead.get("phone_number"),
            linkedin_url=lead.get("linkedin_profile") or lead.get("linkedin_url"),
            company_name=lead.get("company_name") or lead.get("company"),
            website=lead.get("website"),
            industry=lead.get("industry"),
            location=lead.get("location") or lead.get("city"),
            category=category,
        )

    def _stats(self, data: Dict[str, Any]) -> PlatformStats:
        return PlatformStats(
            sent=self._int(data.get("unique_sent_count") or data.get("sent_count")),
            opened=self._int(data.get("unique_open_count") or data.get("open_count")),
            clicked=self._int(data.get("unique_click_count") or data.get("click_count")),
            replied=self._int(data.get("reply_count")),
            bounced=self._int(data.get("bounce_count")),
            positive_replies=self._int(data.get("positive_reply_count") or data.get("interested_count")),
            raw=data,
        )
