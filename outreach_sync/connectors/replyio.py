"""
Reply.io Adapter

Sequences, steps, people and per-person activity from the Reply.io v3 API.
Statistics endpoints have a separate, looser quota than list endpoints,
so the two use different pacing delays.
"""
from typing import Any, Dict, List, Optional, Tuple

from outreach_sync.connectors.base import (
    PlatformAdapter, PlatformAccount, PlatformCampaign, PlatformContact,
    PlatformEvent, PlatformStats, PlatformVariant,
)
from outreach_sync.connectors.http_client import RateLimitedClient

STATUS_MAP = {
    "Active": "active",
    "Paused": "paused",
    "Stopped": "completed",
    "Archived": "archived",
    "Draft": "draft",
    "New": "draft",
}

# Reply.io activity types -> event types
EVENT_TYPES = {
    "email_sent": "sent",
    "sent": "sent",
    "delivered": "sent",
    "email_opened": "opened",
    "opened": "opened",
    "email_clicked": "clicked",
    "clicked": "clicked",
    "email_replied": "replied",
    "replied": "replied",
    "email_bounced": "bounced",
    "bounced": "bounced",
    "opted_out": "unsubscribed",
    "unsubscribed": "unsubscribed",
}


def map_sequence_status(status: Optional[str]) -> str:
    """Map a Reply.io sequence status to a campaign status"""
    if not status:
        return "draft"
    return STATUS_MAP.get(status, status.lower())


class ReplyioAdapter(PlatformAdapter):
    """Reply.io API adapter"""

    source_type = "replyio"

    def __init__(
        self,
        client: RateLimitedClient,
        page_size: int = 100,
        list_delay: float = 2.0,
        stats_delay: float = 1.0,
    ):
        super().__init__(client, page_size=page_size)
        self.list_delay = list_delay
        self.stats_delay = stats_delay

    async def list_accounts(self) -> List[PlatformAccount]:
        payload = await self.client.request("/email-accounts", delay=self.list_delay, allow_404=True)
        return [
            PlatformAccount(
                external_id=str(item.get("id")),
                email_address=(item.get("emailAddress") or item.get("email") or "").lower() or None,
                sender_name=item.get("senderName") or item.get("name"),
                daily_limit=item.get("dailyLimit") or item.get("dailySendLimit"),
                warmup_enabled=item.get("warmupEnabled"),
                status=item.get("status"),
            )
            for item in self._unwrap(payload, "items", "emailAccounts")
        ]

    async def get_global_stats(self) -> Optional[PlatformStats]:
        payload = await self.client.request(
            "/statistics/sequences", delay=self.stats_delay, retries=2, allow_404=True
        )
        if not payload:
            return None
        rows = self._unwrap(payload, "items", "sequences")
        if rows:
            totals = PlatformStats(raw={"sequences": len(rows)})
            for row in rows:
                stats = self._stats(row)
                totals.sent += stats.sent
                totals.opened += stats.opened
                totals.clicked += stats.clicked
                totals.replied += stats.replied
                totals.bounced += stats.bounced
                totals.positive_replies += stats.positive_replies
            return totals
        return self._stats(payload) if isinstance(payload, dict) else None

    async def list_campaigns_page(self, offset: int) -> Tuple[List[PlatformCampaign], Optional[int]]:
        payload = await self.client.request(
            "/sequences", params={"top": self.page_size, "skip": offset}, delay=self.list_delay
        )
        items = self._unwrap(payload, "sequences", "items")
        campaigns = [
            PlatformCampaign(
                external_id=str(item.get("id")),
                name=item.get("name") or f"Sequence {item.get('id')}",
                status=map_sequence_status(item.get("status")),
                created_at=self._date(item.get("created") or item.get("createdAt")),
            )
            for item in items
        ]
        return campaigns, self._next_offset(offset, items)

    async def get_campaign_stats(self, campaign: PlatformCampaign) -> Optional[PlatformStats]:
        stats = await self.client.request(
            f"/statistics/sequences/{campaign.external_id}",
            delay=self.stats_delay, retries=2, allow_404=True,
        )
        if stats:
            return self._stats(stats)

        # Older sequences only expose summary counts on the sequence itself
        details = await self.client.request(
            f"/sequences/{campaign.external_id}",
            delay=self.stats_delay, retries=1, allow_404=True,
        )
        if not details:
            return None
        return PlatformStats(
            sent=self._int(details.get("peopleCount") or details.get("totalPeople")),
            opened=self._int(details.get("openedCount") or details.get("opened")),
            clicked=self._int(details.get("clickedCount") or details.get("clicked")),
            replied=self._int(details.get("repliedCount") or details.get("replied")),
            bounced=self._int(details.get("bouncedCount") or details.get("bounced")),
            positive_replies=self._int(details.get("interestedCount") or details.get("interested")),
            raw=details,
        )

    async def list_variants(self, campaign: PlatformCampaign) -> List[PlatformVariant]:
        payload = await self.client.request(
            f"/sequences/{campaign.external_id}/steps", delay=self.list_delay, allow_404=True
        )
        variants: List[PlatformVariant] = []
        for index, step in enumerate(self._unwrap(payload, "steps", "items"), start=1):
            step_number = self._int(step.get("number") or step.get("stepNumber")) or index
            templates = step.get("templates") or [step]
            for position, template in enumerate(templates):
                external_id = template.get("id") or f"{step.get('id') or step_number}_{position}"
                variants.append(PlatformVariant(
                    external_id=str(external_id),
                    step_number=step_number,
                    variant_label=chr(ord("A") + position) if len(templates) > 1 else None,
                    subject=template.get("subject") or template.get("emailSubject"),
                    body=template.get("body") or template.get("emailBody"),
                    delay_days=step.get("delayInDays") or step.get("delay"),
                    step_type=str(step.get("type") or "email").lower(),
                ))
        return variants

    async def list_contacts_page(self, campaign: PlatformCampaign, offset: int) -> Tuple[List[PlatformContact], Optional[int]]:
        payload = await self.client.request(
            f"/sequences/{campaign.external_id}/people",
            params={"top": self.page_size, "skip": offset},
            delay=self.list_delay,
        )
        items = self._unwrap(payload, "people", "items")
        contacts = [self._contact(item) for item in items]
        return [c for c in contacts if c.email], self._next_offset(offset, items)

    async def list_contact_events(self, campaign: PlatformCampaign, contact: PlatformContact) -> List[PlatformEvent]:
        payload = await self.client.request(
            f"/sequences/{campaign.external_id}/people/{contact.external_id}/activities",
            delay=self.stats_delay, allow_404=True,
        )
        events: List[PlatformEvent] = []
        for item in self._unwrap(payload, "activities", "items"):
            event_type = EVENT_TYPES.get(str(item.get("type") or "").lower())
            if not event_type:
                continue
            events.append(PlatformEvent(
                event_type=event_type,
                step_number=self._int(item.get("stepNumber") or item.get("step")) or None,
                occurred_at=self._date(item.get("date") or item.get("timestamp")),
                subject=item.get("subject"),
                body=item.get("body") or item.get("text"),
                message_id=str(item["id"]) if item.get("id") is not None else None,
                category=item.get("replyCategory") or (contact.category if event_type == "replied" else None),
            ))
        return events

    def _contact(self, item: Dict[str, Any]) -> PlatformContact:
        return PlatformContact(
            external_id=str(item.get("id") or item.get("email")),
            email=item.get("email"),
            first_name=item.get("firstName") or item.get("first_name"),
            last_name=item.get("lastName") or item.get("last_name"),
            title=item.get("title"),
            phone=item.get("phone"),
            linkedin_url=item.get("linkedInProfile") or item.get("linkedin_url"),
            company_name=item.get("company"),
            website=item.get("companyWebsite") or item.get("website"),
            industry=item.get("industry"),
            location=item.get("city") or item.get("country"),
            category=item.get("replyCategory"),
        )

    def _stats(self, data: Dict[str, Any]) -> PlatformStats:
        return PlatformStats(
            sent=self._int(data.get("deliveredContacts") or data.get("delivered")),
            opened=self._int(data.get("openedContacts") or data.get("opened")),
            clicked=self._int(data.get("clickedContacts") or data.get("clicked")),
            replied=self._int(data.get("repliedContacts") or data.get("replied")),
            bounced=self._int(data.get("bouncedContacts") or data.get("bounced")),
            positive_replies=self._int(data.get("interestedContacts") or data.get("interested")),
            raw=data,
        )
