"""
PhoneBurner Adapter

Dialer call history from the PhoneBurner REST API. PhoneBurner has no
sequences: every call is logged as a contact activity with a disposition,
so the connection is synced as one call-history campaign whose touches
are a contact's calls in date order. Usage totals stand in for stats.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from outreach_sync.connectors.base import (
    PlatformAdapter, PlatformAccount, PlatformCampaign, PlatformContact,
    PlatformEvent, PlatformStats, PlatformVariant,
)
from outreach_sync.connectors.http_client import RateLimitedClient
from outreach_sync.utils.helpers import utcnow

CALL_HISTORY_ID = "call-history"

# Activity ids for "Called a Prospect" and "Received Call"
CALL_ACTIVITY_IDS = {"41", "42"}


def extract_activities(payload: Any) -> List[Dict[str, Any]]:
    """Activities sit under contact_activities, nested in one of several ways"""
    if not isinstance(payload, dict):
        return []
    wrapper = payload.get("contact_activities")
    if isinstance(wrapper, list):
        return wrapper
    if isinstance(wrapper, dict):
        for key in ("contact_activities", "activities"):
            if isinstance(wrapper.get(key), list):
                return wrapper[key]
        single = wrapper.get("contact_activity")
        if single:
            return single if isinstance(single, list) else [single]
    if isinstance(payload.get("activities"), list):
        return payload["activities"]
    return []


def is_call(activity: Dict[str, Any]) -> bool:
    return (
        "call" in str(activity.get("activity") or "").lower()
        or str(activity.get("activity_id")) in CALL_ACTIVITY_IDS
        or any(activity.get(key) is not None for key in ("duration", "disposition", "recording_url"))
    )


class PhoneBurnerAdapter(PlatformAdapter):
    """PhoneBurner API adapter"""

    source_type = "phoneburner"

    def __init__(
        self,
        client: RateLimitedClient,
        page_size: int = 100,
        history_days: int = 180,
        usage_days: int = 90,
    ):
        super().__init__(client, page_size=page_size)
        self.history_days = history_days
        self.usage_days = usage_days

    async def list_accounts(self) -> List[PlatformAccount]:
        payload = await self.client.request("/members", allow_404=True)
        members = (payload or {}).get("members")
        if isinstance(members, dict):
            members = members.get("members")
        if isinstance(members, list) and members and isinstance(members[0], list):
            members = members[0]
        return [
            PlatformAccount(
                external_id=str(item.get("user_id") or item.get("member_user_id")),
                email_address=(item.get("email_address") or item.get("email") or "").lower() or None,
                sender_name=f"{item.get('first_name') or ''} {item.get('last_name') or ''}".strip() or None,
                status=item.get("status"),
            )
            for item in (members or [])
            if isinstance(item, dict)
        ]

    async def get_global_stats(self) -> Optional[PlatformStats]:
        today = utcnow().date()
        payload = await self.client.request(
            "/dialsession/usage",
            params={
                "date_start": (today - timedelta(days=self.usage_days)).isoformat(),
                "date_end": today.isoformat(),
            },
            allow_404=True,
        )
        usage = (payload or {}).get("usage")
        if not isinstance(usage, dict) or not usage:
            return None

        totals = PlatformStats(raw={"members": len(usage)})
        for member in usage.values():
            # Dialed calls count as sends and connected calls as replies
            totals.sent += self._int(member.get("calls"))
            totals.replied += self._int(member.get("connected"))
        return totals

    async def list_campaigns_page(self, offset: int) -> Tuple[List[PlatformCampaign], Optional[int]]:
        return [PlatformCampaign(CALL_HISTORY_ID, "PhoneBurner call history")], None

    async def get_campaign_stats(self, campaign: PlatformCampaign) -> Optional[PlatformStats]:
        return await self.get_global_stats()

    async def list_variants(self, campaign: PlatformCampaign) -> List[PlatformVariant]:
        return []

    async def list_contacts_page(self, campaign: PlatformCampaign, offset: int) -> Tuple[List[PlatformContact], Optional[int]]:
        page = offset // self.page_size + 1
        payload = await self.client.request("/contacts", params={"page": page, "page_size": self.page_size})
        data = (payload or {}).get("contacts") or {}
        if isinstance(data, dict):
            items, total_pages = data.get("contacts") or [], self._int(data.get("total_pages"))
        else:
            items, total_pages = data, 0

        contacts = [self._contact(item) for item in items]
        if total_pages:
            next_offset = page * self.page_size if page < total_pages else None
        else:
            next_offset = self._next_offset(offset, items)
        return [c for c in contacts if c.email], next_offset

    async def list_contact_events(self, campaign: PlatformCampaign, contact: PlatformContact) -> List[PlatformEvent]:
        calls: List[Dict[str, Any]] = []
        page, total_pages = 1, 1
        while page <= total_pages:
            payload = await self.client.request(
                f"/contacts/{contact.external_id}/activities",
                params={"days": self.history_days, "page": page, "page_size": self.page_size},
                allow_404=True,
            )
            wrapper = (payload or {}).get("contact_activities")
            if isinstance(wrapper, dict):
                total_pages = self._int(wrapper.get("total_pages")) or 1
            calls.extend(a for a in extract_activities(payload) if is_call(a))
            page += 1

        calls.sort(key=lambda a: str(a.get("date") or ""))
        events: List[PlatformEvent] = []
        for step, call in enumerate(calls, start=1):
            at = self._date(call.get("date"))
            disposition = call.get("disposition") or call.get("activity")
            events.append(PlatformEvent(
                event_type="sent",
                step_number=step,
                occurred_at=at,
                subject=disposition,
                message_id=f"{contact.external_id}_{call.get('user_activity_id')}",
            ))
            if self._int(call.get("duration")) > 0:
                events.append(PlatformEvent(
                    event_type="replied",
                    step_number=step,
                    occurred_at=at,
                    body=call.get("notes"),
                    category=call.get("disposition"),
                ))
        return events

    def _contact(self, item: Dict[str, Any]) -> PlatformContact:
        return PlatformContact(
            external_id=str(item.get("contact_user_id") or item.get("user_id")),
            email=item.get("email") or item.get("primary_email"),
            first_name=item.get("first_name"),
            last_name=item.get("last_name"),
            phone=item.get("phone") or item.get("primary_phone"),
            company_name=item.get("company"),
        )
