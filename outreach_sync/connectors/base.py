"""
Base Platform Adapter

Every outreach platform adapter inherits from this class and returns the
normalized records below, so the orchestrator never sees raw payloads.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from outreach_sync.connectors.http_client import RateLimitedClient
from outreach_sync.utils.helpers import parse_timestamp


@dataclass
class PlatformAccount:
    """Sending mailbox"""
    external_id: str
    email_address: Optional[str] = None
    sender_name: Optional[str] = None
    daily_limit: Optional[int] = None
    warmup_enabled: Optional[bool] = None
    status: Optional[str] = None


@dataclass
class PlatformStats:
    """Totals as the platform reports them"""
    sent: int = 0
    opened: int = 0
    clicked: int = 0
    replied: int = 0
    bounced: int = 0
    positive_replies: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlatformCampaign:
    external_id: str
    name: str
    status: str = "active"
    created_at: Optional[datetime] = None


@dataclass
class PlatformVariant:
    """One template at a step; steps without A/B tests have a single variant"""
    external_id: str
    step_number: int
    variant_label: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    delay_days: Optional[int] = None
    step_type: str = "email"


@dataclass
class PlatformContact:
    external_id: str
    email: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    title: Optional[str] = None
    phone: Optional[str] = None
    linkedin_url: Optional[str] = None
    company_name: Optional[str] = None
    website: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None  # Platform lead category, if any


@dataclass
class PlatformEvent:
    """
    One message event for a contact in a campaign

    event_type: sent, opened, clicked, replied, bounced, unsubscribed
    """
    event_type: str
    step_number: Optional[int] = None
    occurred_at: Optional[datetime] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    message_id: Optional[str] = None
    category: Optional[str] = None


class PlatformAdapter(ABC):
    """
    Base class for outreach platform adapters

    Implements common patterns:
    - Shared rate-limited client
    - Payload unwrapping
    - Offset pagination over contacts
    """

    source_type: str = ""

    def __init__(self, client: RateLimitedClient, page_size: int = 100):
        self.client = client
        self.page_size = page_size

    @abstractmethod
    async def list_accounts(self) -> List[PlatformAccount]:
        """Sending mailboxes for the connection"""

    @abstractmethod
    async def get_global_stats(self) -> Optional[PlatformStats]:
        """Account-wide totals, None when the platform has none"""

    @abstractmethod
    async def list_campaigns_page(self, offset: int) -> Tuple[List[PlatformCampaign], Optional[int]]:
        """
        One page of campaigns

        Returns:
            (campaigns, next_offset) where next_offset is None on the last page
        """

    @abstractmethod
    async def get_campaign_stats(self, campaign: PlatformCampaign) -> Optional[PlatformStats]:
        """Platform-reported totals for one campaign"""

    @abstractmethod
    async def list_variants(self, campaign: PlatformCampaign) -> List[PlatformVariant]:
        """Steps and their templates"""

    @abstractmethod
    async def list_contacts_page(self, campaign: PlatformCampaign, offset: int) -> Tuple[List[PlatformContact], Optional[int]]:
        """One page of enrolled contacts"""

    @abstractmethod
    async def list_contact_events(self, campaign: PlatformCampaign, contact: PlatformContact) -> List[PlatformEvent]:
        """Message history for one contact in one campaign"""

    async def iter_contacts(self, campaign: PlatformCampaign) -> AsyncIterator[List[PlatformContact]]:
        """Yield contact pages until the platform reports no more"""
        offset: Optional[int] = 0
        while offset is not None:
            contacts, offset = await self.list_contacts_page(campaign, offset)
            if contacts:
                yield contacts

    async def aclose(self):
        await self.client.aclose()

    def _next_offset(self, offset: int, items: List[Any]) -> Optional[int]:
        """Offset pagination: a short page is the last page"""
        if len(items) < self.page_size:
            return None
        return offset + len(items)

    @staticmethod
    def _unwrap(payload: Any, *keys: str) -> List[Dict[str, Any]]:
        """Accept a bare list or a list nested under any of `keys`"""
        if payload is None:
            return []
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            for key in keys:
                value = payload.get(key)
                if isinstance(value, list):
                    return value
        return []

    @staticmethod
    def _int(value: Any) -> int:
        try:
            return int(value or 0)
        except (TypeError, ValueError):
            return 0

    @staticmethod
    def _date(value: Any) -> Optional[datetime]:
        return parse_timestamp(value)
