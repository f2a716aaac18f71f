"""Outreach platform connectors"""
import asyncio
from typing import Awaitable, Callable, Optional

import httpx

from outreach_sync.config import Settings
from outreach_sync.connectors.base import PlatformAdapter
from outreach_sync.connectors.http_client import PlatformAPIError, RateLimitedClient, RateLimitExceeded
from outreach_sync.connectors.phoneburner import PhoneBurnerAdapter
from outreach_sync.connectors.replyio import ReplyioAdapter
from outreach_sync.connectors.smartlead import SmartleadAdapter

SUPPORTED_SOURCE_TYPES = ("replyio", "smartlead", "phoneburner")


def build_adapter(
    source_type: str,
    api_key: str,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PlatformAdapter:
    """Create the adapter (and its rate-limited client) for a data source type"""
    client_options = dict(
        max_retries=settings.api_max_retries,
        backoff_base=settings.rate_limit_backoff_base_seconds,
        max_wait=settings.rate_limit_max_wait_seconds,
        network_backoff_base=settings.network_backoff_base_seconds,
        timeout=settings.api_timeout_seconds,
        transport=transport,
        sleep=sleep,
    )

    if source_type == "replyio":
        client = RateLimitedClient(
            settings.replyio_base_url,
            headers={"X-Api-Key": api_key, "Accept": "application/json"},
            default_delay=settings.replyio_list_delay_seconds,
            label="Reply.io",
            **client_options,
        )
        return ReplyioAdapter(
            client,
            page_size=settings.contacts_page_size,
            list_delay=settings.replyio_list_delay_seconds,
            stats_delay=settings.replyio_stats_delay_seconds,
        )

    if source_type == "smartlead":
        client = RateLimitedClient(
            settings.smartlead_base_url,
            headers={"Accept": "application/json"},
            default_params={"api_key": api_key},
            default_delay=settings.smartlead_delay_seconds,
            label="SmartLead",
            **client_options,
        )
        return SmartleadAdapter(client, page_size=settings.contacts_page_size)

    if source_type == "phoneburner":
        client = RateLimitedClient(
            settings.phoneburner_base_url,
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
            default_delay=settings.phoneburner_delay_seconds,
            label="PhoneBurner",
            **client_options,
        )
        return PhoneBurnerAdapter(
            client,
            page_size=settings.contacts_page_size,
            history_days=settings.phoneburner_history_days,
            usage_days=settings.phoneburner_usage_days,
        )

    raise ValueError(f"Unsupported source type: {source_type}")


__all__ = [
    "PlatformAdapter",
    "PlatformAPIError",
    "PhoneBurnerAdapter",
    "RateLimitExceeded",
    "RateLimitedClient",
    "ReplyioAdapter",
    "SmartleadAdapter",
    "SUPPORTED_SOURCE_TYPES",
    "build_adapter",
]
