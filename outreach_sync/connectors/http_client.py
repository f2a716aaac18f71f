"""
Rate-limited HTTP client for outreach platform APIs

Every call waits a minimum delay first (list and statistics endpoints have
separate platform quotas, so callers pass the delay per call). 429s honour
Retry-After; network errors and 5xx back off exponentially.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from dateutil import parser as date_parser

from outreach_sync.utils.logger import log
from outreach_sync.utils.retry import calculate_backoff


class PlatformAPIError(Exception):
    """Platform call failed permanently (or retries ran out)"""

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class RateLimitExceeded(PlatformAPIError):
    """Still throttled after the last retry"""


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header (delta-seconds or HTTP-date) into seconds.

    Returns None when the header is missing or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class RateLimitedClient:
    """
    Thin async wrapper over httpx with per-call pacing and retry policy.

    `sleep` is injectable so pacing can be verified without real waits.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        default_params: Optional[Dict[str, Any]] = None,
        default_delay: float = 1.0,
        max_retries: int = 3,
        backoff_base: float = 10.0,
        max_wait: float = 60.0,
        network_backoff_base: float = 2.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "platform",
    ):
        self.default_params = default_params or {}
        self.default_delay = default_delay
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_wait = max_wait
        self.network_backoff_base = network_backoff_base
        self.sleep = sleep
        self.label = label
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout,
            transport=transport,
        )

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        delay: Optional[float] = None,
        retries: Optional[int] = None,
        allow_404: bool = False,
    ) -> Any:
        """
        Issue one platform call.

        Args:
            endpoint: Path relative to the base URL
            delay: Seconds to wait before each attempt (defaults to default_delay)
            retries: Attempts before giving up (defaults to max_retries)
            allow_404: Treat 404 as "no data" and return None

        Returns:
            Parsed JSON body, or None for an empty body / allowed 404
        """
        delay = self.default_delay if delay is None else delay
        attempts = self.max_retries if retries is None else retries
        query = {**self.default_params, **(params or {})}
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            await self.sleep(delay)

            try:
                response = await self._client.request(method, endpoint, params=query or None, json=json)
            except httpx.TransportError as e:
                last_error = e
                if attempt >= attempts:
                    break
                wait = calculate_backoff(attempt, base_delay=self.network_backoff_base, max_delay=self.max_wait)
                log.warning(f"{self.label} {endpoint} network error: {e}. Retrying in {wait:.1f}s")
                await self.sleep(wait)
                continue

            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                wait = retry_after if retry_after is not None else min(self.max_wait, self.backoff_base * attempt)
                if attempt >= attempts:
                    raise RateLimitExceeded(
                        f"{self.label} rate limit persisted after {attempts} attempts",
                        status_code=429,
                        endpoint=endpoint,
                    )
                log.warning(f"{self.label} rate limited on {endpoint}, waiting {wait:.1f}s (attempt {attempt}/{attempts})")
                await self.sleep(wait)
                continue

            if response.status_code == 404 and allow_404:
                return None

            if response.status_code >= 500:
                last_error = PlatformAPIError(
                    f"{self.label} {endpoint} returned {response.status_code}",
                    status_code=response.status_code,
                    endpoint=endpoint,
                )
                if attempt >= attempts:
                    break
                wait = calculate_backoff(attempt, base_delay=self.network_backoff_base, max_delay=self.max_wait)
                log.warning(f"{last_error}. Retrying in {wait:.1f}s")
                await self.sleep(wait)
                continue

            if response.status_code >= 400:
                raise PlatformAPIError(
                    f"{self.label} {endpoint} returned {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                    endpoint=endpoint,
                )

            if not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                raise PlatformAPIError(
                    f"{self.label} {endpoint} returned a non-JSON body",
                    status_code=response.status_code,
                    endpoint=endpoint,
                )

        if isinstance(last_error, PlatformAPIError):
            raise last_error
        raise PlatformAPIError(
            f"{self.label} {endpoint} failed after {attempts} attempts: {last_error}",
            endpoint=endpoint,
        )

    async def aclose(self):
        await self._client.aclose()
