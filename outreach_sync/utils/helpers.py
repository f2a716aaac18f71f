"""
Helper utilities
"""
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser

# Webmail domains never identify a company
PERSONAL_EMAIL_DOMAINS = {
    "gmail.com", "googlemail.com", "yahoo.com", "hotmail.com", "outlook.com",
    "live.com", "aol.com", "icloud.com", "me.com", "proton.me", "protonmail.com",
}


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a platform timestamp into naive UTC, or None."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.parse(str(value))
        except (ValueError, OverflowError):
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers"""
    try:
        return numerator / denominator if denominator != 0 else default
    except (TypeError, ZeroDivisionError):
        return default


def rate(numerator: int, denominator: int) -> float:
    """Fraction rounded to 4 places, 0 when nothing was sent."""
    return round(safe_divide(numerator, denominator), 4)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = email.strip().lower()
    return email if "@" in email else None


def extract_domain(value: Optional[str]) -> Optional[str]:
    """Extract a bare company domain from an email address or website URL."""
    if not value:
        return None
    from urllib.parse import urlparse

    value = value.strip().lower()
    if "@" in value and "/" not in value:
        domain = value.rsplit("@", 1)[1]
    else:
        parsed = urlparse(value if "://" in value else f"http://{value}")
        domain = parsed.netloc or parsed.path
    domain = domain.split(":")[0].strip("/")
    if domain.startswith("www."):
        domain = domain[4:]
    return domain or None


def company_domain(email: Optional[str], website: Optional[str] = None) -> Optional[str]:
    """Company domain from website, else from a non-webmail email."""
    domain = extract_domain(website)
    if domain:
        return domain
    domain = extract_domain(email)
    if domain and domain not in PERSONAL_EMAIL_DOMAINS:
        return domain
    return None
