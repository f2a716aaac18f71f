"""Authentication service: resolves bearer credentials to a caller"""
import secrets
from dataclasses import dataclass
from typing import Optional

from outreach_sync.config import Settings, get_settings

SERVICE_CALLER = "service"


@dataclass(frozen=True)
class Caller:
    id: str
    is_service: bool = False


def parse_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_caller(token: Optional[str], settings: Optional[Settings] = None) -> Optional[Caller]:
    """Return the caller for a bearer token, or None when it is unknown."""
    if not token:
        return None
    settings = settings or get_settings()

    if settings.service_role_key and secrets.compare_digest(token, settings.service_role_key):
        return Caller(id=SERVICE_CALLER, is_service=True)

    for known, caller_id in settings.api_tokens.items():
        if secrets.compare_digest(token, known):
            return Caller(id=caller_id)
    return None
