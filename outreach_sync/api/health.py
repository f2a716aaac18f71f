"""
Health check endpoint
"""
from fastapi import APIRouter

from outreach_sync import __version__
from outreach_sync.config import get_settings
from outreach_sync.utils.helpers import utcnow

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__,
        "environment": settings.environment,
        "continuation_mode": settings.continuation_mode,
    }
