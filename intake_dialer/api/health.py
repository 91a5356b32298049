"""Health check endpoint."""
import logging

from fastapi import APIRouter, Depends, Request

from intake_dialer.core.dependencies import CallServices, get_services
from intake_dialer.services.call_session.models import utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(request: Request, services: CallServices = Depends(get_services)):
    """Health check endpoint."""
    logger.debug(
        f"[HEALTH] Health check requested - Client: {request.client.host if request.client else 'unknown'}"
    )
    settings = services.settings
    return {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "services": {
            "elevenlabs": bool(settings.elevenlabs_api_key and settings.elevenlabs_agent_id),
            "dial_strategy": services.client.strategy.name,
            "test_mode": settings.knowlarity_test_mode,
        },
    }
