"""Outbound call API endpoints."""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from intake_dialer.core.dependencies import CallServices, get_services
from intake_dialer.core.exceptions import ProviderDialError, ValidationError

router = APIRouter()
logger = logging.getLogger(__name__)


class OutboundCallRequest(BaseModel):
    """Initiate request; patient data is validated by the dialer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    patient_data: Optional[Dict[str, Any]] = None


@router.post("/api/outbound-call")
async def initiate_outbound_call(
    request: Request,
    body: OutboundCallRequest,
    services: CallServices = Depends(get_services),
):
    """Start an outbound intake call for a patient."""
    logger.info(
        f"[OUTBOUND CALL] Request received - "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    try:
        result = await services.dialer.initiate_outbound_call(body.patient_data)
    except ValidationError as e:
        logger.warning(f"[OUTBOUND CALL] Invalid request - Error: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderDialError as e:
        return JSONResponse(
            status_code=502,
            content={
                "success": False,
                "error": e.message,
                "provider_status": e.status_code,
                "provider_response": e.payload,
            },
        )

    return {
        "success": True,
        "message": "Outbound call initiated successfully",
        "sessionId": result.session_id,
        "providerCallId": result.provider_call_id,
        "patientData": result.patient_data.model_dump(by_alias=True, mode="json"),
    }


@router.get("/api/outbound-call/{session_id}")
async def get_call_status(session_id: str, services: CallServices = Depends(get_services)):
    """Get one call session."""
    session = services.registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Call session not found")
    return {"success": True, "session": session.to_response()}


@router.get("/api/outbound-calls")
async def list_active_calls(services: CallServices = Depends(get_services)):
    """List the sessions the registry still holds, with per-status counts."""
    sessions = services.registry.list_active()
    logger.debug(f"[OUTBOUND CALLS] Listing {len(sessions)} sessions")
    return {
        "success": True,
        "activeCalls": [session.to_response() for session in sessions],
        "stats": services.registry.stats(),
    }
