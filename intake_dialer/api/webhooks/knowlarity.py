"""Knowlarity call-status webhook endpoints."""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from intake_dialer.core.dependencies import CallServices, get_services
from intake_dialer.services.call_session.models import parse_status

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/api/knowlarity/webhook")
async def handle_status_webhook(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    services: CallServices = Depends(get_services),
):
    """
    Apply a call status report keyed by our session id.

    Unknown sessions are acknowledged so the provider does not keep
    redelivering reports for calls that were already swept.
    """
    session_id = payload.get("call_session_id")
    raw_status = payload.get("status")
    logger.info(
        f"[WEBHOOK] Status update received - SessionId: {session_id}, Status: {raw_status}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    if not session_id:
        raise HTTPException(status_code=400, detail="call_session_id is required")
    if parse_status(raw_status) is None:
        raise HTTPException(status_code=400, detail=f"Unsupported call status: {raw_status}")

    updated = services.scheduler.handle_status_update(
        str(session_id),
        raw_status,
        reason=payload.get("reason") or payload.get("error"),
        provider_call_id=payload.get("call_id"),
    )
    if updated is None:
        return {"success": True, "message": "Status ignored"}
    return {"success": True, "message": "Status updated", "status": updated.status.value}


@router.post("/callback")
async def handle_provider_callback(
    payload: Dict[str, Any] = Body(...),
    services: CallServices = Depends(get_services),
):
    """Provider callback keyed by its own call id or the dialed number. Always acknowledged."""
    call_id = payload.get("call_id")
    customer_number = payload.get("customer_number")
    raw_status = payload.get("status")
    logger.info(
        f"[WEBHOOK] Knowlarity callback received - CallId: {call_id}, "
        f"Customer: {customer_number}, Status: {raw_status}"
    )

    session = None
    if call_id:
        session = services.registry.find_by_provider_call_id(str(call_id))
    if session is None and customer_number:
        session = services.registry.find_by_phone_number(str(customer_number))

    if session is None:
        logger.warning(f"[WEBHOOK] No session matches callback - CallId: {call_id}")
    elif parse_status(raw_status) is None:
        logger.warning(
            f"[WEBHOOK] Callback status not understood - SessionId: {session.session_id}, "
            f"Status: {raw_status}"
        )
    else:
        services.scheduler.handle_status_update(
            session.session_id,
            raw_status,
            reason=payload.get("reason"),
            provider_call_id=str(call_id) if call_id else None,
        )

    return {"success": True, "message": "Callback processed"}
