"""Telephony audio stream websocket."""
import logging

from fastapi import APIRouter, Depends, WebSocket

from intake_dialer.core.dependencies import CallServices, get_services

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/call-stream/{session_id}")
async def call_stream(
    websocket: WebSocket,
    session_id: str,
    services: CallServices = Depends(get_services),
):
    """Relay one call's audio between Knowlarity and the voice agent."""
    await websocket.accept()
    logger.info(f"[STREAM] Telephony stream accepted - SessionId: {session_id}")
    await services.relay_hub.serve(session_id, websocket)
    logger.info(f"[STREAM] Telephony stream finished - SessionId: {session_id}")
