"""Intake analytics and export endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from intake_dialer.core.dependencies import CallServices, get_services

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/analytics")
async def get_analytics(
    time_range: str = Query("all", alias="timeRange"),
    services: CallServices = Depends(get_services),
):
    """Aggregate statistics over saved intake conversations."""
    return await services.tools.execute_tool(
        "get_conversation_analytics", {"timeRange": time_range}
    )


@router.get("/export")
async def export_data(
    format: str = Query("json", pattern="^(json|csv)$"),
    session_ids: Optional[str] = Query(None, alias="sessionIds"),
    services: CallServices = Depends(get_services),
):
    """Export saved patient records as JSON or CSV."""
    ids = [value.strip() for value in session_ids.split(",") if value.strip()] if session_ids else None
    logger.info(f"[EXPORT] Export requested - Format: {format}, Sessions: {ids or 'all'}")
    export = await services.tools.execute_tool(
        "export_patient_data", {"format": format, "sessionIds": ids}
    )
    if format == "csv":
        return Response(
            content=export["data"],
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="patient_data.csv"'},
        )
    return export
