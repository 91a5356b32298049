"""Agent session model."""
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from intake_dialer.services.call_session.models import utcnow


class AgentSession:
    """Agent leg of one call, owned by its call session."""

    def __init__(
        self,
        session_id: str,
        websocket: Any,
        context: Dict[str, Any],
        conversation_id: Optional[str] = None,
        negotiated_audio_format: Optional[str] = None,
    ):
        self.session_id = session_id
        self.websocket = websocket
        self.context = context
        self.conversation_id = conversation_id
        self.negotiated_audio_format = negotiated_audio_format
        self.is_active = True
        self.created_at: datetime = utcnow()
        self.receive_task: Optional[asyncio.Task] = None
        self.greeting_task: Optional[asyncio.Task] = None
