"""Voice agent events and their relay-facing translation."""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class AgentEventType(str, Enum):
    """Agent events the relay understands."""

    USER_TRANSCRIPT = "user_transcript"
    AGENT_TEXT_RESPONSE = "agent_text_response"
    AGENT_AUDIO_DELTA = "agent_audio_delta"
    AGENT_AUDIO_END = "agent_audio_end"
    CONVERSATION_END = "conversation_end"
    KEEPALIVE_PING = "keepalive_ping"

    def __str__(self) -> str:
        return self.value


# ElevenLabs convai wire names
HANDSHAKE_ACK = "conversation_initiation_metadata"
PROVIDER_EVENT_TYPES: Dict[str, AgentEventType] = {
    "user_transcript": AgentEventType.USER_TRANSCRIPT,
    "agent_response": AgentEventType.AGENT_TEXT_RESPONSE,
    "agent_response_audio_delta": AgentEventType.AGENT_AUDIO_DELTA,
    "audio": AgentEventType.AGENT_AUDIO_DELTA,
    "agent_response_audio_end": AgentEventType.AGENT_AUDIO_END,
    "conversation_end": AgentEventType.CONVERSATION_END,
    "ping": AgentEventType.KEEPALIVE_PING,
}


class RelayMessage(BaseModel):
    """An agent event in the shape the relay consumes."""

    type: AgentEventType
    text: Optional[str] = None
    audio: Optional[str] = None
    event_id: Optional[Any] = None


def translate_event(event: Dict[str, Any]) -> Optional[RelayMessage]:
    """
    Translate a raw agent event into a RelayMessage.

    Returns None for events the relay does not act on, including audio or
    transcript events that arrive without a payload.
    """
    event_type = PROVIDER_EVENT_TYPES.get(event.get("type", ""))
    if event_type is None:
        return None

    if event_type == AgentEventType.USER_TRANSCRIPT:
        nested = event.get("user_transcription_event") or event.get("user_transcript_event") or {}
        text = nested.get("user_transcript") or event.get("user_transcript")
        return RelayMessage(type=event_type, text=text) if text else None

    if event_type == AgentEventType.AGENT_TEXT_RESPONSE:
        nested = event.get("agent_response_event") or {}
        text = nested.get("agent_response") or event.get("text")
        return RelayMessage(type=event_type, text=text) if text else None

    if event_type == AgentEventType.AGENT_AUDIO_DELTA:
        nested = event.get("agent_response_audio_delta_event") or {}
        audio = nested.get("delta_audio_base_64") or (event.get("audio_event") or {}).get(
            "audio_base_64"
        )
        return RelayMessage(type=event_type, audio=audio) if audio else None

    if event_type == AgentEventType.KEEPALIVE_PING:
        return RelayMessage(
            type=event_type, event_id=(event.get("ping_event") or {}).get("event_id")
        )

    return RelayMessage(type=event_type)
