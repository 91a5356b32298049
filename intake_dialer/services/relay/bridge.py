"""Duplex audio relay between the telephony leg and the voice agent leg."""
import base64
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from intake_dialer.core.exceptions import HandshakeError, RelayTransportError
from intake_dialer.services.agent.events import AgentEventType, RelayMessage
from intake_dialer.services.agent.manager import AgentSessionManager
from intake_dialer.services.call_session.models import CallSession, CallStatus
from intake_dialer.services.call_session.registry import CallSessionRegistry
from intake_dialer.services.call_session.retry import RetryScheduler
from intake_dialer.services.telephony.dialer import DEFAULT_TREATMENT_TYPE

logger = logging.getLogger(__name__)

WS_NORMAL_CLOSURE = 1000
WS_GOING_AWAY = 1001
WS_PROTOCOL_ERROR = 1002
WS_NO_STATUS = 1005
WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011
CLEAN_CLOSE_CODES = {WS_NORMAL_CLOSURE, WS_GOING_AWAY, WS_NO_STATUS}

# Metadata keys that, when present, must name this relay's session.
SESSION_ID_KEYS = ("client_meta_id", "call_session_id", "session_id")

DtmfHandler = Callable[[str, Optional[str]], Awaitable[None]]


class RelayState(str, Enum):
    """Relay lifecycle."""

    AWAITING_METADATA = "awaiting_metadata"
    STREAMING = "streaming"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


def build_play_audio_command(audio_base64: str, sample_rate: int) -> Dict[str, Any]:
    """Knowlarity playback command for one chunk of agent audio."""
    return {
        "type": "playAudio",
        "data": {
            "audioContentType": "raw",
            "sampleRate": sample_rate,
            "audioContent": audio_base64,
        },
    }


def build_agent_context(session: CallSession) -> Dict[str, Any]:
    treatment_type = session.patient_data.treatment_type or DEFAULT_TREATMENT_TYPE
    return {
        "callSessionId": session.session_id,
        "patientName": session.patient_data.name,
        "treatmentType": treatment_type,
        "query": treatment_type,
    }


class AudioRelayBridge:
    """
    Relays one call between the telephony socket and its agent session.

    The first telephony frame must be JSON metadata; after it the bridge
    opens the agent leg and streams. Binary frames are caller PCM audio,
    text frames are control messages. Agent audio goes back as playAudio
    commands and is dropped once the telephony leg is gone.
    """

    def __init__(
        self,
        session_id: str,
        telephony: WebSocket,
        registry: CallSessionRegistry,
        scheduler: RetryScheduler,
        agent_manager: AgentSessionManager,
        sample_rate: int = 16000,
        dtmf_handler: Optional[DtmfHandler] = None,
    ):
        self.session_id = session_id
        self.telephony = telephony
        self.registry = registry
        self.scheduler = scheduler
        self.agent_manager = agent_manager
        self.sample_rate = sample_rate
        self.dtmf_handler = dtmf_handler
        self.state = RelayState.AWAITING_METADATA
        self.transcript: List[str] = []

    @property
    def telephony_open(self) -> bool:
        return (
            self.telephony.client_state == WebSocketState.CONNECTED
            and self.telephony.application_state == WebSocketState.CONNECTED
        )

    async def run(self) -> None:
        """Serve the telephony leg until either leg closes."""
        session = self.registry.get(self.session_id)
        if session is None or session.is_terminal:
            reason = "Call session not found" if session is None else "Call session already finished"
            logger.error(f"[RELAY] {reason} - SessionId: {self.session_id}")
            self.state = RelayState.CLOSED
            await self._close_telephony(WS_POLICY_VIOLATION, reason)
            return

        logger.info(f"[RELAY] Telephony leg connected - SessionId: {self.session_id}")
        try:
            while self.state is not RelayState.CLOSED:
                message = await self.telephony.receive()
                if message["type"] == "websocket.disconnect":
                    await self._on_telephony_disconnect(message.get("code", WS_NORMAL_CLOSURE))
                    break
                await self._handle_frame(message)
        except WebSocketDisconnect as e:
            await self._on_telephony_disconnect(e.code)
        except Exception as e:
            logger.error(
                f"[RELAY] Relay error - SessionId: {self.session_id}, "
                f"Error: {type(e).__name__}: {e}",
                exc_info=True,
            )
            await self.close(
                error=RelayTransportError(str(e)),
                reason="relay_error",
                code=WS_INTERNAL_ERROR,
            )

    async def _handle_frame(self, message: Dict[str, Any]) -> None:
        data = message.get("bytes")
        text = message.get("text")

        if self.state is RelayState.AWAITING_METADATA:
            await self._handle_metadata(text)
            return

        if data is not None:
            audio_base64 = base64.b64encode(data).decode("ascii")
            await self.agent_manager.send_audio(self.session_id, audio_base64)
        elif text is not None:
            await self._handle_control(text)

    async def _handle_metadata(self, text: Optional[str]) -> None:
        if text is None:
            await self._protocol_violation("first frame was binary, expected JSON metadata")
            return
        try:
            metadata = json.loads(text)
        except ValueError:
            await self._protocol_violation("first frame is not valid JSON")
            return
        if not isinstance(metadata, dict):
            await self._protocol_violation("metadata frame is not a JSON object")
            return
        for key in SESSION_ID_KEYS:
            value = metadata.get(key)
            if value and str(value) != self.session_id:
                await self._protocol_violation(f"metadata {key}={value} does not match session")
                return

        logger.info(f"[RELAY] Metadata received - SessionId: {self.session_id}")
        self.registry.update(self.session_id, telephony_metadata=metadata)
        self.scheduler.handle_status_update(self.session_id, CallStatus.CONNECTED)

        session = self.registry.get(self.session_id)
        if session is None:
            await self.close(
                error=RelayTransportError("session purged during relay setup"),
                reason="relay_error",
                code=WS_INTERNAL_ERROR,
            )
            return

        try:
            await self.agent_manager.create_conversation(
                self.session_id,
                build_agent_context(session),
                on_event=self.handle_agent_event,
                on_close=self._on_agent_closed,
            )
        except HandshakeError as e:
            logger.error(f"[RELAY] Agent handshake failed - SessionId: {self.session_id}, Error: {e}")
            await self.close(error=e, reason="agent_handshake_failed", code=WS_INTERNAL_ERROR)
            return

        if self.state is RelayState.AWAITING_METADATA:
            self.state = RelayState.STREAMING

    async def _handle_control(self, text: str) -> None:
        try:
            data = json.loads(text)
        except ValueError:
            logger.warning(
                f"[RELAY] Non-JSON text frame ignored - SessionId: {self.session_id}, "
                f"Frame: {text[:100]}"
            )
            return
        if not isinstance(data, dict):
            return

        frame_type = data.get("type")
        if frame_type == "call_start":
            logger.info(f"[RELAY] Call started - SessionId: {self.session_id}")
            self.scheduler.handle_status_update(self.session_id, CallStatus.ACTIVE)
        elif frame_type == "call_end":
            logger.info(f"[RELAY] Call ended - SessionId: {self.session_id}")
            self._store_transcript()
            self.scheduler.handle_status_update(self.session_id, CallStatus.COMPLETED)
            await self.agent_manager.end_conversation(self.session_id)
        elif frame_type == "dtmf":
            digit = data.get("digit")
            logger.info(f"[RELAY] DTMF received - SessionId: {self.session_id}, Digit: {digit}")
            if self.dtmf_handler is not None:
                await self.dtmf_handler(self.session_id, digit)
        else:
            logger.debug(
                f"[RELAY] Unknown control frame - SessionId: {self.session_id}, Type: {frame_type}"
            )

    async def handle_agent_event(self, message: RelayMessage) -> None:
        """Route one agent event towards the telephony leg."""
        if message.type == AgentEventType.AGENT_AUDIO_DELTA:
            await self._play_audio(message.audio)
        elif message.type == AgentEventType.USER_TRANSCRIPT:
            logger.info(f"[RELAY] Patient: {message.text} - SessionId: {self.session_id}")
            self.transcript.append(f"Patient: {message.text}")
        elif message.type == AgentEventType.AGENT_TEXT_RESPONSE:
            logger.info(f"[RELAY] Agent: {message.text} - SessionId: {self.session_id}")
            self.transcript.append(f"Agent: {message.text}")
        elif message.type == AgentEventType.CONVERSATION_END:
            logger.info(f"[RELAY] Agent ended the conversation - SessionId: {self.session_id}")
            await self.close(status=CallStatus.COMPLETED)
        else:
            logger.debug(f"[RELAY] Agent event {message.type} - SessionId: {self.session_id}")

    async def _play_audio(self, audio_base64: Optional[str]) -> None:
        if not audio_base64:
            return
        if self.state is RelayState.CLOSED or not self.telephony_open:
            logger.debug(f"[RELAY] Telephony leg closed, agent audio dropped - SessionId: {self.session_id}")
            return
        command = build_play_audio_command(audio_base64, self.sample_rate)
        try:
            await self.telephony.send_text(json.dumps(command))
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(
                f"[RELAY] Agent audio dropped - SessionId: {self.session_id}, "
                f"Error: {type(e).__name__}"
            )

    async def _on_telephony_disconnect(self, code: Optional[int]) -> None:
        if code in CLEAN_CLOSE_CODES or code is None:
            logger.info(f"[RELAY] Telephony leg closed - SessionId: {self.session_id}, Code: {code}")
            await self.close()
            return
        error = RelayTransportError(f"Telephony leg closed with code {code}", code=code)
        logger.warning(f"[RELAY] {error} - SessionId: {self.session_id}")
        await self.close(error=error, reason="relay_transport_error")

    async def _on_agent_closed(self, error: Optional[Exception]) -> None:
        if error is None:
            await self.close()
        else:
            await self.close(error=error, reason="relay_transport_error", code=WS_INTERNAL_ERROR)

    async def _protocol_violation(self, detail: str) -> None:
        logger.warning(f"[RELAY] Protocol violation - SessionId: {self.session_id}, Detail: {detail}")
        await self.close(
            error=RelayTransportError(detail, code=WS_PROTOCOL_ERROR),
            reason="protocol_violation",
            code=WS_PROTOCOL_ERROR,
        )

    async def close(
        self,
        error: Optional[Exception] = None,
        reason: Optional[str] = None,
        code: Optional[int] = None,
        status: Optional[CallStatus] = None,
    ) -> None:
        """
        Tear down both legs and record the final call status.

        Clean closes end as ``disconnected`` (or the explicit ``status``),
        errors as ``failed`` with a generic reason. Calling it again is a no-op.
        """
        if self.state is RelayState.CLOSED:
            return
        self.state = RelayState.CLOSED

        await self.agent_manager.end_conversation(self.session_id)
        self._store_transcript()
        final_status = status or (CallStatus.FAILED if error else CallStatus.DISCONNECTED)
        session = self.registry.get(self.session_id)
        if session is not None and not session.is_terminal:
            self.scheduler.handle_status_update(
                self.session_id,
                final_status,
                reason=(reason or "relay_error") if final_status == CallStatus.FAILED else None,
            )

        if self.telephony_open:
            default_code = WS_NORMAL_CLOSURE if error is None else WS_INTERNAL_ERROR
            await self._close_telephony(code or default_code)
        logger.info(f"[RELAY] Relay closed - SessionId: {self.session_id}, Status: {final_status}")

    def _store_transcript(self) -> None:
        if self.transcript:
            self.registry.update(self.session_id, transcript=list(self.transcript))

    async def _close_telephony(self, code: int, reason: Optional[str] = None) -> None:
        try:
            await self.telephony.close(code=code, reason=reason)
        except RuntimeError as e:
            logger.debug(f"[RELAY] Telephony leg already closed - SessionId: {self.session_id}, {e}")
