"""ElevenLabs conversational agent session manager."""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from intake_dialer.core.config import Settings
from intake_dialer.core.exceptions import HandshakeError, RelayTransportError
from intake_dialer.services.agent.events import (
    HANDSHAKE_ACK,
    PROVIDER_EVENT_TYPES,
    AgentEventType,
    RelayMessage,
    translate_event,
)
from intake_dialer.services.agent.session import AgentSession
from intake_dialer.services.call_session.models import utcnow
from intake_dialer.services.intake.tools import IntakeToolRegistry

logger = logging.getLogger(__name__)

EventHandler = Callable[[RelayMessage], Awaitable[None]]
CloseHandler = Callable[[Optional[Exception]], Awaitable[None]]


class AgentSessionManager:
    """
    Owns one agent websocket per active call.

    Inbound agent events are translated to RelayMessages and handed to the
    handler registered for that call's session id.
    """

    def __init__(
        self,
        settings: Settings,
        tools: Optional[IntakeToolRegistry] = None,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        self.settings = settings
        self.tools = tools
        self._connect = connect
        self._sessions: Dict[str, AgentSession] = {}
        self._handlers: Dict[str, EventHandler] = {}
        self._close_handlers: Dict[str, CloseHandler] = {}

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def get_conversation(self, session_id: str) -> Optional[AgentSession]:
        return self._sessions.get(session_id)

    def _handshake_message(self, session_id: str, context: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": "conversation_initiation_client_data",
            "user_id": session_id,
            "dynamic_variables": {
                key: value
                for key, value in context.items()
                if isinstance(value, (str, int, float, bool))
            },
        }

    async def create_conversation(
        self,
        session_id: str,
        context: Dict[str, Any],
        on_event: EventHandler,
        on_close: Optional[CloseHandler] = None,
    ) -> AgentSession:
        """
        Open the agent leg for a call and wait for the handshake to complete.

        Args:
            session_id: Call session the agent leg belongs to
            context: Dynamic variables for the agent (treatment type, name, ...)
            on_event: Receives every translated agent event for this call
            on_close: Called once if the agent side ends the leg, with the
                transport error or None for a clean close

        Returns:
            The active AgentSession

        Raises:
            HandshakeError: Connection failed or no acknowledgement in time
        """
        if session_id in self._sessions:
            logger.warning(f"[AGENT] Replacing existing conversation - SessionId: {session_id}")
            await self.end_conversation(session_id)

        url = f"{self.settings.elevenlabs_ws_url}?agent_id={self.settings.elevenlabs_agent_id}"
        timeout = self.settings.agent_handshake_timeout
        logger.info(f"[AGENT] Connecting to ElevenLabs - SessionId: {session_id}")

        try:
            websocket = await asyncio.wait_for(
                self._connect(
                    url, additional_headers={"xi-api-key": self.settings.elevenlabs_api_key}
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, OSError, WebSocketException) as e:
            raise HandshakeError(
                f"Agent connection failed for session {session_id}: {type(e).__name__}: {e}"
            ) from e

        session = AgentSession(session_id, websocket, context)
        try:
            await websocket.send(json.dumps(self._handshake_message(session_id, context)))
            await asyncio.wait_for(self._await_handshake(session), timeout=timeout)
        except (asyncio.TimeoutError, OSError, ValueError, WebSocketException) as e:
            await self._close_socket(websocket)
            raise HandshakeError(
                f"Agent handshake failed for session {session_id}: {type(e).__name__}: {e}"
            ) from e

        self._sessions[session_id] = session
        self._handlers[session_id] = on_event
        if on_close is not None:
            self._close_handlers[session_id] = on_close

        loop = asyncio.get_running_loop()
        session.receive_task = loop.create_task(self._receive_loop(session))
        if self.settings.agent_greeting_text:
            session.greeting_task = loop.create_task(self._send_greeting(session_id))

        logger.info(
            f"[AGENT] Conversation ready - SessionId: {session_id}, "
            f"ConversationId: {session.conversation_id}, "
            f"AudioFormat: {session.negotiated_audio_format}"
        )
        return session

    async def _await_handshake(self, session: AgentSession) -> None:
        while True:
            event = json.loads(await session.websocket.recv())
            if not isinstance(event, dict):
                continue
            event_type = event.get("type")
            if event_type == HANDSHAKE_ACK:
                metadata = event.get("conversation_initiation_metadata_event") or {}
                session.conversation_id = metadata.get("conversation_id")
                session.negotiated_audio_format = metadata.get("agent_output_audio_format")
                return
            if event_type == "ping":
                await self._send_pong(session, (event.get("ping_event") or {}).get("event_id"))
            else:
                logger.debug(
                    f"[AGENT] Event before handshake ignored - "
                    f"SessionId: {session.session_id}, Type: {event_type}"
                )

    async def _send_greeting(self, session_id: str) -> None:
        await asyncio.sleep(self.settings.agent_greeting_delay)
        if await self.send_text(session_id, self.settings.agent_greeting_text):
            logger.info(f"[AGENT] Greeting sent to trigger agent - SessionId: {session_id}")

    async def _receive_loop(self, session: AgentSession) -> None:
        error: Optional[Exception] = None
        try:
            async for raw in session.websocket:
                await self._dispatch(session, raw)
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as e:
            code = getattr(e.rcvd, "code", None)
            error = RelayTransportError(f"Agent leg closed abnormally: {e}", code=code)

        if not session.is_active:
            return

        logger.info(
            f"[AGENT] Agent leg closed by provider - SessionId: {session.session_id}, "
            f"Error: {error}"
        )
        on_close = self._close_handlers.get(session.session_id)
        await self.end_conversation(session.session_id)
        if on_close is not None:
            await on_close(error)

    async def _dispatch(self, session: AgentSession, raw: Any) -> None:
        session_id = session.session_id
        try:
            event = json.loads(raw)
        except ValueError:
            logger.warning(f"[AGENT] Non-JSON message dropped - SessionId: {session_id}")
            return
        if not isinstance(event, dict):
            logger.warning(f"[AGENT] Non-object message dropped - SessionId: {session_id}")
            return

        event_type = event.get("type", "")
        message = translate_event(event)

        if message is not None and message.type == AgentEventType.KEEPALIVE_PING:
            # Answered before the next event is read or the provider drops the session.
            await self._send_pong(session, message.event_id)
        elif event_type not in PROVIDER_EVENT_TYPES:
            logger.debug(
                f"[AGENT] Unhandled event - SessionId: {session_id}, Type: {event_type}"
            )
            return

        if message is None:
            return

        if message.type == AgentEventType.USER_TRANSCRIPT:
            await self._save_user_response(session, message.text)
        elif message.type == AgentEventType.CONVERSATION_END:
            await self._save_conversation(session)

        handler = self._handlers.get(session_id)
        if handler is None:
            return
        try:
            await handler(message)
        except Exception as e:
            logger.error(
                f"[AGENT] Relay handler failed - SessionId: {session_id}, "
                f"Event: {message.type}, Error: {type(e).__name__}: {e}",
                exc_info=True,
            )

    async def _send_pong(self, session: AgentSession, event_id: Any) -> None:
        try:
            await session.websocket.send(json.dumps({"pong_event": {"event_id": event_id}}))
        except ConnectionClosed:
            logger.warning(f"[AGENT] Pong not delivered - SessionId: {session.session_id}")

    async def _send(self, session_id: str, message: Dict[str, Any]) -> bool:
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            logger.warning(f"[AGENT] No open conversation, message dropped - SessionId: {session_id}")
            return False
        try:
            await session.websocket.send(json.dumps(message))
        except ConnectionClosed:
            logger.warning(f"[AGENT] Agent leg closed, message dropped - SessionId: {session_id}")
            return False
        return True

    async def send_audio(self, session_id: str, audio_base64: str) -> bool:
        """Forward a base64 PCM chunk from the caller to the agent."""
        return await self._send(session_id, {"user_audio_chunk": audio_base64})

    async def send_text(self, session_id: str, text: str) -> bool:
        """Send a text turn to the agent."""
        return await self._send(session_id, {"user_text": text})

    async def end_conversation(self, session_id: str) -> None:
        """Close the agent leg for a call. Safe to call more than once."""
        session = self._sessions.pop(session_id, None)
        self._handlers.pop(session_id, None)
        self._close_handlers.pop(session_id, None)
        if session is None:
            return

        session.is_active = False
        current = asyncio.current_task()
        for task in (session.greeting_task, session.receive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        await self._close_socket(session.websocket)
        logger.info(f"[AGENT] Conversation ended - SessionId: {session_id}")

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.end_conversation(session_id)

    async def _close_socket(self, websocket: Any) -> None:
        try:
            await websocket.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"[AGENT] Error closing agent socket: {e}")

    async def _save_user_response(self, session: AgentSession, transcript: Optional[str]) -> None:
        if self.tools is None or not transcript:
            return
        await self.tools.execute_tool(
            "save_patient_response",
            {
                "sessionId": session.session_id,
                "field": "user_response",
                "value": transcript,
                "timestamp": utcnow(),
            },
        )

    async def _save_conversation(self, session: AgentSession) -> None:
        if self.tools is None:
            return
        await self.tools.execute_tool(
            "save_patient_data",
            {
                "sessionId": session.session_id,
                "patientData": session.context,
                "completedAt": utcnow(),
                "status": "completed",
            },
        )
        await self.tools.execute_tool(
            "save_conversation_summary",
            {
                "sessionId": session.session_id,
                "summary": self.tools.generate_summary(session.context),
                "timestamp": utcnow(),
            },
        )
