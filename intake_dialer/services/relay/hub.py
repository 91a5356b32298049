"""Tracks live relay bridges and sweeps abandoned sessions."""
import asyncio
import logging
from typing import Dict, Optional

from starlette.websockets import WebSocket, WebSocketState

from intake_dialer.services.agent.manager import AgentSessionManager
from intake_dialer.services.call_session.registry import CallSessionRegistry
from intake_dialer.services.call_session.retry import RetryScheduler
from intake_dialer.services.relay.bridge import (
    WS_GOING_AWAY,
    WS_POLICY_VIOLATION,
    AudioRelayBridge,
    DtmfHandler,
    RelayState,
)

logger = logging.getLogger(__name__)


class RelayHub:
    """One AudioRelayBridge per session id with an open telephony leg."""

    def __init__(
        self,
        registry: CallSessionRegistry,
        scheduler: RetryScheduler,
        agent_manager: AgentSessionManager,
        sample_rate: int = 16000,
        cleanup_delay: float = 300.0,
        stale_after: float = 3600.0,
        dtmf_handler: Optional[DtmfHandler] = None,
    ):
        self.registry = registry
        self.scheduler = scheduler
        self.agent_manager = agent_manager
        self.sample_rate = sample_rate
        self.cleanup_delay = cleanup_delay
        self.stale_after = stale_after
        self.dtmf_handler = dtmf_handler
        self._bridges: Dict[str, AudioRelayBridge] = {}

    @property
    def active_bridges(self) -> int:
        return len(self._bridges)

    def get_bridge(self, session_id: str) -> Optional[AudioRelayBridge]:
        return self._bridges.get(session_id)

    async def serve(self, session_id: str, websocket: WebSocket) -> None:
        """Relay an accepted telephony websocket until the call ends."""
        existing = self._bridges.get(session_id)
        if existing is not None and existing.state is not RelayState.CLOSED:
            logger.warning(f"[RELAY] Duplicate telephony leg rejected - SessionId: {session_id}")
            await websocket.close(code=WS_POLICY_VIOLATION, reason="Call already streaming")
            return

        bridge = AudioRelayBridge(
            session_id,
            websocket,
            self.registry,
            self.scheduler,
            self.agent_manager,
            sample_rate=self.sample_rate,
            dtmf_handler=self.dtmf_handler,
        )
        self._bridges[session_id] = bridge
        try:
            await bridge.run()
        finally:
            if self._bridges.get(session_id) is bridge:
                del self._bridges[session_id]

    async def sweep(self) -> int:
        """
        Close bridges whose telephony socket is gone and drop stale sessions.

        Returns:
            Number of registry entries purged
        """
        for session_id, bridge in list(self._bridges.items()):
            if bridge.state is RelayState.CLOSED:
                self._bridges.pop(session_id, None)
            elif bridge.telephony.client_state == WebSocketState.DISCONNECTED:
                logger.info(f"[RELAY] Sweeping abandoned relay - SessionId: {session_id}")
                await bridge.close()
                self._bridges.pop(session_id, None)

        purged = self.registry.purge_terminal(self.cleanup_delay)
        purged += self.registry.purge_stale(self.stale_after, keep=list(self._bridges))
        return len(purged)

    async def run_cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"[RELAY] Cleanup sweep failed: {type(e).__name__}: {e}", exc_info=True)

    async def shutdown(self) -> None:
        """Close every live relay as a clean disconnect."""
        for bridge in list(self._bridges.values()):
            await bridge.close(code=WS_GOING_AWAY)
        self._bridges.clear()
