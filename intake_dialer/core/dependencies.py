"""FastAPI dependencies."""
import logging

from starlette.requests import HTTPConnection

from intake_dialer.core.config import Settings
from intake_dialer.services.agent.manager import AgentSessionManager
from intake_dialer.services.call_session.registry import CallSessionRegistry
from intake_dialer.services.call_session.retry import RetryScheduler
from intake_dialer.services.intake.tools import IntakeToolRegistry
from intake_dialer.services.relay.hub import RelayHub
from intake_dialer.services.telephony.dialer import CallDialer
from intake_dialer.services.telephony.knowlarity import KnowlarityClient

logger = logging.getLogger(__name__)


class CallServices:
    """The long-lived call components shared by every request."""

    def __init__(
        self,
        settings: Settings,
        registry: CallSessionRegistry,
        client: KnowlarityClient,
        dialer: CallDialer,
        scheduler: RetryScheduler,
        tools: IntakeToolRegistry,
        agent_manager: AgentSessionManager,
        relay_hub: RelayHub,
    ):
        self.settings = settings
        self.registry = registry
        self.client = client
        self.dialer = dialer
        self.scheduler = scheduler
        self.tools = tools
        self.agent_manager = agent_manager
        self.relay_hub = relay_hub

    async def shutdown(self) -> None:
        """Close live relays, cancel timers and release the HTTP client."""
        logger.info("[SHUTDOWN] Closing active relays and pending retries")
        await self.relay_hub.shutdown()
        await self.agent_manager.shutdown()
        await self.scheduler.shutdown()
        await self.client.close()


def build_services(settings: Settings) -> CallServices:
    """Wire the call components together from settings."""
    registry = CallSessionRegistry()
    client = KnowlarityClient(settings)
    dialer = CallDialer(registry, client, settings)
    scheduler = RetryScheduler(
        registry,
        dialer,
        max_attempts=settings.max_call_attempts,
        retry_delay=settings.retry_delay_seconds,
        cleanup_delay=settings.cleanup_delay_seconds,
    )
    tools = IntakeToolRegistry()
    agent_manager = AgentSessionManager(settings, tools=tools)
    relay_hub = RelayHub(
        registry,
        scheduler,
        agent_manager,
        sample_rate=settings.audio_sample_rate,
        cleanup_delay=settings.cleanup_delay_seconds,
        stale_after=settings.stale_session_seconds,
    )
    return CallServices(
        settings, registry, client, dialer, scheduler, tools, agent_manager, relay_hub
    )


def get_services(connection: HTTPConnection) -> CallServices:
    """Get the call services built at startup."""
    return connection.app.state.services
