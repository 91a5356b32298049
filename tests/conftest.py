"""Shared test fixtures and configuration."""
import os
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing app
os.environ.setdefault("ELEVENLABS_API_KEY", "test-elevenlabs-key")
os.environ.setdefault("ELEVENLABS_AGENT_ID", "test-agent")
os.environ.setdefault("KNOWLARITY_TEST_MODE", "true")
os.environ.setdefault("KNOWLARITY_CALLER_ID", "+918000000000")
os.environ.setdefault("SERVER_WEBSOCKET_URL", "wss://relay.test/call-stream")

from intake_dialer.main import app
from intake_dialer.core.config import Settings
from intake_dialer.core.dependencies import build_services, get_services
from intake_dialer.services.call_session.registry import CallSessionRegistry
from intake_dialer.services.call_session.retry import RetryScheduler
from intake_dialer.services.telephony.dialer import CallDialer
from intake_dialer.services.telephony.knowlarity import KnowlarityClient


@pytest.fixture
def test_settings():
    """Override settings for testing."""
    return Settings(
        elevenlabs_api_key="test-elevenlabs-key",
        elevenlabs_agent_id="test-agent",
        elevenlabs_ws_url="wss://agent.test/convai",
        agent_handshake_timeout=0.5,
        agent_greeting_text="",
        knowlarity_test_mode=True,
        knowlarity_caller_id="+918000000000",
        server_websocket_url="wss://relay.test/call-stream",
        max_call_attempts=3,
        retry_delay_seconds=0.01,
        cleanup_delay_seconds=60.0,
    )


@pytest.fixture
def patient_payload():
    """Minimal CRM patient record."""
    return {"phoneNumber": "+911234567890", "name": "Asha", "treatmentType": "knee replacement"}


@pytest.fixture
def registry():
    return CallSessionRegistry()


@pytest.fixture
def knowlarity_client(test_settings):
    return KnowlarityClient(test_settings)


@pytest.fixture
def dialer(registry, knowlarity_client, test_settings):
    return CallDialer(registry, knowlarity_client, test_settings)


@pytest.fixture
async def scheduler(registry, dialer, test_settings):
    """Retry scheduler with millisecond retry delay; timers cancelled afterwards."""
    scheduler = RetryScheduler(
        registry,
        dialer,
        max_attempts=test_settings.max_call_attempts,
        retry_delay=test_settings.retry_delay_seconds,
        cleanup_delay=test_settings.cleanup_delay_seconds,
    )
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
def mock_dialer():
    """Dialer stand-in for relay tests that never redial."""
    dialer = Mock(spec=CallDialer)
    dialer.initiate_outbound_call = AsyncMock()
    return dialer


@pytest.fixture
def test_services(test_settings):
    """Call services built from test settings."""
    return build_services(test_settings)


@pytest.fixture
def test_client(test_services):
    """Create FastAPI test client with overrides."""
    app.dependency_overrides[get_services] = lambda: test_services

    with TestClient(app) as client:
        yield client
        client.portal.call(test_services.scheduler.shutdown)

    # Clear overrides
    app.dependency_overrides.clear()
