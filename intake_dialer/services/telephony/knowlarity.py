"""Knowlarity telephony client and dial strategies."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import httpx

from intake_dialer.core.config import Settings
from intake_dialer.core.exceptions import ProviderDialError

logger = logging.getLogger(__name__)


def _mask(secret: str) -> str:
    return f"{secret[:10]}..." if secret else "NOT SET"


class DialStrategy:
    """One way of asking Knowlarity to place a call."""

    name = ""

    async def dial(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        phone_number: str,
        descriptor: Dict[str, Any],
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def _headers(self, settings: Settings) -> Dict[str, str]:
        return {
            "authorization": settings.knowlarity_authorization,
            "x-api-key": settings.knowlarity_api_key,
            "Content-Type": "application/json",
        }


class ClickToCallStrategy(DialStrategy):
    """Click-to-call through the SR API. The default strategy."""

    name = "click_to_call"

    async def dial(self, client, settings, phone_number, descriptor):
        params = {
            "phone_number": phone_number,
            "agent_number": settings.knowlarity_caller_id,
            "sr_number": settings.knowlarity_caller_id,
            "caller_id": settings.knowlarity_caller_id,
            "is_promotional": "false",
        }
        logger.info(
            f"[KNOWLARITY] Click-to-call - Phone: {phone_number}, "
            f"API key: {_mask(settings.knowlarity_api_key)}"
        )
        response = await client.get(
            settings.knowlarity_click_to_call_url,
            params=params,
            headers={
                "x-api-key": settings.knowlarity_api_key,
                "content-type": "application/json",
            },
        )
        response.raise_for_status()
        return response.json()


class IvrCampaignStrategy(DialStrategy):
    """Single-number campaign whose IVR flow is only the stream node."""

    name = "ivr_campaign"

    async def dial(self, client, settings, phone_number, descriptor):
        stream_nodes = [
            node for node in descriptor["flow"]["nodes"] if node.get("type") == "stream"
        ]
        start_time = datetime.now(ZoneInfo(settings.campaign_timezone)) + timedelta(seconds=30)
        payload = {
            "k_number": settings.knowlarity_caller_id,
            "additional_number": phone_number,
            "caller_id": settings.knowlarity_caller_id,
            "start_time": start_time.strftime("%Y-%m-%d %H:%M"),
            "timezone": settings.campaign_timezone,
            "priority": 1,
            "order_throttling": 1,
            "retry_duration": 0,
            "max_retry": 0,
            "call_scheduling": "[1, 1, 1, 1, 1, 1, 1]",
            "call_scheduling_start_time": "00:00",
            "call_scheduling_stop_time": "23:59",
            "is_promotional": False,
            "sound_id": 1,
            "ivr_flow": {"flow": {"nodes": stream_nodes}},
        }
        url = f"{settings.knowlarity_api_url}/Basic/v1/account/call/campaign"
        logger.info(f"[KNOWLARITY] IVR campaign - Phone: {phone_number}, URL: {url}")
        response = await client.post(url, json=payload, headers=self._headers(settings))
        response.raise_for_status()
        return response.json()


class MakeCallStrategy(DialStrategy):
    """Direct makecall with the full IVR flow attached."""

    name = "make_call"

    async def dial(self, client, settings, phone_number, descriptor):
        payload = {
            "k_number": settings.knowlarity_caller_id,
            "customer_number": phone_number,
            "caller_id": settings.knowlarity_caller_id,
            "ivr_flow": descriptor,
            "direct_connect": True,
        }
        url = f"{settings.knowlarity_api_url}/Basic/v1/account/call/makecall"
        logger.info(f"[KNOWLARITY] MakeCall - Phone: {phone_number}, URL: {url}")
        headers = {"channel": "Basic", **self._headers(settings)}
        response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()


DIAL_STRATEGIES: Dict[str, DialStrategy] = {
    strategy.name: strategy
    for strategy in (ClickToCallStrategy(), IvrCampaignStrategy(), MakeCallStrategy())
}


def get_dial_strategy(name: str) -> DialStrategy:
    """Look up a dial strategy by its configured name."""
    try:
        return DIAL_STRATEGIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown dial strategy '{name}', expected one of {sorted(DIAL_STRATEGIES)}"
        )


def _error_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class KnowlarityClient:
    """Places calls through Knowlarity using the configured dial strategy."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        strategy: Optional[DialStrategy] = None,
    ):
        self.settings = settings
        self.strategy = strategy or get_dial_strategy(settings.dial_strategy)
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.dial_timeout))
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def place_call(
        self, session_id: str, phone_number: str, descriptor: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Dial a phone number.

        Args:
            session_id: Call session the dial belongs to
            phone_number: Number to call
            descriptor: IVR flow carrying the relay stream endpoint

        Returns:
            Provider response body

        Raises:
            ProviderDialError: On HTTP or transport failure
        """
        if self.settings.knowlarity_test_mode:
            logger.info(
                f"[KNOWLARITY] TEST MODE: simulating {self.strategy.name} - "
                f"SessionId: {session_id}, Phone: {phone_number}"
            )
            return {
                "success": True,
                "call_id": f"test_call_{session_id}",
                "status": "initiated",
                "message": "Test call initiated successfully",
            }

        try:
            return await self.strategy.dial(
                self._get_client(), self.settings, phone_number, descriptor
            )
        except httpx.HTTPStatusError as e:
            payload = _error_payload(e.response)
            message = payload.get("message") if isinstance(payload, dict) else None
            logger.error(
                f"[KNOWLARITY] Dial rejected - SessionId: {session_id}, "
                f"Status: {e.response.status_code}, Response: {payload}"
            )
            raise ProviderDialError(
                f"Knowlarity API error: {message or e}",
                status_code=e.response.status_code,
                payload=payload,
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                f"[KNOWLARITY] Dial transport failure - SessionId: {session_id}, "
                f"Error: {type(e).__name__}: {e}"
            )
            raise ProviderDialError(f"Knowlarity API error: {e}") from e


def extract_provider_call_id(response: Dict[str, Any]) -> Optional[str]:
    """Knowlarity nests the call id under ``success`` for some endpoints."""
    success = response.get("success")
    if isinstance(success, dict) and success.get("call_id"):
        return str(success["call_id"])
    call_id = response.get("call_id")
    return str(call_id) if call_id is not None else None
