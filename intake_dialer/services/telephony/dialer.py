"""Outbound call dialer."""
import json
import logging
import time
import uuid
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from intake_dialer.core.config import Settings
from intake_dialer.core.exceptions import ProviderDialError, ValidationError
from intake_dialer.services.call_session.models import CallStatus, PatientData, utcnow
from intake_dialer.services.call_session.registry import CallSessionRegistry
from intake_dialer.services.telephony.knowlarity import (
    KnowlarityClient,
    extract_provider_call_id,
)

logger = logging.getLogger(__name__)

DEFAULT_TREATMENT_TYPE = "general consultation"
HOLD_MESSAGE = "कृपया एक क्षण प्रतीक्षा करें, हम आपको हमारे सहायक से जोड़ रहे हैं।"


class DialResult(BaseModel):
    """Outcome of a successful dial request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    provider_call_id: Optional[str] = None
    patient_data: PatientData
    call_metadata: Dict[str, Any]
    provider_response: Dict[str, Any]


def coerce_patient_data(patient_data: Union[PatientData, Dict[str, Any], None]) -> PatientData:
    """Validate raw CRM input, raising ValidationError when phone or name is missing."""
    if isinstance(patient_data, PatientData):
        return patient_data
    if not patient_data:
        raise ValidationError("Patient phone number and name are required")

    phone_number = patient_data.get("phoneNumber", patient_data.get("phone_number"))
    name = patient_data.get("name")
    if not phone_number or not str(phone_number).strip() or not name or not str(name).strip():
        raise ValidationError("Patient phone number and name are required")

    try:
        return PatientData.model_validate(patient_data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid patient data: {e}") from e


class CallDialer:
    """Creates call sessions and asks the telephony provider to dial them."""

    def __init__(
        self,
        registry: CallSessionRegistry,
        client: KnowlarityClient,
        settings: Settings,
    ):
        self.registry = registry
        self.client = client
        self.settings = settings

    def build_call_metadata(self, session_id: str, patient: PatientData) -> Dict[str, Any]:
        """Metadata handed to the agent and embedded in the telephony stream."""
        return {
            "patient_id": patient.id or session_id,
            "patient_name": patient.name,
            "patient_phone": patient.phone_number,
            "treatment_type": patient.treatment_type or DEFAULT_TREATMENT_TYPE,
            "call_type": "outbound_data_collection",
            "call_session_id": session_id,
            "initiated_at": utcnow().isoformat(),
            "crm_data": patient.crm_data,
        }

    def build_stream_descriptor(
        self, session_id: str, call_metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        """IVR flow that plays a hold message then streams audio to the relay."""
        stream_metadata = {
            "ivr_data": json.dumps(
                {"client_data": "hexahealth_ivr", "client_custom_id": session_id}
            ),
            "callid": session_id,
            "virtual_number": self.settings.knowlarity_caller_id,
            "customer_number": call_metadata["patient_phone"],
            "client_meta_id": session_id,
            "event_timestamp": int(time.time() * 1000),
            "session_metadata": call_metadata,
        }
        stream_url = f"{self.settings.server_websocket_url.rstrip('/')}/{session_id}"
        sampling_rate = f"{self.settings.audio_sample_rate // 1000}k"

        return {
            "flow": {
                "nodes": [
                    {
                        "id": "welcome",
                        "type": "play",
                        "audio": {"type": "tts", "text": HOLD_MESSAGE, "language": "hi"},
                        "next": "stream_node",
                    },
                    {
                        "id": "stream_node",
                        "type": "stream",
                        "config": {
                            "wss_url": stream_url,
                            "sampling_rate": sampling_rate,
                            "metadata": json.dumps(stream_metadata),
                        },
                    },
                ]
            }
        }

    async def initiate_outbound_call(
        self,
        patient_data: Union[PatientData, Dict[str, Any]],
        attempt: Optional[int] = None,
    ) -> DialResult:
        """
        Start an outbound intake call.

        Args:
            patient_data: Patient record, needs phoneNumber and name
            attempt: Attempt number reserved by the retry scheduler

        Returns:
            DialResult with the new session id and provider call id

        Raises:
            ValidationError: Required patient fields missing, nothing created
            ProviderDialError: Provider rejected the dial; session marked failed
        """
        patient = coerce_patient_data(patient_data)

        session_id = str(uuid.uuid4())
        call_metadata = self.build_call_metadata(session_id, patient)
        self.registry.create(
            patient,
            session_id=session_id,
            call_metadata=call_metadata,
            attempt=attempt,
        )

        descriptor = self.build_stream_descriptor(session_id, call_metadata)
        try:
            response = await self.client.place_call(
                session_id, patient.phone_number, descriptor
            )
        except ProviderDialError as e:
            self.registry.update(
                session_id,
                status=CallStatus.FAILED,
                failure_reason=e.message,
                failed_at=utcnow(),
                provider_response=e.payload if isinstance(e.payload, dict) else None,
            )
            logger.error(
                f"[DIALER] Dial failed - SessionId: {session_id}, "
                f"Phone: {patient.phone_number}, Error: {e.message}"
            )
            raise

        provider_call_id = extract_provider_call_id(response)
        updated = self.registry.update_if(
            session_id,
            CallStatus.INITIATING,
            status=CallStatus.DIALING,
            provider_call_id=provider_call_id,
            provider_response=response,
        )
        if updated is None:
            # A status report arrived while the dial request was in flight.
            current = self.registry.update(
                session_id,
                provider_call_id=provider_call_id,
                provider_response=response,
            )
            logger.warning(
                f"[DIALER] Session moved on during dial, keeping its status - "
                f"SessionId: {session_id}, Status: {current.status if current else 'purged'}"
            )
        logger.info(
            f"[DIALER] Outbound call initiated - SessionId: {session_id}, "
            f"Patient: {patient.name}, Phone: {patient.phone_number}, "
            f"ProviderCallId: {provider_call_id}"
        )

        return DialResult(
            session_id=session_id,
            provider_call_id=provider_call_id,
            patient_data=patient,
            call_metadata=call_metadata,
            provider_response=response,
        )
