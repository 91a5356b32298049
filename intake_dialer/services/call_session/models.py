"""Call session models."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CallStatus(str, Enum):
    """Lifecycle status of a single dial attempt."""

    INITIATING = "initiating"
    DIALING = "dialing"
    CONNECTED = "connected"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DISCONNECTED = "disconnected"
    NO_ANSWER = "no_answer"
    BUSY = "busy"

    def __str__(self) -> str:
        """Return the string value of the status."""
        return self.value


TERMINAL_STATUSES: Set[CallStatus] = {
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.DISCONNECTED,
}

RETRYABLE_STATUSES: Set[CallStatus] = {CallStatus.NO_ANSWER, CallStatus.BUSY}

# Self-edges on connected/no_answer/busy let repeated provider reports through.
ALLOWED_TRANSITIONS: Dict[CallStatus, Set[CallStatus]] = {
    CallStatus.INITIATING: {CallStatus.DIALING, CallStatus.FAILED},
    CallStatus.DIALING: {
        CallStatus.CONNECTED,
        CallStatus.NO_ANSWER,
        CallStatus.BUSY,
        CallStatus.FAILED,
        CallStatus.DISCONNECTED,
    },
    CallStatus.CONNECTED: {
        CallStatus.CONNECTED,
        CallStatus.ACTIVE,
        CallStatus.COMPLETED,
        CallStatus.FAILED,
        CallStatus.DISCONNECTED,
    },
    CallStatus.ACTIVE: {
        CallStatus.COMPLETED,
        CallStatus.FAILED,
        CallStatus.DISCONNECTED,
    },
    CallStatus.NO_ANSWER: {CallStatus.NO_ANSWER, CallStatus.BUSY, CallStatus.FAILED},
    CallStatus.BUSY: {CallStatus.BUSY, CallStatus.NO_ANSWER, CallStatus.FAILED},
    CallStatus.COMPLETED: set(),
    CallStatus.FAILED: set(),
    CallStatus.DISCONNECTED: set(),
}


def can_transition(current: CallStatus, new: CallStatus) -> bool:
    """Check whether a status change follows the call lifecycle edges."""
    return new in ALLOWED_TRANSITIONS.get(current, set())


def parse_status(value: Union[str, CallStatus, None]) -> Optional[CallStatus]:
    """Normalize a provider status string ("no-answer", "BUSY") to a CallStatus."""
    if value is None:
        return None
    if isinstance(value, CallStatus):
        return value
    normalized = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return CallStatus(normalized)
    except ValueError:
        return None


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class PatientData(BaseModel):
    """Patient record handed over by the CRM. Extra CRM fields are kept as-is."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )

    phone_number: str
    name: str
    id: Optional[str] = None
    treatment_type: Optional[str] = None
    crm_data: Dict[str, Any] = Field(default_factory=dict)


class CallSession(BaseModel):
    """One dial attempt and everything known about it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    patient_data: PatientData
    call_metadata: Dict[str, Any] = Field(default_factory=dict)
    status: CallStatus = CallStatus.INITIATING
    attempts: int = 1
    provider_call_id: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None
    telephony_metadata: Optional[Dict[str, Any]] = None
    transcript: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    connected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_update: datetime = Field(default_factory=utcnow)
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_response(self) -> Dict[str, Any]:
        """Serialize with camelCase keys for API callers."""
        return self.model_dump(by_alias=True, mode="json")
