"""Error taxonomy for outbound intake calls."""
from typing import Any, Optional


class IntakeCallError(Exception):
    """Base class for call lifecycle errors."""


class ValidationError(IntakeCallError):
    """Required patient fields are missing; no session was created."""


class ProviderDialError(IntakeCallError):
    """The telephony provider rejected or failed the dial request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


class HandshakeError(IntakeCallError):
    """The voice agent did not acknowledge the conversation handshake."""


class RelayTransportError(IntakeCallError):
    """A relay leg closed abnormally mid-call."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code
