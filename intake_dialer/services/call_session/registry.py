"""In-memory call session registry."""
import logging
import threading
import uuid
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from intake_dialer.services.call_session.models import (
    CallSession,
    CallStatus,
    PatientData,
    utcnow,
)

logger = logging.getLogger(__name__)


class CallSessionRegistry:
    """
    Owns every call session and the per-phone-number attempt counter.

    Reads return copies so callers always see a consistent snapshot of a
    session. The attempt counter lives until the process restarts.
    """

    def __init__(self):
        self._sessions: Dict[str, CallSession] = {}
        self._attempts: Dict[str, int] = {}
        self._lock = threading.RLock()

    def create(
        self,
        patient_data: PatientData,
        session_id: Optional[str] = None,
        call_metadata: Optional[Dict[str, Any]] = None,
        attempt: Optional[int] = None,
    ) -> str:
        """
        Register a new session in ``initiating`` state.

        Args:
            patient_data: Patient the call is for
            session_id: Pre-minted id, generated when omitted
            call_metadata: Metadata shared with the telephony stream
            attempt: Attempt number already reserved via ``reserve_attempt``;
                when omitted the phone number's counter is incremented

        Returns:
            The session id
        """
        session_id = session_id or str(uuid.uuid4())
        phone_number = patient_data.phone_number

        with self._lock:
            if attempt is None:
                attempt = self._attempts.get(phone_number, 0) + 1
                self._attempts[phone_number] = attempt
            self._sessions[session_id] = CallSession(
                session_id=session_id,
                patient_data=patient_data,
                call_metadata=call_metadata or {},
                attempts=attempt,
            )

        logger.info(
            f"[REGISTRY] Session created - SessionId: {session_id}, "
            f"Phone: {phone_number}, Attempt: {attempt}"
        )
        return session_id

    def get(self, session_id: str) -> Optional[CallSession]:
        """Get a snapshot of a session, or None if unknown."""
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def update(self, session_id: str, **fields: Any) -> Optional[CallSession]:
        """
        Apply a partial update to a session.

        Unknown ids are ignored with a warning since status reports can race
        with the cleanup sweep.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                logger.warning(
                    f"[REGISTRY] Update for unknown session ignored - "
                    f"SessionId: {session_id}, Fields: {sorted(fields)}"
                )
                return None
            for name, value in fields.items():
                setattr(session, name, value)
            session.last_update = utcnow()
            return session.model_copy(deep=True)

    def update_if(
        self, session_id: str, expected_status: CallStatus, **fields: Any
    ) -> Optional[CallSession]:
        """
        Apply a partial update only while the session is still in ``expected_status``.

        Returns:
            Updated snapshot, or None if the session is unknown or has moved on
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != expected_status:
                return None
            for name, value in fields.items():
                setattr(session, name, value)
            session.last_update = utcnow()
            return session.model_copy(deep=True)

    def remove(self, session_id: str) -> bool:
        """Drop a session from the active set."""
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info(f"[REGISTRY] Session removed - SessionId: {session_id}")
        return removed

    def list_active(self) -> List[CallSession]:
        """All sessions still held by the registry."""
        with self._lock:
            return [session.model_copy(deep=True) for session in self._sessions.values()]

    def stats(self) -> Dict[str, int]:
        """Session counts, total and per status."""
        with self._lock:
            counts = {"total": len(self._sessions)}
            for status in CallStatus:
                counts[status.value] = 0
            for session in self._sessions.values():
                counts[session.status.value] += 1
            return counts

    def attempts_for(self, phone_number: str) -> int:
        """Number of dial attempts recorded for a phone number."""
        with self._lock:
            return self._attempts.get(phone_number, 0)

    def reserve_attempt(self, phone_number: str) -> int:
        """Count a dial attempt ahead of time and return its number."""
        with self._lock:
            attempt = self._attempts.get(phone_number, 0) + 1
            self._attempts[phone_number] = attempt
            return attempt

    def find_by_provider_call_id(self, provider_call_id: str) -> Optional[CallSession]:
        with self._lock:
            for session in self._sessions.values():
                if session.provider_call_id == provider_call_id:
                    return session.model_copy(deep=True)
        return None

    def find_by_phone_number(self, phone_number: str) -> Optional[CallSession]:
        """Most recently created session for a phone number."""
        with self._lock:
            matches = [
                session
                for session in self._sessions.values()
                if session.patient_data.phone_number == phone_number
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda session: session.created_at)
            return latest.model_copy(deep=True)

    def purge_terminal(self, older_than: float) -> List[str]:
        """Remove terminal sessions whose last update is older than ``older_than`` seconds."""
        cutoff = utcnow() - timedelta(seconds=older_than)
        with self._lock:
            expired = [
                session_id
                for session_id, session in self._sessions.items()
                if session.is_terminal and session.last_update <= cutoff
            ]
            for session_id in expired:
                del self._sessions[session_id]
        if expired:
            logger.info(f"[REGISTRY] Purged {len(expired)} terminal sessions")
        return expired

    def purge_stale(self, older_than: float, keep: Iterable[str] = ()) -> List[str]:
        """
        Remove non-terminal sessions that have not changed for ``older_than`` seconds.

        Sessions listed in ``keep`` (calls with a live relay) are left alone.
        """
        cutoff = utcnow() - timedelta(seconds=older_than)
        keep = set(keep)
        with self._lock:
            expired = [
                session_id
                for session_id, session in self._sessions.items()
                if not session.is_terminal
                and session_id not in keep
                and session.last_update <= cutoff
            ]
            for session_id in expired:
                del self._sessions[session_id]
        if expired:
            logger.info(f"[REGISTRY] Purged {len(expired)} stale sessions: {expired}")
        return expired
