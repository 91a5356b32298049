"""Call status state machine and retry scheduling."""
import asyncio
import logging
from typing import Coroutine, Dict, Optional, Set, Union

from intake_dialer.core.exceptions import IntakeCallError
from intake_dialer.services.call_session.models import (
    RETRYABLE_STATUSES,
    CallSession,
    CallStatus,
    can_transition,
    parse_status,
    utcnow,
)
from intake_dialer.services.call_session.registry import CallSessionRegistry
from intake_dialer.services.telephony.dialer import CallDialer

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_REACHED = "max_attempts_reached"


class RetryScheduler:
    """
    Applies status reports to call sessions and redials no_answer/busy calls.

    Redials and purges run as independent asyncio tasks. A pending redial is
    not cancelled when its originating session later reaches a terminal
    state; only ``shutdown`` cancels it.
    """

    def __init__(
        self,
        registry: CallSessionRegistry,
        dialer: CallDialer,
        max_attempts: int = 3,
        retry_delay: float = 300.0,
        cleanup_delay: float = 300.0,
    ):
        self.registry = registry
        self.dialer = dialer
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.cleanup_delay = cleanup_delay
        self._retry_tasks: Set[asyncio.Task] = set()
        self._purge_tasks: Dict[str, asyncio.Task] = {}

    @property
    def pending_retries(self) -> int:
        return sum(1 for task in self._retry_tasks if not task.done())

    def handle_status_update(
        self,
        session_id: str,
        status: Union[str, CallStatus],
        reason: Optional[str] = None,
        provider_call_id: Optional[str] = None,
    ) -> Optional[CallSession]:
        """
        Move a session to a new status and run the side effects of that status.

        Args:
            session_id: Session to update
            status: New status, provider spellings such as "no-answer" accepted
            reason: Failure reason for ``failed`` reports
            provider_call_id: Provider call id, recorded when not yet known

        Returns:
            Updated session snapshot, or None if the session is unknown or the
            transition is not allowed

        Raises:
            ValueError: If the status is not a known call status
        """
        new_status = parse_status(status)
        if new_status is None:
            raise ValueError(f"Unsupported call status: {status}")

        session = self.registry.get(session_id)
        if session is None:
            logger.warning(
                f"[RETRY] Status update for unknown session - "
                f"SessionId: {session_id}, Status: {new_status}"
            )
            return None

        if not can_transition(session.status, new_status):
            logger.warning(
                f"[RETRY] Ignoring transition {session.status} -> {new_status} - "
                f"SessionId: {session_id}"
            )
            return None

        fields = {"status": new_status}
        if provider_call_id and not session.provider_call_id:
            fields["provider_call_id"] = provider_call_id

        logger.info(
            f"[RETRY] Call status update - SessionId: {session_id}, "
            f"Status: {session.status} -> {new_status}, Patient: {session.patient_data.name}"
        )

        if new_status == CallStatus.CONNECTED:
            if session.connected_at is None:
                fields["connected_at"] = utcnow()
            return self.registry.update(session_id, **fields)

        if new_status in RETRYABLE_STATUSES:
            updated = self.registry.update(session_id, **fields)
            return self._retry_or_fail(updated or session, new_status)

        if new_status == CallStatus.FAILED:
            self.registry.update(session_id, **fields)
            return self.mark_failed(session_id, reason or "provider_reported_failure")

        if new_status == CallStatus.COMPLETED:
            fields["completed_at"] = utcnow()

        updated = self.registry.update(session_id, **fields)
        if new_status in (CallStatus.COMPLETED, CallStatus.DISCONNECTED):
            self.schedule_purge(session_id)
        return updated

    def mark_failed(self, session_id: str, reason: str) -> Optional[CallSession]:
        """Mark a session permanently failed and schedule its removal."""
        updated = self.registry.update(
            session_id,
            status=CallStatus.FAILED,
            failure_reason=reason,
            failed_at=utcnow(),
        )
        if updated is not None:
            logger.info(f"[RETRY] Call marked as failed - SessionId: {session_id}, Reason: {reason}")
            self.schedule_purge(session_id)
        return updated

    def _retry_or_fail(self, session: CallSession, status: CallStatus) -> Optional[CallSession]:
        phone_number = session.patient_data.phone_number
        attempts = self.registry.attempts_for(phone_number)

        if attempts >= self.max_attempts:
            logger.info(
                f"[RETRY] Attempt ceiling reached - SessionId: {session.session_id}, "
                f"Phone: {phone_number}, Attempts: {attempts}"
            )
            return self.mark_failed(session.session_id, MAX_ATTEMPTS_REACHED)

        attempt = self.registry.reserve_attempt(phone_number)
        logger.info(
            f"[RETRY] Scheduling redial in {self.retry_delay}s - "
            f"SessionId: {session.session_id}, Reason: {status}, Next attempt: {attempt}"
        )
        self._spawn(
            self._redial(session, attempt, status),
            self._retry_tasks,
        )
        return self.registry.get(session.session_id)

    async def _redial(self, session: CallSession, attempt: int, reason: CallStatus) -> None:
        await asyncio.sleep(self.retry_delay)
        logger.info(
            f"[RETRY] Retrying call - Previous SessionId: {session.session_id}, "
            f"Reason: {reason}, Attempt: {attempt}"
        )
        try:
            result = await self.dialer.initiate_outbound_call(session.patient_data, attempt=attempt)
        except IntakeCallError as e:
            logger.error(
                f"[RETRY] Redial failed - Previous SessionId: {session.session_id}, "
                f"Attempt: {attempt}, Error: {e}"
            )
            return
        logger.info(
            f"[RETRY] Redial placed - Previous SessionId: {session.session_id}, "
            f"New SessionId: {result.session_id}"
        )

    def schedule_purge(self, session_id: str) -> None:
        """Remove a finished session from the registry after the grace window."""
        existing = self._purge_tasks.get(session_id)
        if existing is not None and not existing.done():
            return
        task = asyncio.get_running_loop().create_task(self._purge(session_id))
        self._purge_tasks[session_id] = task
        task.add_done_callback(lambda _: self._purge_tasks.pop(session_id, None))

    async def _purge(self, session_id: str) -> None:
        await asyncio.sleep(self.cleanup_delay)
        self.registry.remove(session_id)

    def _spawn(self, coro: Coroutine, tasks: Set[asyncio.Task]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task

    async def shutdown(self) -> None:
        """Cancel every pending redial and purge timer."""
        tasks = list(self._retry_tasks) + list(self._purge_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._retry_tasks.clear()
        self._purge_tasks.clear()


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"[RETRY] Background task failed: {type(exc).__name__}: {exc}", exc_info=exc)
