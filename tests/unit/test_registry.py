"""Tests for the call session registry."""
from datetime import timedelta

from intake_dialer.services.call_session.models import (
    CallStatus,
    PatientData,
    can_transition,
    parse_status,
    utcnow,
)


def make_patient(phone="+911234567890", name="Asha"):
    return PatientData(phone_number=phone, name=name)


class TestCallStatus:
    """Test status parsing and lifecycle edges."""

    def test_parse_provider_spelling(self):
        """Test provider status spellings are normalized."""
        assert parse_status("no-answer") == CallStatus.NO_ANSWER
        assert parse_status("BUSY") == CallStatus.BUSY
        assert parse_status("ringing") is None
        assert parse_status(None) is None

    def test_no_transition_skips_dialing(self):
        """Test initiating sessions must pass through dialing."""
        assert can_transition(CallStatus.INITIATING, CallStatus.DIALING)
        assert not can_transition(CallStatus.INITIATING, CallStatus.CONNECTED)
        assert not can_transition(CallStatus.INITIATING, CallStatus.NO_ANSWER)

    def test_terminal_statuses_have_no_exits(self):
        """Test terminal statuses allow no transitions."""
        for status in (CallStatus.COMPLETED, CallStatus.FAILED, CallStatus.DISCONNECTED):
            for target in CallStatus:
                assert not can_transition(status, target)


class TestCallSessionRegistry:
    """Test CallSessionRegistry."""

    def test_create_starts_initiating(self, registry):
        """Test new sessions start initiating with one attempt."""
        session_id = registry.create(make_patient())

        session = registry.get(session_id)
        assert session.status == CallStatus.INITIATING
        assert session.attempts == 1
        assert registry.attempts_for("+911234567890") == 1

    def test_attempt_counter_is_keyed_by_phone_number(self, registry):
        """Test attempts are counted per phone number."""
        first = registry.create(make_patient())
        second = registry.create(make_patient())
        other = registry.create(make_patient(phone="+919999999999"))

        assert first != second
        assert registry.get(second).attempts == 2
        assert registry.get(other).attempts == 1
        assert registry.attempts_for("+911234567890") == 2

    def test_reserved_attempt_is_not_counted_twice(self, registry):
        """Test a reserved attempt is not counted again on create."""
        registry.create(make_patient())
        attempt = registry.reserve_attempt("+911234567890")

        session_id = registry.create(make_patient(), attempt=attempt)

        assert registry.get(session_id).attempts == 2
        assert registry.attempts_for("+911234567890") == 2

    def test_get_returns_snapshot(self, registry):
        """Test get returns a copy of the session."""
        session_id = registry.create(make_patient())

        snapshot = registry.get(session_id)
        snapshot.status = CallStatus.FAILED

        assert registry.get(session_id).status == CallStatus.INITIATING

    def test_update_unknown_session_is_ignored(self, registry):
        """Test updating an unknown session returns None."""
        assert registry.update("missing", status=CallStatus.FAILED) is None

    def test_update_refreshes_last_update(self, registry):
        """Test update applies fields and refreshes last_update."""
        session_id = registry.create(make_patient())
        before = registry.get(session_id).last_update

        updated = registry.update(session_id, status=CallStatus.DIALING, provider_call_id="abc")

        assert updated.status == CallStatus.DIALING
        assert updated.provider_call_id == "abc"
        assert updated.last_update >= before

    def test_stats_counts_every_status(self, registry):
        """Test stats report every status."""
        first = registry.create(make_patient())
        registry.create(make_patient(phone="+919999999999"))
        registry.update(first, status=CallStatus.DIALING)

        stats = registry.stats()

        assert stats["total"] == 2
        assert stats["dialing"] == 1
        assert stats["initiating"] == 1
        assert stats["completed"] == 0
        assert set(stats) == {"total"} | {status.value for status in CallStatus}

    def test_find_by_provider_call_id_and_phone(self, registry):
        """Test lookups by provider call id and phone number."""
        first = registry.create(make_patient())
        second = registry.create(make_patient())
        registry.update(first, provider_call_id="kn-1")

        assert registry.find_by_provider_call_id("kn-1").session_id == first
        assert registry.find_by_provider_call_id("kn-2") is None
        assert registry.find_by_phone_number("+911234567890").session_id == second
        assert registry.find_by_phone_number("+910000000000") is None

    def test_purge_terminal_only_drops_stale_terminal_sessions(self, registry):
        """Test purge_terminal keeps live and recent sessions."""
        stale = registry.create(make_patient())
        fresh = registry.create(make_patient())
        live = registry.create(make_patient())
        registry.update(stale, status=CallStatus.COMPLETED)
        registry.update(fresh, status=CallStatus.COMPLETED)
        registry.update(live, status=CallStatus.DIALING)
        registry._sessions[stale].last_update = utcnow() - timedelta(minutes=10)
        registry._sessions[live].last_update = utcnow() - timedelta(minutes=10)

        purged = registry.purge_terminal(older_than=300)

        assert purged == [stale]
        assert registry.get(stale) is None
        assert registry.get(fresh) is not None
        assert registry.get(live) is not None

    def test_remove(self, registry):
        """Test remove drops a session once."""
        session_id = registry.create(make_patient())

        assert registry.remove(session_id) is True
        assert registry.remove(session_id) is False
        assert registry.list_active() == []

    def test_update_if_requires_expected_status(self, registry):
        """Test update_if leaves a session alone once it has moved on."""
        session_id = registry.create(make_patient())
        registry.update(session_id, status=CallStatus.FAILED)

        assert registry.update_if(session_id, CallStatus.INITIATING, status=CallStatus.DIALING) is None
        assert registry.get(session_id).status == CallStatus.FAILED

        other = registry.create(make_patient())
        updated = registry.update_if(other, CallStatus.INITIATING, status=CallStatus.DIALING)
        assert updated.status == CallStatus.DIALING
        assert registry.update_if("missing", CallStatus.INITIATING, status=CallStatus.DIALING) is None

    def test_purge_stale_drops_idle_non_terminal_sessions(self, registry):
        """Test purge_stale removes idle non-terminal sessions not kept alive."""
        idle = registry.create(make_patient())
        streaming = registry.create(make_patient())
        fresh = registry.create(make_patient())
        finished = registry.create(make_patient())
        registry.update(idle, status=CallStatus.NO_ANSWER)
        registry.update(streaming, status=CallStatus.ACTIVE)
        registry.update(finished, status=CallStatus.COMPLETED)
        for session_id in (idle, streaming, finished):
            registry._sessions[session_id].last_update = utcnow() - timedelta(hours=2)

        purged = registry.purge_stale(older_than=3600, keep=[streaming])

        assert purged == [idle]
        assert registry.get(streaming) is not None
        assert registry.get(fresh) is not None
        assert registry.get(finished) is not None
