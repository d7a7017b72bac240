"""
Tests for lifecycle.py - match status transitions and their side effects.
"""

import pytest

from organmatch.errors import IllegalTransition, InvalidInput, NotFound, PersistenceFailure
from organmatch.lifecycle import MatchLifecycleManager, can_transition


@pytest.fixture
def manager(registry, sink, clock):
    return MatchLifecycleManager(registry, sink=sink, clock=clock)


@pytest.fixture
def pending_match(registry, make_donor, make_recipient):
    donor = make_donor()
    recipient = make_recipient()
    return registry.insert_match(donor.id, recipient.id, "kidney", 92)


def _parties(registry, match):
    return registry.get_donor(match.donor_id), registry.get_recipient(match.recipient_id)


class TestTransitionTable:
    """Test the legal transition set."""

    @pytest.mark.parametrize("current,requested", [
        ("pending", "approved"),
        ("pending", "rejected"),
        ("approved", "completed"),
    ])
    def test_allowed(self, current, requested):
        assert can_transition(current, requested)

    @pytest.mark.parametrize("current,requested", [
        ("pending", "completed"),
        ("pending", "pending"),
        ("approved", "approved"),
        ("approved", "rejected"),
        ("rejected", "approved"),
        ("rejected", "pending"),
        ("completed", "approved"),
        ("completed", "pending"),
        ("pending", "cancelled"),
    ])
    def test_forbidden(self, current, requested):
        assert not can_transition(current, requested)


class TestApprove:
    """pending -> approved."""

    def test_approve_sets_approver_and_parties(self, manager, registry, pending_match, now):
        match = manager.set_status(pending_match.id, "approved", "dr.lee")

        assert match.status == "approved"
        assert match.approved_by == "dr.lee"
        assert match.approved_at == now
        donor, recipient = _parties(registry, match)
        assert donor.status == "matched"
        assert recipient.status == "matched"

    def test_approve_twice_is_illegal(self, manager, registry, pending_match, now):
        manager.approve(pending_match.id, "dr.lee")

        with pytest.raises(IllegalTransition):
            manager.set_status(pending_match.id, "approved", "dr.kim")

        match = registry.get_match(pending_match.id)
        assert match.approved_by == "dr.lee"
        assert match.approved_at == now

    def test_approval_writes_ledger_event(self, manager, registry, sink, pending_match):
        manager.approve(pending_match.id, "dr.lee")

        assert sink.types() == ["match_approval"]
        [event] = registry.list_events(pending_match.id)
        assert event.data["actor"] == "dr.lee"
        assert event.data["previous_status"] == "pending"


class TestComplete:
    """approved -> completed."""

    def test_full_lifecycle(self, manager, registry, pending_match):
        manager.approve(pending_match.id, "dr.lee")
        match = manager.complete(pending_match.id, "dr.lee", outcome="successful transplant")

        assert match.status == "completed"
        assert match.outcome == "successful transplant"
        donor, recipient = _parties(registry, match)
        assert donor.status == "donated"
        assert recipient.status == "received"
        assert [e.type for e in registry.list_events(match.id)] == ["match_approval", "transplant_completion"]

    def test_cannot_complete_pending(self, manager, registry, pending_match):
        with pytest.raises(IllegalTransition):
            manager.complete(pending_match.id, "dr.lee")

        donor, recipient = _parties(registry, pending_match)
        assert donor.status == "active"
        assert recipient.status == "waiting"

    def test_completed_is_terminal(self, manager, registry, pending_match):
        manager.approve(pending_match.id, "dr.lee")
        manager.complete(pending_match.id, "dr.lee")

        with pytest.raises(IllegalTransition):
            manager.approve(pending_match.id, "dr.lee")

        match = registry.get_match(pending_match.id)
        assert match.status == "completed"
        donor, recipient = _parties(registry, match)
        assert donor.status == "donated"
        assert recipient.status == "received"


class TestReject:
    """pending -> rejected."""

    def test_reject_leaves_parties_eligible(self, manager, registry, sink, pending_match):
        match = manager.reject(pending_match.id, "dr.lee")

        assert match.status == "rejected"
        assert match.approved_by is None
        donor, recipient = _parties(registry, match)
        assert donor.status == "active"
        assert recipient.status == "waiting"
        assert sink.types() == ["match_rejection"]

    @pytest.mark.parametrize("target", ["approved", "completed", "pending", "rejected"])
    def test_rejected_is_terminal(self, manager, registry, pending_match, target):
        manager.reject(pending_match.id, "dr.lee")

        with pytest.raises(IllegalTransition):
            manager.set_status(pending_match.id, target, "dr.lee")

        assert registry.get_match(pending_match.id).status == "rejected"


class TestErrors:
    """Not found, bad input and atomicity."""

    def test_unknown_match(self, manager):
        with pytest.raises(NotFound):
            manager.approve(12345, "dr.lee")

    def test_actor_required(self, manager, pending_match):
        with pytest.raises(InvalidInput):
            manager.approve(pending_match.id, "  ")

    def test_failure_rolls_back_everything(self, manager, registry, sink, monkeypatch, pending_match):
        def fail(recipient_id, status, **kwargs):
            raise PersistenceFailure("connection lost")

        monkeypatch.setattr(registry, "update_recipient_status", fail)

        with pytest.raises(PersistenceFailure):
            manager.approve(pending_match.id, "dr.lee")

        match = registry.get_match(pending_match.id)
        assert match.status == "pending"
        assert match.approved_by is None
        assert match.approved_at is None
        assert registry.get_donor(match.donor_id).status == "active"
        assert registry.list_events(match.id) == []
        assert sink.events == []

    def test_failing_sink_keeps_committed_change(self, registry, clock, pending_match):
        class BrokenSink:
            def emit(self, payload):
                raise RuntimeError("ledger offline")

        manager = MatchLifecycleManager(registry, sink=BrokenSink(), clock=clock)

        match = manager.approve(pending_match.id, "dr.lee")

        assert match.status == "approved"
        assert registry.get_donor(match.donor_id).status == "matched"


class TestPartyStatus:
    """A donor or recipient can only be committed to one match."""

    def test_donor_cannot_be_approved_twice(self, manager, registry, make_donor, make_recipient):
        donor = make_donor()
        first = registry.insert_match(donor.id, make_recipient().id, "kidney", 92)
        second = registry.insert_match(donor.id, make_recipient().id, "kidney", 88)
        manager.approve(first.id, "dr.lee")

        with pytest.raises(IllegalTransition, match="donor"):
            manager.approve(second.id, "dr.lee")

        assert registry.get_match(second.id).status == "pending"
        assert registry.get_match(second.id).approved_by is None
        assert registry.get_donor(donor.id).status == "matched"
        assert registry.list_events(second.id) == []

    def test_donated_donor_stays_donated(self, manager, registry, make_donor, make_recipient):
        donor = make_donor()
        first = registry.insert_match(donor.id, make_recipient().id, "kidney", 92)
        second_recipient = make_recipient()
        second = registry.insert_match(donor.id, second_recipient.id, "kidney", 88)
        manager.approve(first.id, "dr.lee")
        manager.complete(first.id, "dr.lee")

        with pytest.raises(IllegalTransition):
            manager.approve(second.id, "dr.lee")

        assert registry.get_donor(donor.id).status == "donated"
        assert registry.get_recipient(second_recipient.id).status == "waiting"

    def test_received_recipient_stays_received(self, manager, registry, make_donor, make_recipient):
        recipient = make_recipient()
        first = registry.insert_match(make_donor().id, recipient.id, "kidney", 92)
        second_donor = make_donor()
        second = registry.insert_match(second_donor.id, recipient.id, "kidney", 88)
        manager.approve(first.id, "dr.lee")
        manager.complete(first.id, "dr.lee")

        with pytest.raises(IllegalTransition, match="recipient"):
            manager.approve(second.id, "dr.lee")

        assert registry.get_recipient(recipient.id).status == "received"
        assert registry.get_donor(second_donor.id).status == "active"

    def test_other_match_can_still_be_rejected(self, manager, registry, make_donor, make_recipient):
        donor = make_donor()
        first = registry.insert_match(donor.id, make_recipient().id, "kidney", 92)
        second = registry.insert_match(donor.id, make_recipient().id, "kidney", 88)
        manager.approve(first.id, "dr.lee")

        assert manager.reject(second.id, "dr.lee").status == "rejected"
        assert registry.get_donor(donor.id).status == "matched"


class TestConcurrentWriters:
    """Status changes are compare-and-set against the stored row."""

    def test_stale_read_cannot_overwrite(self, db_path, registry, clock, pending_match):
        from organmatch.database import get_session
        from organmatch.storage import SqlRegistry

        # Load the match into this session's identity map while it is pending
        assert registry.get_match(pending_match.id).status == "pending"

        other_session = get_session(db_path)
        MatchLifecycleManager(SqlRegistry(other_session), clock=clock).reject(pending_match.id, "dr.kim")
        other_session.close()

        with pytest.raises(IllegalTransition, match="concurrently"):
            MatchLifecycleManager(registry, clock=clock).approve(pending_match.id, "dr.lee")

        match = registry.get_match(pending_match.id)
        assert match.status == "rejected"
        assert match.approved_by is None
        assert registry.get_donor(match.donor_id).status == "active"
        assert [e.type for e in registry.list_events(match.id)] == ["match_rejection"]
