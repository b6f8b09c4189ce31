import threading
import time

import pytest
from sqlalchemy.orm import sessionmaker

from conftest import VOTER_ID, advance_members, seed_session
from deliberation.data.gateway import PersistenceGateway
from deliberation.database import QueuedSession
from deliberation.errors import (
    DeliberationError,
    IneligibleCandidate,
    PhaseClosed,
    QuotaExceeded,
    Unauthenticated,
)
from deliberation.schemas.records import SessionStatus
from deliberation.services.ballot_manager import BallotManager

DEFAULT_POLICY = {"strict_quota": False, "lock_on_submit": False}


@pytest.fixture
def phase2(gateway):
    seeded = seed_session(gateway)
    advance_members(gateway, seeded)
    gateway.update_session_status(seeded.session_id, SessionStatus.PHASE2_OPEN)
    return seeded


@pytest.fixture
def manager(gateway):
    return BallotManager(gateway, policy=dict(DEFAULT_POLICY))


def _toggle(manager, seeded, candidate_id, user_id=VOTER_ID):
    return manager.toggle_selection(seeded.session_id, seeded.member_role, user_id, candidate_id)


def test_ballot_is_created_lazily(gateway, manager, phase2):
    before = manager.get_own_ballot(phase2.session_id, phase2.member_role, VOTER_ID)
    assert before.ballot_id is None
    assert gateway.list_ballots(phase2.session_id) == []

    state = _toggle(manager, phase2, phase2.member_candidates[0])

    assert state.outcome == "added"
    assert state.ballot_id is not None
    assert state.selected_ids == [phase2.member_candidates[0]]
    assert len(gateway.list_ballots(phase2.session_id)) == 1


def test_toggle_past_quota_is_a_silent_no_op(manager, phase2):
    c1, c2, c3 = phase2.member_candidates[:3]
    _toggle(manager, phase2, c1)
    _toggle(manager, phase2, c2)

    state = _toggle(manager, phase2, c3)

    assert state.outcome == "quota_reached"
    assert sorted(state.selected_ids) == sorted([c1, c2])
    assert state.remaining == 0


def test_selection_toggling_is_reversible(manager, phase2):
    c1, c2 = phase2.member_candidates[:2]
    _toggle(manager, phase2, c1)
    _toggle(manager, phase2, c2)

    removed = _toggle(manager, phase2, c1)
    assert removed.outcome == "removed"
    assert removed.selected_ids == [c2]

    readded = _toggle(manager, phase2, c1)
    assert readded.outcome == "added"
    assert sorted(readded.selected_ids) == sorted([c1, c2])


def test_strict_policy_raises_but_keeps_selection_set(gateway, phase2):
    manager = BallotManager(gateway, policy={"strict_quota": True, "lock_on_submit": False})
    c1, c2, c3 = phase2.member_candidates[:3]
    _toggle(manager, phase2, c1)
    _toggle(manager, phase2, c2)

    with pytest.raises(QuotaExceeded):
        _toggle(manager, phase2, c3)

    state = manager.get_own_ballot(phase2.session_id, phase2.member_role, VOTER_ID)
    assert sorted(state.selected_ids) == sorted([c1, c2])


def test_candidate_must_be_advanced_and_in_role(gateway, manager, phase2):
    with pytest.raises(IneligibleCandidate):
        manager.toggle_selection(
            phase2.session_id, phase2.president_role, VOTER_ID, phase2.president_candidates[0]
        )
    with pytest.raises(IneligibleCandidate):
        manager.toggle_selection(
            phase2.session_id, phase2.president_role, VOTER_ID, phase2.member_candidates[0]
        )


def test_anonymous_toggle_is_rejected(manager, phase2):
    with pytest.raises(Unauthenticated):
        _toggle(manager, phase2, phase2.member_candidates[0], user_id="")


def test_submit_flips_and_does_not_lock_by_default(manager, phase2):
    submitted = manager.toggle_submit(phase2.session_id, phase2.member_role, VOTER_ID)
    assert submitted.submitted is True
    assert submitted.selected_ids == []

    edited = _toggle(manager, phase2, phase2.member_candidates[0])
    assert edited.outcome == "added"
    assert edited.submitted is True

    unsubmitted = manager.toggle_submit(phase2.session_id, phase2.member_role, VOTER_ID)
    assert unsubmitted.submitted is False
    assert unsubmitted.outcome == "unsubmitted"


def test_lock_on_submit_policy(gateway, phase2):
    manager = BallotManager(gateway, policy={"strict_quota": False, "lock_on_submit": True})
    manager.toggle_submit(phase2.session_id, phase2.member_role, VOTER_ID)

    with pytest.raises(PhaseClosed):
        _toggle(manager, phase2, phase2.member_candidates[0])


def test_closed_phase_rejects_ballot_changes(gateway, manager, phase2):
    _toggle(manager, phase2, phase2.member_candidates[0])
    gateway.update_session_status(phase2.session_id, SessionStatus.PHASE2_CLOSED)

    with pytest.raises(PhaseClosed):
        _toggle(manager, phase2, phase2.member_candidates[1])
    with pytest.raises(PhaseClosed):
        manager.toggle_submit(phase2.session_id, phase2.member_role, VOTER_ID)
    state = manager.get_own_ballot(phase2.session_id, phase2.member_role, VOTER_ID)
    assert state.selected_ids == [phase2.member_candidates[0]]


def test_concurrent_first_create_reuses_existing_ballot(session_factory, gateway, phase2, monkeypatch):
    first = gateway.ensure_ballot(phase2.session_id, phase2.member_role, VOTER_ID)

    with session_factory() as other_db:
        racing = PersistenceGateway(other_db)
        # The racing request checked before the first create committed.
        monkeypatch.setattr(racing, "get_ballot", lambda *args: None)
        second = racing.ensure_ballot(phase2.session_id, phase2.member_role, VOTER_ID)

    assert second.id == first.id
    assert len(gateway.list_ballots(phase2.session_id, user_id=VOTER_ID)) == 1


def test_storage_never_exceeds_quota(gateway, phase2):
    ballot = gateway.ensure_ballot(phase2.session_id, phase2.member_role, VOTER_ID)
    results = [
        gateway.add_selection(ballot.id, candidate_id, 2)
        for candidate_id in phase2.member_candidates
    ]

    assert results == [True, True, False, False]
    assert gateway.count_selections(ballot.id) == 2


def test_withdrawn_candidate_can_still_be_deselected(gateway, manager, phase2):
    first, second, third = phase2.member_candidates[:3]
    _toggle(manager, phase2, first)
    _toggle(manager, phase2, second)
    gateway.set_candidate_advanced(first, False)

    removed = _toggle(manager, phase2, first)
    assert removed.outcome == "removed"
    assert removed.selected_ids == [second]

    assert _toggle(manager, phase2, third).outcome == "added"
    with pytest.raises(IneligibleCandidate):
        _toggle(manager, phase2, first)


def test_concurrent_toggles_on_queued_sessions_finish_promptly(db_engine, phase2):
    factory = sessionmaker(
        autocommit=False, autoflush=False, bind=db_engine, class_=QueuedSession
    )
    barrier = threading.Barrier(len(phase2.member_candidates))
    outcomes = []

    def worker(candidate_id):
        with factory() as db:
            manager = BallotManager(PersistenceGateway(db), policy=dict(DEFAULT_POLICY))
            barrier.wait()
            try:
                outcomes.append(_toggle(manager, phase2, candidate_id).outcome)
            except DeliberationError as exc:
                outcomes.append(exc.code)

    threads = [
        threading.Thread(target=worker, args=(candidate_id,))
        for candidate_id in phase2.member_candidates
    ]
    started = time.monotonic()
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=20)
    elapsed = time.monotonic() - started

    assert not any(thread.is_alive() for thread in threads)
    assert sorted(outcomes) == ["added", "added", "quota_reached", "quota_reached"]
    assert elapsed < 10
    with factory() as db:
        ballots = PersistenceGateway(db).list_ballots(phase2.session_id, user_id=VOTER_ID)
        assert len(ballots) == 1
        assert PersistenceGateway(db).count_selections(ballots[0].id) == 2
