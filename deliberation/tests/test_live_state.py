from datetime import datetime, timezone

from conftest import VOTER_ID, advance_members, seed_session
from deliberation.schemas.records import SessionStatus, SyncStateRecord, ViewMode, VoteValue
from deliberation.services.live_state import (
    Phase,
    build_live_view,
    derive_state,
    pull_live_view,
)


def _sync(view_mode, candidate_id=None, role_id="role-1"):
    return SyncStateRecord(
        session_id="sess-1",
        current_role_id=role_id,
        current_candidate_id=candidate_id,
        view_mode=view_mode,
        updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


def test_derive_state_is_pure():
    sync = _sync(ViewMode.CANDIDATE_FOCUS, "cand-1")

    first = derive_state(SessionStatus.PHASE1_OPEN, sync)
    second = derive_state(SessionStatus.PHASE1_OPEN, sync)

    assert first == second
    assert first.phase == Phase.PHASE1
    assert first.candidate_id == "cand-1"
    assert first.can_vote


def test_phase1_without_candidate_falls_back_to_role_list():
    derived = derive_state(SessionStatus.PHASE1_OPEN, _sync(ViewMode.CANDIDATE_FOCUS, None))

    assert derived.view_mode == ViewMode.ROLE_LIST
    assert derived.candidate_id is None
    assert not derived.can_vote


def test_phase1_closed_shows_candidate_without_voting():
    derived = derive_state(SessionStatus.PHASE1_CLOSED, _sync(ViewMode.CANDIDATE_FOCUS, "cand-1"))

    assert derived.view_mode == ViewMode.CANDIDATE_FOCUS
    assert not derived.can_vote


def test_status_is_authoritative_for_phase():
    # Status landed before the view-state write.
    early = derive_state(SessionStatus.PHASE2_OPEN, _sync(ViewMode.CANDIDATE_FOCUS, "cand-1"))
    assert early.phase == Phase.PHASE2
    assert early.candidate_id is None
    assert not early.settled

    # View-state write landed before the status.
    late = derive_state(SessionStatus.PHASE1_OPEN, _sync(ViewMode.PHASE2_ROLE_SELECT))
    assert late.phase == Phase.PHASE1
    assert late.view_mode == ViewMode.ROLE_LIST
    assert not late.settled

    settled = derive_state(SessionStatus.PHASE2_OPEN, _sync(ViewMode.PHASE2_ROLE_SELECT))
    assert settled.settled
    assert settled.ballots_open


def test_idle_statuses_have_no_voting_surface():
    for status in (SessionStatus.SETUP, SessionStatus.ARCHIVED, None):
        derived = derive_state(status, _sync(ViewMode.ROLE_LIST))
        assert derived.phase == Phase.IDLE
        assert derived.view_mode is None
        assert derived.settled


def test_focused_candidate_is_hydrated_with_own_vote(gateway):
    seeded = seed_session(gateway, SessionStatus.PHASE1_OPEN)
    candidate_id = seeded.president_candidates[0]
    gateway.upsert_sync_state(
        seeded.session_id,
        role_id=seeded.president_role,
        candidate_id=candidate_id,
        view_mode=ViewMode.CANDIDATE_FOCUS,
        updated_by="facilitator-1",
    )
    gateway.upsert_vote(seeded.session_id, candidate_id, VOTER_ID, VoteValue.YES)

    view = pull_live_view(gateway, seeded.session_id, VOTER_ID)
    payload = view.to_payload()

    assert payload["viewMode"] == "candidate_focus"
    assert payload["candidate"]["id"] == candidate_id
    assert payload["candidate"]["roleName"] == "President"
    assert payload["vote"] == "yes"
    assert payload["canVote"] is True


def test_dangling_focus_renders_role_list(gateway):
    seeded = seed_session(gateway, SessionStatus.PHASE1_OPEN)
    session = gateway.require_session(seeded.session_id)
    sync = _sync(ViewMode.CANDIDATE_FOCUS, "not-a-candidate", role_id=seeded.president_role)

    view = build_live_view(gateway, seeded.session_id, session, sync, VOTER_ID)

    assert view.candidate is None
    assert view.view_mode == ViewMode.ROLE_LIST
    assert view.to_payload()["canVote"] is False


def test_phase2_merges_ballots_across_all_roles(gateway):
    seeded = seed_session(gateway)
    advance_members(gateway, seeded)
    gateway.set_candidate_advanced(seeded.president_candidates[0], True)
    gateway.update_session_status(seeded.session_id, SessionStatus.PHASE2_OPEN)
    ballot = gateway.ensure_ballot(seeded.session_id, seeded.member_role, VOTER_ID)
    gateway.add_selection(ballot.id, seeded.member_candidates[2], 2)

    view = pull_live_view(gateway, seeded.session_id, VOTER_ID)
    ballots = {entry["roleName"]: entry for entry in view.to_payload()["ballots"]}

    assert set(ballots) == {"President", "Member"}
    assert ballots["President"]["ballotId"] is None
    assert [c["id"] for c in ballots["President"]["candidates"]] == [seeded.president_candidates[0]]
    assert ballots["Member"]["selectedIds"] == [seeded.member_candidates[2]]
    assert ballots["Member"]["remaining"] == 1


def test_live_view_equality_ignores_notice_and_timestamp(gateway):
    seeded = seed_session(gateway, SessionStatus.PHASE1_OPEN)

    first = pull_live_view(gateway, seeded.session_id, VOTER_ID)
    second = pull_live_view(gateway, seeded.session_id, VOTER_ID).with_notice("new_candidate")

    assert first == second
