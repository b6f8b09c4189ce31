import pytest

from deliberation.errors import InvalidTransition, PhaseClosed
from deliberation.schemas.records import SessionStatus, SyncStateRecord, ViewMode
from deliberation.services.phase_machine import (
    ALLOWED_TRANSITIONS,
    can_transition,
    plan_focus,
    plan_view_state,
    validate_transition,
)

S = SessionStatus


def _sync(view_mode, candidate_id=None, role_id="role-1"):
    return SyncStateRecord(
        session_id="sess-1",
        current_role_id=role_id,
        current_candidate_id=candidate_id,
        view_mode=view_mode,
    )


@pytest.mark.parametrize(
    "current,target",
    [
        (S.SETUP, S.PHASE1_OPEN),
        (S.PHASE1_OPEN, S.PHASE1_CLOSED),
        (S.PHASE1_CLOSED, S.PHASE1_OPEN),
        (S.PHASE1_CLOSED, S.PHASE2_OPEN),
        (S.PHASE2_OPEN, S.PHASE2_CLOSED),
        (S.PHASE2_CLOSED, S.PHASE2_OPEN),
        (S.PHASE2_CLOSED, S.ARCHIVED),
    ],
)
def test_forward_and_reopen_transitions_are_allowed(current, target):
    assert can_transition(current, target)
    validate_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.SETUP, S.PHASE2_OPEN),
        (S.PHASE1_OPEN, S.PHASE2_OPEN),
        (S.PHASE2_OPEN, S.PHASE1_OPEN),
        (S.PHASE2_CLOSED, S.SETUP),
    ],
)
def test_skipping_or_reversing_phases_is_rejected(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransition):
        validate_transition(current, target)


def test_archived_is_reachable_from_everywhere_and_terminal():
    for status in S:
        if status != S.ARCHIVED:
            assert S.ARCHIVED in ALLOWED_TRANSITIONS[status]
    for target in S:
        with pytest.raises(InvalidTransition):
            validate_transition(S.ARCHIVED, target)


def test_entering_phase2_clears_candidate_and_selects_roles():
    plan = plan_view_state(S.PHASE2_OPEN, _sync(ViewMode.CANDIDATE_FOCUS, "cand-1"))

    assert plan.view_mode == ViewMode.PHASE2_ROLE_SELECT
    assert plan.candidate_id is None
    assert plan.role_id == "role-1"


def test_entering_phase1_open_makes_facilitator_repick():
    plan = plan_view_state(S.PHASE1_OPEN, _sync(ViewMode.CANDIDATE_FOCUS, "cand-1"))

    assert plan.view_mode == ViewMode.ROLE_LIST
    assert plan.candidate_id is None


def test_closing_phase1_keeps_the_focused_candidate():
    plan = plan_view_state(S.PHASE1_CLOSED, _sync(ViewMode.CANDIDATE_FOCUS, "cand-1"))

    assert plan.view_mode == ViewMode.CANDIDATE_FOCUS
    assert plan.candidate_id == "cand-1"


@pytest.mark.parametrize("target", [S.SETUP, S.ARCHIVED])
def test_idle_statuses_never_focus_a_candidate(target):
    plan = plan_view_state(target, _sync(ViewMode.CANDIDATE_FOCUS, "cand-1"))

    assert plan.view_mode != ViewMode.CANDIDATE_FOCUS
    assert plan.candidate_id is None


def test_plan_without_existing_view_state():
    plan = plan_view_state(S.PHASE1_CLOSED, None)

    assert plan == plan_view_state(S.PHASE1_OPEN, None)
    assert plan.role_id is None


def test_focus_is_limited_to_phase1():
    assert plan_focus(S.PHASE1_OPEN, "role-1", "cand-1").view_mode == ViewMode.CANDIDATE_FOCUS
    assert plan_focus(S.PHASE1_CLOSED, "role-1", None).view_mode == ViewMode.ROLE_LIST
    with pytest.raises(PhaseClosed):
        plan_focus(S.PHASE2_OPEN, "role-1", "cand-1")
    with pytest.raises(InvalidTransition):
        plan_focus(S.ARCHIVED, "role-1", None)
