"""Legal session status transitions and the view-state each status implies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from deliberation.errors import InvalidTransition, PhaseClosed
from deliberation.schemas.records import (
    PHASE1_STATUSES,
    PHASE2_STATUSES,
    SessionStatus,
    SyncStateRecord,
    ViewMode,
)

S = SessionStatus

ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    S.SETUP: frozenset({S.PHASE1_OPEN, S.ARCHIVED}),
    S.PHASE1_OPEN: frozenset({S.PHASE1_CLOSED, S.ARCHIVED}),
    S.PHASE1_CLOSED: frozenset({S.PHASE1_OPEN, S.PHASE2_OPEN, S.ARCHIVED}),
    S.PHASE2_OPEN: frozenset({S.PHASE2_CLOSED, S.ARCHIVED}),
    S.PHASE2_CLOSED: frozenset({S.PHASE2_OPEN, S.ARCHIVED}),
    S.ARCHIVED: frozenset(),
}


@dataclass(frozen=True)
class ViewStatePlan:
    role_id: Optional[str]
    candidate_id: Optional[str]
    view_mode: ViewMode


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    # Re-issuing the current status rewrites the view state; archived stays terminal.
    if current == target:
        return current != S.ARCHIVED
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    if current == S.ARCHIVED:
        raise InvalidTransition("Session is archived; no further changes are allowed.")
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move a session from {current.value} to {target.value}.",
            current=current.value,
            target=target.value,
        )


def ensure_mutable(status: SessionStatus) -> None:
    if status == S.ARCHIVED:
        raise InvalidTransition("Session is archived; no further changes are allowed.")


def plan_view_state(
    target: SessionStatus,
    current: Optional[SyncStateRecord],
) -> ViewStatePlan:
    """Return the shared view state to write alongside a move to ``target``."""
    role_id = current.current_role_id if current else None

    if target in PHASE2_STATUSES:
        # Phase 2 is role-scoped, never candidate-scoped.
        return ViewStatePlan(role_id, None, ViewMode.PHASE2_ROLE_SELECT)

    if target == S.PHASE1_CLOSED and current is not None:
        # Voters keep seeing the focused candidate with their locked vote.
        if (
            current.view_mode == ViewMode.CANDIDATE_FOCUS
            and current.current_candidate_id
        ):
            return ViewStatePlan(
                role_id, current.current_candidate_id, ViewMode.CANDIDATE_FOCUS
            )

    # phase1_open makes the facilitator re-pick; setup and archived never focus.
    return ViewStatePlan(role_id, None, ViewMode.ROLE_LIST)


def plan_focus(
    status: SessionStatus,
    role_id: str,
    candidate_id: Optional[str],
) -> ViewStatePlan:
    """Return the view state for a facilitator focus change in ``status``."""
    ensure_mutable(status)
    if status not in PHASE1_STATUSES:
        raise PhaseClosed(
            "Candidate focus is only available during phase 1.",
            status=status.value,
        )
    if candidate_id:
        return ViewStatePlan(role_id, candidate_id, ViewMode.CANDIDATE_FOCUS)
    return ViewStatePlan(role_id, None, ViewMode.ROLE_LIST)
