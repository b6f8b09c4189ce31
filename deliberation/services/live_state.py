from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from deliberation.data.gateway import PersistenceGateway
from deliberation.schemas.records import (
    PHASE1_STATUSES,
    PHASE2_STATUSES,
    CandidateRecord,
    RoleRecord,
    SessionRecord,
    SessionStatus,
    SyncStateRecord,
    ViewMode,
    VoteValue,
)

JSONCompatibleDict = Dict[str, Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    IDLE = "idle"


@dataclass(frozen=True)
class DerivedState:
    phase: Phase
    status: Optional[SessionStatus]
    view_mode: Optional[ViewMode]
    role_id: Optional[str]
    candidate_id: Optional[str]
    # False while the session row and the view-state row disagree, e.g. a
    # phase2_role_select view observed before the phase 2 status has landed.
    settled: bool = True

    @property
    def can_vote(self) -> bool:
        return (
            self.status == SessionStatus.PHASE1_OPEN
            and self.view_mode == ViewMode.CANDIDATE_FOCUS
        )

    @property
    def ballots_open(self) -> bool:
        return self.status == SessionStatus.PHASE2_OPEN


def derive_state(
    status: Optional[SessionStatus],
    sync: Optional[SyncStateRecord],
) -> DerivedState:
    """Reduce (session status, shared view state) to what a client should render.

    Pure: identical arguments always yield equal results, so replaying a
    notification can never move a client somewhere a fresh pull would not.
    The session status is authoritative for the phase.
    """
    sync_mode = sync.view_mode if sync else None
    role_id = sync.current_role_id if sync else None

    if status in PHASE2_STATUSES:
        return DerivedState(
            phase=Phase.PHASE2,
            status=status,
            view_mode=ViewMode.PHASE2_ROLE_SELECT,
            role_id=role_id,
            candidate_id=None,
            settled=sync_mode == ViewMode.PHASE2_ROLE_SELECT,
        )

    if status in PHASE1_STATUSES:
        candidate_id = sync.current_candidate_id if sync else None
        if sync_mode == ViewMode.CANDIDATE_FOCUS and candidate_id:
            view_mode, focused = ViewMode.CANDIDATE_FOCUS, candidate_id
        else:
            view_mode, focused = ViewMode.ROLE_LIST, None
        return DerivedState(
            phase=Phase.PHASE1,
            status=status,
            view_mode=view_mode,
            role_id=role_id,
            candidate_id=focused,
            settled=sync_mode != ViewMode.PHASE2_ROLE_SELECT,
        )

    return DerivedState(
        phase=Phase.IDLE,
        status=status,
        view_mode=None,
        role_id=role_id,
        candidate_id=None,
        settled=sync_mode
        not in {ViewMode.CANDIDATE_FOCUS, ViewMode.PHASE2_ROLE_SELECT},
    )


@dataclass(frozen=True)
class RoleBallotView:
    role: RoleRecord
    candidates: List[CandidateRecord]
    ballot_id: Optional[str] = None
    selected_ids: List[str] = field(default_factory=list)
    submitted: bool = False

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "roleId": self.role.id,
            "roleName": self.role.name,
            "quota": self.role.quota,
            "ballotId": self.ballot_id,
            "submitted": self.submitted,
            "selectedIds": list(self.selected_ids),
            "remaining": max(self.role.quota - len(self.selected_ids), 0),
            "candidates": [
                {
                    "id": candidate.id,
                    "name": candidate.name,
                    "photoUrl": candidate.photo_url,
                    "airtableUrl": candidate.airtable_url,
                }
                for candidate in self.candidates
            ],
        }


@dataclass(frozen=True)
class LiveView:
    """A hydrated derived state: the full client-visible picture for one user."""

    session_id: str
    session_name: Optional[str]
    derived: DerivedState
    roles: List[RoleRecord] = field(default_factory=list)
    candidate: Optional[CandidateRecord] = None
    candidate_role_name: Optional[str] = None
    vote: Optional[VoteValue] = None
    ballots: List[RoleBallotView] = field(default_factory=list)
    notice: Optional[str] = field(default=None, compare=False)
    refreshed_at: datetime = field(default_factory=_now, compare=False)

    @property
    def view_mode(self) -> Optional[ViewMode]:
        # A focus on a candidate that no longer resolves renders as the role list.
        if self.derived.view_mode == ViewMode.CANDIDATE_FOCUS and self.candidate is None:
            return ViewMode.ROLE_LIST
        return self.derived.view_mode

    def with_notice(self, notice: Optional[str]) -> "LiveView":
        return replace(self, notice=notice)

    def to_payload(self) -> JSONCompatibleDict:
        """Return a JSON-friendly snapshot of the live view."""
        derived = self.derived
        candidate = None
        if self.candidate is not None:
            candidate = {
                "id": self.candidate.id,
                "name": self.candidate.name,
                "roleId": self.candidate.role_id,
                "roleName": self.candidate_role_name,
                "notes": self.candidate.notes,
                "photoUrl": self.candidate.photo_url,
                "airtableUrl": self.candidate.airtable_url,
                "advancedToPhase2": self.candidate.advanced_to_phase2,
            }
        return {
            "sessionId": self.session_id,
            "sessionName": self.session_name,
            "status": derived.status.value if derived.status else None,
            "phase": derived.phase.value,
            "viewMode": self.view_mode.value if self.view_mode else None,
            "settled": derived.settled,
            "currentRoleId": derived.role_id,
            "candidate": candidate,
            "vote": self.vote.value if self.vote else None,
            "canVote": derived.can_vote and self.candidate is not None,
            "voteLocked": derived.status == SessionStatus.PHASE1_CLOSED,
            "ballotsOpen": derived.ballots_open,
            "ballots": [ballot.to_payload() for ballot in self.ballots],
            "roles": [
                {"id": role.id, "name": role.name, "quota": role.quota}
                for role in self.roles
            ],
            "notice": self.notice,
            "refreshedAt": self.refreshed_at.isoformat(),
        }


def load_role_ballots(
    gateway: PersistenceGateway,
    session_id: str,
    roles: List[RoleRecord],
    user_id: Optional[str],
) -> List[RoleBallotView]:
    """Merge the user's ballots across every role of the session."""
    eligible: Dict[str, List[CandidateRecord]] = {role.id: [] for role in roles}
    for candidate in gateway.list_candidates(session_id, eligible_only=True):
        eligible.setdefault(candidate.role_id, []).append(candidate)

    ballots_by_role = {}
    selected: Dict[str, List[str]] = {}
    if user_id:
        ballots_by_role = {
            ballot.role_id: ballot
            for ballot in gateway.list_ballots(session_id, user_id=user_id)
        }
        for selection in gateway.list_selections(
            ballot.id for ballot in ballots_by_role.values()
        ):
            selected.setdefault(selection.ballot_id, []).append(selection.candidate_id)

    views: List[RoleBallotView] = []
    for role in roles:
        ballot = ballots_by_role.get(role.id)
        views.append(
            RoleBallotView(
                role=role,
                candidates=sorted(eligible.get(role.id, []), key=lambda c: c.name),
                ballot_id=ballot.id if ballot else None,
                selected_ids=selected.get(ballot.id, []) if ballot else [],
                submitted=bool(ballot and ballot.submitted),
            )
        )
    return views


def build_live_view(
    gateway: PersistenceGateway,
    session_id: str,
    session: Optional[SessionRecord],
    sync: Optional[SyncStateRecord],
    user_id: Optional[str],
    *,
    derived: Optional[DerivedState] = None,
) -> LiveView:
    if derived is None:
        derived = derive_state(session.status if session else None, sync)
    if session is None:
        return LiveView(session_id=session_id, session_name=None, derived=derived)

    roles = gateway.list_roles(session_id)
    candidate = None
    candidate_role_name = None
    vote = None
    ballots: List[RoleBallotView] = []

    if derived.phase == Phase.PHASE1 and derived.candidate_id:
        candidate = gateway.get_candidate(derived.candidate_id)
        if candidate is not None and candidate.session_id != session_id:
            candidate = None
        if candidate is not None:
            candidate_role_name = next(
                (role.name for role in roles if role.id == candidate.role_id), None
            )
            if user_id:
                existing = gateway.get_vote(session_id, candidate.id, user_id)
                vote = existing.vote if existing else None
    elif derived.phase == Phase.PHASE2:
        ballots = load_role_ballots(gateway, session_id, roles, user_id)

    return LiveView(
        session_id=session_id,
        session_name=session.name,
        derived=derived,
        roles=roles,
        candidate=candidate,
        candidate_role_name=candidate_role_name,
        vote=vote,
        ballots=ballots,
    )


def pull_live_view(
    gateway: PersistenceGateway, session_id: str, user_id: Optional[str]
) -> LiveView:
    """Authoritative pull: read both head rows and hydrate from them."""
    session = gateway.require_session(session_id)
    sync = gateway.get_sync_state(session_id)
    return build_live_view(gateway, session_id, session, sync, user_id)
