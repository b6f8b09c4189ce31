from __future__ import annotations

import logging
from typing import Dict, Optional

from deliberation.config.loader import get_ballot_policy
from deliberation.data.gateway import PersistenceGateway
from deliberation.errors import (
    IneligibleCandidate,
    PhaseClosed,
    QuotaExceeded,
    Unauthenticated,
)
from deliberation.schemas.records import (
    BallotRecord,
    CandidateRecord,
    RoleRecord,
    SessionStatus,
)
from deliberation.schemas.voting import BallotState

logger = logging.getLogger(__name__)


class BallotManager:
    """
    Phase 2 quota ballots: per (session, role, user), select up to ``quota``
    advanced candidates of that role.

    By default a toggle past the quota is a silent no-op reported through the
    ``quota_reached`` outcome and a submitted ballot stays editable. Both can be
    tightened in the ``ballots`` section of ``config.yaml`` (``strict_quota``,
    ``lock_on_submit``).
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        policy: Optional[Dict[str, bool]] = None,
    ) -> None:
        self.gateway = gateway
        self.policy = policy if policy is not None else get_ballot_policy()

    @staticmethod
    def _require_user(user_id: Optional[str]) -> str:
        user_id = (user_id or "").strip()
        if not user_id:
            raise Unauthenticated("Sign in to fill in a ballot.")
        return user_id

    def _require_open(self, session_id: str) -> None:
        session = self.gateway.require_session(session_id)
        if session.status != SessionStatus.PHASE2_OPEN:
            raise PhaseClosed("Phase 2 ballots are closed.", status=session.status.value)

    @staticmethod
    def _check_eligible(role: RoleRecord, candidate: CandidateRecord) -> None:
        if candidate.role_id != role.id:
            raise IneligibleCandidate(
                "Candidate belongs to a different role.",
                candidate_id=candidate.id,
                role_id=role.id,
            )
        if not candidate.advanced_to_phase2:
            raise IneligibleCandidate(
                "Candidate has not advanced to phase 2.", candidate_id=candidate.id
            )

    def _state(
        self,
        session_id: str,
        role: RoleRecord,
        ballot: Optional[BallotRecord],
        outcome: str,
    ) -> BallotState:
        selected = []
        if ballot is not None:
            selected = [
                selection.candidate_id
                for selection in self.gateway.list_selections([ballot.id])
            ]
        return BallotState(
            session_id=session_id,
            role_id=role.id,
            quota=role.quota,
            ballot_id=ballot.id if ballot else None,
            submitted=bool(ballot and ballot.submitted),
            selected_ids=selected,
            remaining=max(role.quota - len(selected), 0),
            outcome=outcome,
        )

    def get_own_ballot(
        self, session_id: str, role_id: str, user_id: Optional[str]
    ) -> BallotState:
        """Read the caller's ballot without creating one."""
        user_id = self._require_user(user_id)
        self.gateway.require_session(session_id)
        role = self.gateway.require_role(session_id, role_id)
        ballot = self.gateway.get_ballot(session_id, role.id, user_id)
        return self._state(session_id, role, ballot, "loaded")

    def _check_editable(self, ballot: BallotRecord) -> None:
        if ballot.submitted and self.policy.get("lock_on_submit"):
            raise PhaseClosed("Ballot is submitted; unsubmit it to make changes.")

    def toggle_selection(
        self,
        session_id: str,
        role_id: str,
        user_id: Optional[str],
        candidate_id: str,
    ) -> BallotState:
        """Select an unselected candidate or deselect a selected one.

        Eligibility gates additions only: a selection whose candidate was
        withdrawn from phase 2 afterwards can still be removed.
        """
        user_id = self._require_user(user_id)
        self._require_open(session_id)
        role = self.gateway.require_role(session_id, role_id)
        candidate = self.gateway.require_candidate(session_id, candidate_id)

        ballot = self.gateway.get_ballot(session_id, role.id, user_id)
        if ballot is not None and self.gateway.is_selected(ballot.id, candidate.id):
            self._check_editable(ballot)
            removed = self.gateway.remove_selection(ballot.id, candidate.id)
            outcome = "removed" if removed else "unchanged"
        else:
            self._check_eligible(role, candidate)
            ballot = self.gateway.ensure_ballot(session_id, role.id, user_id)
            self._check_editable(ballot)
            if self.gateway.add_selection(ballot.id, candidate.id, role.quota):
                outcome = "added"
            elif self.gateway.is_selected(ballot.id, candidate.id):
                # A concurrent toggle inserted the same edge first.
                outcome = "unchanged"
            elif self.policy.get("strict_quota"):
                raise QuotaExceeded(
                    f"You can select at most {role.quota} for this role.",
                    quota=role.quota,
                )
            else:
                outcome = "quota_reached"

        logger.info(
            "Ballot toggle: session_id=%s role_id=%s user_id=%s candidate_id=%s outcome=%s",
            session_id,
            role.id,
            user_id,
            candidate.id,
            outcome,
        )
        return self._state(session_id, role, ballot, outcome)

    def toggle_submit(
        self, session_id: str, role_id: str, user_id: Optional[str]
    ) -> BallotState:
        """Flip the caller's submitted flag, creating the ballot if needed."""
        user_id = self._require_user(user_id)
        self._require_open(session_id)
        role = self.gateway.require_role(session_id, role_id)
        ballot = self.gateway.ensure_ballot(session_id, role.id, user_id)
        ballot = self.gateway.set_ballot_submitted(ballot.id, not ballot.submitted)
        outcome = "submitted" if ballot.submitted else "unsubmitted"
        logger.info(
            "Ballot %s: session_id=%s role_id=%s user_id=%s",
            outcome,
            session_id,
            role.id,
            user_id,
        )
        return self._state(session_id, role, ballot, outcome)
