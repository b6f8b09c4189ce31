from __future__ import annotations

import logging
from typing import Any, List, Optional

from deliberation.data.gateway import PersistenceGateway
from deliberation.errors import InvalidRequest, PhaseClosed, Unauthenticated
from deliberation.schemas.records import SessionStatus, VoteRecord, VoteValue

logger = logging.getLogger(__name__)


class VotingManager:
    """Phase 1: one yes/strong-yes/no vote per (session, candidate, user)."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway

    @staticmethod
    def _require_user(user_id: Optional[str]) -> str:
        user_id = (user_id or "").strip()
        if not user_id:
            raise Unauthenticated("Sign in to vote.")
        return user_id

    @staticmethod
    def _coerce_vote(value: Any) -> VoteValue:
        try:
            return VoteValue(value)
        except ValueError as exc:
            raise InvalidRequest(
                "Vote must be one of strong_yes, yes or no.", value=value
            ) from exc

    def cast_vote(
        self,
        session_id: str,
        candidate_id: str,
        user_id: Optional[str],
        value: Any,
    ) -> VoteRecord:
        """Create or overwrite the caller's vote while phase 1 is open."""
        user_id = self._require_user(user_id)
        vote = self._coerce_vote(value)
        session = self.gateway.require_session(session_id)
        if session.status != SessionStatus.PHASE1_OPEN:
            raise PhaseClosed(
                "Phase 1 voting is closed.", status=session.status.value
            )
        candidate = self.gateway.require_candidate(session_id, candidate_id)
        record = self.gateway.upsert_vote(session_id, candidate.id, user_id, vote)
        logger.info(
            "Phase 1 vote recorded: session_id=%s candidate_id=%s user_id=%s",
            session_id,
            candidate.id,
            user_id,
        )
        return record

    def get_own_vote(
        self, session_id: str, candidate_id: str, user_id: Optional[str]
    ) -> Optional[VoteRecord]:
        user_id = self._require_user(user_id)
        self.gateway.require_session(session_id)
        candidate = self.gateway.require_candidate(session_id, candidate_id)
        return self.gateway.get_vote(session_id, candidate.id, user_id)

    def list_own_votes(
        self, session_id: str, user_id: Optional[str]
    ) -> List[VoteRecord]:
        user_id = self._require_user(user_id)
        self.gateway.require_session(session_id)
        return [
            vote
            for vote in self.gateway.list_votes(session_id)
            if vote.user_id == user_id
        ]
