from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from deliberation.schemas.records import VoteValue

SelectionOutcome = Literal[
    "added", "removed", "quota_reached", "unchanged", "submitted", "unsubmitted", "loaded"
]


class VoteCastRequest(BaseModel):
    candidate_id: str
    vote: str


class VoteResponse(BaseModel):
    session_id: str
    candidate_id: str
    vote: Optional[VoteValue] = None
    updated_at: Optional[datetime] = None


class SelectionToggleRequest(BaseModel):
    candidate_id: str


class BallotState(BaseModel):
    session_id: str
    role_id: str
    quota: int
    ballot_id: Optional[str] = None
    submitted: bool = False
    selected_ids: List[str] = Field(default_factory=list)
    remaining: int = 0
    outcome: SelectionOutcome = "loaded"
