from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from deliberation.schemas.records import (
    CandidateRecord,
    RoleRecord,
    SessionRecord,
    SyncStateRecord,
)


class StatusChangeRequest(BaseModel):
    status: str


class FocusRequest(BaseModel):
    role_id: str
    candidate_id: Optional[str] = None


class StepRequest(BaseModel):
    direction: Literal["next", "previous"] = "next"


class AdvanceRequest(BaseModel):
    advanced: bool = True


class ControlSnapshot(BaseModel):
    session: SessionRecord
    sync_state: Optional[SyncStateRecord] = None
    roles: List[RoleRecord] = Field(default_factory=list)
    candidates: List[CandidateRecord] = Field(default_factory=list)
    connected: int = 0


class Phase1Aggregate(BaseModel):
    candidate_id: str
    candidate_name: str
    role_id: str
    strong_yes: int = 0
    yes: int = 0
    no: int = 0
    total: int = 0
    percent_yes: float = 0.0
    advanced_to_phase2: bool = False
    admin_bucket: Optional[str] = None


class Phase2Result(BaseModel):
    candidate_id: str
    candidate_name: str
    role_id: str
    inclusions: int = 0


class SubmissionCount(BaseModel):
    role_id: str
    role_name: str
    ballots: int = 0
    submitted: int = 0


class ResultsResponse(BaseModel):
    session_id: str
    phase1: List[Phase1Aggregate] = Field(default_factory=list)
    phase2: List[Phase2Result] = Field(default_factory=list)
    submissions: List[SubmissionCount] = Field(default_factory=list)
