from fastapi import APIRouter, Depends

from deliberation.auth.auth import Identity, get_identity
from deliberation.data.gateway import PersistenceGateway, get_gateway
from deliberation.schemas.voting import (
    BallotState,
    SelectionToggleRequest,
    VoteCastRequest,
    VoteResponse,
)
from deliberation.services.ballot_manager import BallotManager
from deliberation.services.voting_manager import VotingManager

router = APIRouter(prefix="/api/sessions/{session_id}", tags=["voting"])

# Anonymous callers reach the engines, which reject writes with Unauthenticated.


@router.post("/votes", response_model=VoteResponse)
def cast_vote(
    session_id: str,
    request: VoteCastRequest,
    identity: Identity = Depends(get_identity),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    record = VotingManager(gateway).cast_vote(
        session_id, request.candidate_id, identity.user_id, request.vote
    )
    return VoteResponse(
        session_id=session_id,
        candidate_id=record.candidate_id,
        vote=record.vote,
        updated_at=record.updated_at,
    )


@router.get("/votes/{candidate_id}", response_model=VoteResponse)
def get_own_vote(
    session_id: str,
    candidate_id: str,
    identity: Identity = Depends(get_identity),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    record = VotingManager(gateway).get_own_vote(
        session_id, candidate_id, identity.user_id
    )
    return VoteResponse(
        session_id=session_id,
        candidate_id=candidate_id,
        vote=record.vote if record else None,
        updated_at=record.updated_at if record else None,
    )


@router.get("/ballots/{role_id}", response_model=BallotState)
def get_own_ballot(
    session_id: str,
    role_id: str,
    identity: Identity = Depends(get_identity),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return BallotManager(gateway).get_own_ballot(session_id, role_id, identity.user_id)


@router.post("/ballots/{role_id}/selections", response_model=BallotState)
def toggle_selection(
    session_id: str,
    role_id: str,
    request: SelectionToggleRequest,
    identity: Identity = Depends(get_identity),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return BallotManager(gateway).toggle_selection(
        session_id, role_id, identity.user_id, request.candidate_id
    )


@router.post("/ballots/{role_id}/submit", response_model=BallotState)
def toggle_submit(
    session_id: str,
    role_id: str,
    identity: Identity = Depends(get_identity),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return BallotManager(gateway).toggle_submit(session_id, role_id, identity.user_id)
