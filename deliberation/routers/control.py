from typing import Any, Dict

from fastapi import APIRouter, Depends

from deliberation.auth.auth import Identity, require_facilitator
from deliberation.data.gateway import PersistenceGateway, get_gateway
from deliberation.schemas.control import (
    AdvanceRequest,
    ControlSnapshot,
    FocusRequest,
    ResultsResponse,
    StatusChangeRequest,
    StepRequest,
)
from deliberation.schemas.records import CandidateRecord, SyncStateRecord
from deliberation.services.control_manager import ControlManager
from deliberation.services.results_manager import ResultsManager
from deliberation.utils.websocket_manager import websocket_manager

router = APIRouter(prefix="/api/sessions/{session_id}/control", tags=["control"])


@router.get("", response_model=ControlSnapshot)
def get_control_snapshot(
    session_id: str,
    identity: Identity = Depends(require_facilitator),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return ControlManager(gateway).snapshot(
        session_id, connected=websocket_manager.connection_count(session_id)
    )


@router.post("/status")
def set_status(
    session_id: str,
    request: StatusChangeRequest,
    identity: Identity = Depends(require_facilitator),
    gateway: PersistenceGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    session, sync = ControlManager(gateway).set_status(
        session_id, request.status, identity.user_id
    )
    return {
        "session": session.model_dump(mode="json"),
        "sync_state": sync.model_dump(mode="json"),
    }


@router.post("/focus", response_model=SyncStateRecord)
def set_focus(
    session_id: str,
    request: FocusRequest,
    identity: Identity = Depends(require_facilitator),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return ControlManager(gateway).set_focused_candidate(
        session_id, request.role_id, request.candidate_id, identity.user_id
    )


@router.post("/focus/step", response_model=SyncStateRecord)
def step_focus(
    session_id: str,
    request: StepRequest,
    identity: Identity = Depends(require_facilitator),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return ControlManager(gateway).step_candidate(
        session_id, request.direction, identity.user_id
    )


@router.post("/candidates/{candidate_id}/advance", response_model=CandidateRecord)
def set_advanced(
    session_id: str,
    candidate_id: str,
    request: AdvanceRequest,
    identity: Identity = Depends(require_facilitator),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return ControlManager(gateway).set_advanced_to_phase2(
        session_id, candidate_id, request.advanced
    )


@router.get("/results", response_model=ResultsResponse)
def get_results(
    session_id: str,
    identity: Identity = Depends(require_facilitator),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return ResultsManager(gateway).build_results(session_id)
