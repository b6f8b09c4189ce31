from typing import Any, Dict

from fastapi import APIRouter, Depends

from deliberation.auth.auth import Identity, get_identity, require_facilitator
from deliberation.data.gateway import PersistenceGateway, get_gateway
from deliberation.schemas.records import CandidateRecord, RoleRecord, SessionRecord
from deliberation.schemas.sessions import (
    CandidateCreateRequest,
    RoleCreateRequest,
    SessionCreateRequest,
)
from deliberation.services.control_manager import ControlManager
from deliberation.services.live_state import pull_live_view

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.post("", response_model=SessionRecord, status_code=201)
def create_session(
    request: SessionCreateRequest,
    identity: Identity = Depends(require_facilitator),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return ControlManager(gateway).create_session(request.name, identity.user_id)


@router.get("/{session_id}", response_model=SessionRecord)
def get_session(
    session_id: str,
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return gateway.require_session(session_id)


@router.post("/{session_id}/roles", response_model=RoleRecord, status_code=201)
def add_role(
    session_id: str,
    request: RoleCreateRequest,
    identity: Identity = Depends(require_facilitator),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return ControlManager(gateway).add_role(
        session_id, request.name, request.quota, request.sort_order
    )


@router.post(
    "/{session_id}/roles/{role_id}/candidates",
    response_model=CandidateRecord,
    status_code=201,
)
def add_candidate(
    session_id: str,
    role_id: str,
    request: CandidateCreateRequest,
    identity: Identity = Depends(require_facilitator),
    gateway: PersistenceGateway = Depends(get_gateway),
):
    return ControlManager(gateway).add_candidate(
        session_id,
        role_id,
        request.name,
        slide_order=request.slide_order,
        notes=request.notes,
        photo_url=request.photo_url,
        airtable_url=request.airtable_url,
        admin_bucket=request.admin_bucket,
    )


@router.get("/{session_id}/live")
def get_live_view(
    session_id: str,
    identity: Identity = Depends(get_identity),
    gateway: PersistenceGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    """Pull-based equivalent of the realtime ``live_state`` push."""
    return pull_live_view(gateway, session_id, identity.user_id).to_payload()
