from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

from deliberation.data.gateway import PersistenceGateway
from deliberation.errors import InvalidRequest, NotFound, PhaseClosed, Unauthenticated
from deliberation.schemas.control import ControlSnapshot
from deliberation.schemas.records import (
    PHASE1_STATUSES,
    CandidateRecord,
    RoleRecord,
    SessionRecord,
    SessionStatus,
    SyncStateRecord,
)
from deliberation.services.phase_machine import (
    ensure_mutable,
    plan_focus,
    plan_view_state,
    validate_transition,
)

logger = logging.getLogger(__name__)

STEP_OFFSETS = {"next": 1, "previous": -1}


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


class ControlManager:
    """
    Facilitator write surface.

    Every call performs its writes through the gateway, which publishes the
    committed session and view-state rows to the change feed. A status change
    is two writes (status, then view state); realtime clients reconcile if they
    observe only one of them.
    """

    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway

    @staticmethod
    def _require_actor(actor_id: Optional[str]) -> str:
        actor_id = (actor_id or "").strip()
        if not actor_id:
            raise Unauthenticated()
        return actor_id

    def _require_setup(self, session_id: str) -> SessionRecord:
        session = self.gateway.require_session(session_id)
        if session.status != SessionStatus.SETUP:
            raise PhaseClosed(
                "Roles and candidates can only be added during setup.",
                status=session.status.value,
            )
        return session

    # -- setup ------------------------------------------------------------

    def create_session(self, name: str, actor_id: Optional[str]) -> SessionRecord:
        actor_id = self._require_actor(actor_id)
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Session name is required.")
        session = self.gateway.create_session(name, created_by=actor_id)
        logger.info("Session created: session_id=%s by=%s", session.id, actor_id)
        return session

    def add_role(
        self,
        session_id: str,
        name: str,
        quota: int,
        sort_order: int = 0,
    ) -> RoleRecord:
        self._require_setup(session_id)
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Role name is required.")
        if quota < 0:
            raise InvalidRequest("Quota cannot be negative.", quota=quota)
        return self.gateway.create_role(session_id, name, quota, sort_order)

    def add_candidate(
        self,
        session_id: str,
        role_id: str,
        name: str,
        slide_order: int = 0,
        notes: Optional[str] = None,
        *,
        photo_url: Optional[str] = None,
        airtable_url: Optional[str] = None,
        admin_bucket: Optional[str] = None,
    ) -> CandidateRecord:
        self._require_setup(session_id)
        role = self.gateway.require_role(session_id, role_id)
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Candidate name is required.")
        return self.gateway.create_candidate(
            session_id,
            role.id,
            name,
            slide_order=slide_order,
            notes=notes,
            photo_url=_clean(photo_url),
            airtable_url=_clean(airtable_url),
            admin_bucket=_clean(admin_bucket),
        )

    # -- phase control ----------------------------------------------------

    def set_status(
        self, session_id: str, next_status: Any, actor_id: Optional[str]
    ) -> Tuple[SessionRecord, SyncStateRecord]:
        """Move the session to ``next_status`` and write the implied view state."""
        actor_id = self._require_actor(actor_id)
        try:
            target = SessionStatus(next_status)
        except ValueError as exc:
            raise InvalidRequest("Unknown session status.", status=next_status) from exc

        session = self.gateway.require_session(session_id)
        validate_transition(session.status, target)
        plan = plan_view_state(target, self.gateway.get_sync_state(session_id))

        session = self.gateway.update_session_status(session_id, target)
        sync = self.gateway.upsert_sync_state(
            session_id,
            role_id=plan.role_id,
            candidate_id=plan.candidate_id,
            view_mode=plan.view_mode,
            updated_by=actor_id,
        )
        logger.info(
            "Session status changed: session_id=%s status=%s view_mode=%s by=%s",
            session_id,
            target.value,
            plan.view_mode.value,
            actor_id,
        )
        return session, sync

    def set_focused_candidate(
        self,
        session_id: str,
        role_id: str,
        candidate_id: Optional[str],
        actor_id: Optional[str],
    ) -> SyncStateRecord:
        """Focus a candidate of ``role_id``, or select the role alone when None."""
        actor_id = self._require_actor(actor_id)
        session = self.gateway.require_session(session_id)
        ensure_mutable(session.status)
        role = self.gateway.require_role(session_id, role_id)
        if candidate_id:
            candidate = self.gateway.require_candidate(session_id, candidate_id)
            if candidate.role_id != role.id:
                raise InvalidRequest(
                    "Candidate does not belong to the selected role.",
                    candidate_id=candidate.id,
                    role_id=role.id,
                )
        plan = plan_focus(session.status, role.id, candidate_id)
        sync = self.gateway.upsert_sync_state(
            session_id,
            role_id=plan.role_id,
            candidate_id=plan.candidate_id,
            view_mode=plan.view_mode,
            updated_by=actor_id,
        )
        logger.info(
            "Focus changed: session_id=%s role_id=%s candidate_id=%s by=%s",
            session_id,
            role.id,
            candidate_id,
            actor_id,
        )
        return sync

    def step_candidate(
        self, session_id: str, direction: str, actor_id: Optional[str]
    ) -> SyncStateRecord:
        """Move focus to the next or previous candidate by slide order."""
        actor_id = self._require_actor(actor_id)
        offset = STEP_OFFSETS.get(direction)
        if offset is None:
            raise InvalidRequest("Direction must be next or previous.", direction=direction)

        session = self.gateway.require_session(session_id)
        ensure_mutable(session.status)
        if session.status not in PHASE1_STATUSES:
            raise PhaseClosed(
                "Candidate focus is only available during phase 1.",
                status=session.status.value,
            )
        sync = self.gateway.get_sync_state(session_id)
        role_id = sync.current_role_id if sync else None
        if role_id is None:
            roles = self.gateway.list_roles(session_id)
            if not roles:
                raise NotFound("Session has no roles to step through.", session_id=session_id)
            role_id = roles[0].id

        candidates = self.gateway.list_candidates(session_id, role_id=role_id)
        ids = [candidate.id for candidate in candidates if candidate.is_active]
        current = sync.current_candidate_id if sync else None
        if current in ids:
            index = ids.index(current) + offset
        else:
            # Stepping back with nothing focused stays put.
            index = 0 if offset > 0 else -1

        if not ids or index < 0 or index >= len(ids):
            # Already at the edge of the role.
            if sync is None:
                return self.set_focused_candidate(session_id, role_id, None, actor_id)
            return sync
        return self.set_focused_candidate(session_id, role_id, ids[index], actor_id)

    def set_advanced_to_phase2(
        self, session_id: str, candidate_id: str, advanced: bool
    ) -> CandidateRecord:
        session = self.gateway.require_session(session_id)
        ensure_mutable(session.status)
        candidate = self.gateway.require_candidate(session_id, candidate_id)
        record = self.gateway.set_candidate_advanced(candidate.id, advanced)
        logger.info(
            "Candidate phase 2 eligibility: session_id=%s candidate_id=%s advanced=%s",
            session_id,
            candidate.id,
            record.advanced_to_phase2,
        )
        return record

    # -- reads ------------------------------------------------------------

    def snapshot(self, session_id: str, connected: int = 0) -> ControlSnapshot:
        session = self.gateway.require_session(session_id)
        return ControlSnapshot(
            session=session,
            sync_state=self.gateway.get_sync_state(session_id),
            roles=self.gateway.list_roles(session_id),
            candidates=self.gateway.list_candidates(session_id),
            connected=connected,
        )
