from __future__ import annotations

import logging
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from fastapi import Depends
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import get_db
from ..errors import InvalidRequest, NotFound, TransientIO
from ..models.session import Candidate, DeliberationSession, Role, SyncState
from ..models.voting import Phase1Vote, Phase2Ballot, Phase2Selection
from ..schemas.records import (
    BallotRecord,
    CandidateRecord,
    RoleRecord,
    SelectionRecord,
    SessionRecord,
    SessionStatus,
    SyncStateRecord,
    ViewMode,
    VoteRecord,
    VoteValue,
    translate,
)
from ..services.change_feed import ChangeFeed, change_feed

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _row_image(row: Any) -> Dict[str, Any]:
    return {column.name: getattr(row, column.key) for column in row.__table__.columns}


class PersistenceGateway:
    """Typed reads and writes for every record kind, scoped by session id.

    Rows are translated to domain records before they leave this class. Any
    storage failure rolls the unit of work back and surfaces as
    :class:`TransientIO`, so callers never observe a partial write. Committed
    changes to the session and sync-state rows are published to the change
    feed.
    """

    def __init__(self, db: Session, feed: Optional[ChangeFeed] = None) -> None:
        self.db = db
        self.feed = feed

    # -- plumbing ---------------------------------------------------------

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            self.db.rollback()
            logger.info("Integrity conflict during %s: %s", action, exc)
            raise InvalidRequest(f"Conflicting data during {action}.") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Storage failure during %s: %s", action, exc)
            raise TransientIO(f"Storage failure during {action}.") from exc

    def _serialized(self):
        """Hold the session's write lock, if it has one, for a whole unit of work.

        A SQLite transaction keeps its write lock from the first flush until
        commit, so a count-insert-commit sequence must not interleave with
        another writer in this process.
        """
        lock = getattr(self.db, "write_lock", None)
        return lock if lock is not None else nullcontext()

    def _commit(self, action: str) -> None:
        with self._guard(action):
            self.db.commit()

    def _publish(self, table: str, operation: str, row: Any) -> None:
        if self.feed is None:
            return
        delivered = self.feed.publish(table, operation, _row_image(row))
        logger.debug("Published %s %s to %d subscriber(s)", operation, table, delivered)

    # -- sessions ---------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._guard("session lookup"):
            row = self.db.get(DeliberationSession, session_id)
            return translate(SessionRecord, row) if row else None

    def require_session(self, session_id: str) -> SessionRecord:
        record = self.get_session(session_id)
        if record is None:
            raise NotFound("Session not found.", session_id=session_id)
        return record

    def create_session(self, name: str, *, created_by: Optional[str] = None) -> SessionRecord:
        with self._guard("session creation"):
            session_row = DeliberationSession(
                name=name,
                status=SessionStatus.SETUP.value,
                updated_at=_now(),
            )
            self.db.add(session_row)
            self.db.flush()
            sync_row = SyncState(
                session_id=session_row.id,
                view_mode=ViewMode.ROLE_LIST.value,
                updated_by=created_by,
                updated_at=_now(),
            )
            self.db.add(sync_row)
            self.db.commit()
            self._publish("deliberation_sessions", "INSERT", session_row)
            self._publish("sync_state", "INSERT", sync_row)
            return translate(SessionRecord, session_row)

    def update_session_status(
        self, session_id: str, status: SessionStatus
    ) -> SessionRecord:
        with self._guard("status update"):
            row = self.db.get(DeliberationSession, session_id)
            if row is None:
                raise NotFound("Session not found.", session_id=session_id)
            row.status = SessionStatus(status).value
            row.updated_at = _now()
            self.db.commit()
            self._publish("deliberation_sessions", "UPDATE", row)
            return translate(SessionRecord, row)

    # -- roles ------------------------------------------------------------

    def list_roles(self, session_id: str) -> List[RoleRecord]:
        with self._guard("role listing"):
            rows = (
                self.db.query(Role)
                .filter(Role.session_id == session_id)
                .order_by(Role.sort_order.asc(), Role.name.asc())
                .all()
            )
            return [translate(RoleRecord, row) for row in rows]

    def require_role(self, session_id: str, role_id: str) -> RoleRecord:
        with self._guard("role lookup"):
            row = self.db.get(Role, role_id)
        if row is None or row.session_id != session_id:
            raise NotFound("Role not found.", role_id=role_id)
        return translate(RoleRecord, row)

    def create_role(
        self, session_id: str, name: str, quota: int, sort_order: int = 0
    ) -> RoleRecord:
        with self._guard("role creation"):
            row = Role(
                session_id=session_id, name=name, quota=quota, sort_order=sort_order
            )
            self.db.add(row)
            self.db.commit()
            return translate(RoleRecord, row)

    # -- candidates -------------------------------------------------------

    def list_candidates(
        self,
        session_id: str,
        *,
        role_id: Optional[str] = None,
        eligible_only: bool = False,
    ) -> List[CandidateRecord]:
        with self._guard("candidate listing"):
            query = self.db.query(Candidate).filter(Candidate.session_id == session_id)
            if role_id is not None:
                query = query.filter(Candidate.role_id == role_id)
            if eligible_only:
                query = query.filter(Candidate.advanced_to_phase2.is_(True))
            rows = query.order_by(
                Candidate.slide_order.asc(), Candidate.name.asc()
            ).all()
            return [translate(CandidateRecord, row) for row in rows]

    def get_candidate(self, candidate_id: str) -> Optional[CandidateRecord]:
        with self._guard("candidate lookup"):
            row = self.db.get(Candidate, candidate_id)
            return translate(CandidateRecord, row) if row else None

    def require_candidate(self, session_id: str, candidate_id: str) -> CandidateRecord:
        record = self.get_candidate(candidate_id)
        if record is None or record.session_id != session_id:
            raise NotFound("Candidate not found.", candidate_id=candidate_id)
        return record

    def create_candidate(
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
        with self._guard("candidate creation"):
            row = Candidate(
                session_id=session_id,
                role_id=role_id,
                name=name,
                slide_order=slide_order,
                notes=notes,
                photo_url=photo_url,
                airtable_url=airtable_url,
                admin_bucket=admin_bucket,
            )
            self.db.add(row)
            self.db.commit()
            return translate(CandidateRecord, row)

    def set_candidate_advanced(self, candidate_id: str, advanced: bool) -> CandidateRecord:
        with self._guard("candidate advancement"):
            row = self.db.get(Candidate, candidate_id)
            if row is None:
                raise NotFound("Candidate not found.", candidate_id=candidate_id)
            row.advanced_to_phase2 = bool(advanced)
            self.db.commit()
            self._publish("candidates", "UPDATE", row)
            return translate(CandidateRecord, row)

    # -- shared view state ------------------------------------------------

    def get_sync_state(self, session_id: str) -> Optional[SyncStateRecord]:
        with self._guard("sync state lookup"):
            row = self.db.get(SyncState, session_id)
            return translate(SyncStateRecord, row) if row else None

    def upsert_sync_state(
        self,
        session_id: str,
        *,
        role_id: Optional[str],
        candidate_id: Optional[str],
        view_mode: ViewMode,
        updated_by: Optional[str],
    ) -> SyncStateRecord:
        with self._guard("sync state write"):
            row = self.db.get(SyncState, session_id)
            operation = "UPDATE"
            if row is None:
                row = SyncState(session_id=session_id)
                self.db.add(row)
                operation = "INSERT"
            row.current_role_id = role_id
            row.current_candidate_id = candidate_id
            row.view_mode = ViewMode(view_mode).value
            row.updated_by = updated_by
            row.updated_at = _now()
            self.db.commit()
            self._publish("sync_state", operation, row)
            return translate(SyncStateRecord, row)

    # -- phase 1 votes ----------------------------------------------------

    def _vote_query(self, session_id: str, candidate_id: str, user_id: str):
        return self.db.query(Phase1Vote).filter(
            Phase1Vote.session_id == session_id,
            Phase1Vote.candidate_id == candidate_id,
            Phase1Vote.user_id == user_id,
        )

    def get_vote(
        self, session_id: str, candidate_id: str, user_id: str
    ) -> Optional[VoteRecord]:
        with self._guard("vote lookup"):
            row = self._vote_query(session_id, candidate_id, user_id).first()
            return translate(VoteRecord, row) if row else None

    def upsert_vote(
        self,
        session_id: str,
        candidate_id: str,
        user_id: str,
        value: VoteValue,
    ) -> VoteRecord:
        value = VoteValue(value).value
        with self._guard("vote write"):
            row = self._vote_query(session_id, candidate_id, user_id).first()
            if row is None:
                row = Phase1Vote(
                    session_id=session_id,
                    candidate_id=candidate_id,
                    user_id=user_id,
                    vote=value,
                    updated_at=_now(),
                )
                self.db.add(row)
                try:
                    self.db.commit()
                    return translate(VoteRecord, row)
                except IntegrityError:
                    # Another request inserted the same identity first; overwrite it.
                    self.db.rollback()
                    row = self._vote_query(session_id, candidate_id, user_id).one()
            row.vote = value
            row.updated_at = _now()
            self.db.commit()
            return translate(VoteRecord, row)

    def list_votes(self, session_id: str) -> List[VoteRecord]:
        with self._guard("vote listing"):
            rows = self.db.query(Phase1Vote).filter(
                Phase1Vote.session_id == session_id
            ).all()
            return [translate(VoteRecord, row) for row in rows]

    # -- phase 2 ballots --------------------------------------------------

    def _ballot_query(self, session_id: str, role_id: str, user_id: str):
        return self.db.query(Phase2Ballot).filter(
            Phase2Ballot.session_id == session_id,
            Phase2Ballot.role_id == role_id,
            Phase2Ballot.user_id == user_id,
        )

    def get_ballot(
        self, session_id: str, role_id: str, user_id: str
    ) -> Optional[BallotRecord]:
        with self._guard("ballot lookup"):
            row = self._ballot_query(session_id, role_id, user_id).first()
            return translate(BallotRecord, row) if row else None

    def ensure_ballot(self, session_id: str, role_id: str, user_id: str) -> BallotRecord:
        """Return the caller's ballot for a role, creating it on first use.

        The (session, role, user) unique constraint decides concurrent first
        creates: the loser rolls back and reads the winner's row.
        """
        existing = self.get_ballot(session_id, role_id, user_id)
        if existing is not None:
            return existing
        with self._guard("ballot creation"):
            row = Phase2Ballot(
                session_id=session_id,
                role_id=role_id,
                user_id=user_id,
                submitted=False,
                updated_at=_now(),
            )
            self.db.add(row)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.info(
                    "Ballot for session=%s role=%s user=%s already created; reusing.",
                    session_id,
                    role_id,
                    user_id,
                )
                row = self._ballot_query(session_id, role_id, user_id).one()
            return translate(BallotRecord, row)

    def set_ballot_submitted(self, ballot_id: str, submitted: bool) -> BallotRecord:
        with self._guard("ballot submission"):
            row = self.db.get(Phase2Ballot, ballot_id)
            if row is None:
                raise NotFound("Ballot not found.", ballot_id=ballot_id)
            row.submitted = bool(submitted)
            row.updated_at = _now()
            self.db.commit()
            return translate(BallotRecord, row)

    def list_ballots(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        role_id: Optional[str] = None,
    ) -> List[BallotRecord]:
        with self._guard("ballot listing"):
            query = self.db.query(Phase2Ballot).filter(
                Phase2Ballot.session_id == session_id
            )
            if user_id is not None:
                query = query.filter(Phase2Ballot.user_id == user_id)
            if role_id is not None:
                query = query.filter(Phase2Ballot.role_id == role_id)
            return [translate(BallotRecord, row) for row in query.all()]

    # -- phase 2 selections -----------------------------------------------

    def list_selections(self, ballot_ids: Iterable[str]) -> List[SelectionRecord]:
        ids = sorted({ballot_id for ballot_id in ballot_ids if ballot_id})
        if not ids:
            return []
        with self._guard("selection listing"):
            rows = (
                self.db.query(Phase2Selection)
                .filter(Phase2Selection.ballot_id.in_(ids))
                .order_by(Phase2Selection.created_at.asc(), Phase2Selection.id.asc())
                .all()
            )
            return [translate(SelectionRecord, row) for row in rows]

    def _count_selections(self, ballot_id: str) -> int:
        return int(
            self.db.query(func.count(Phase2Selection.id))
            .filter(Phase2Selection.ballot_id == ballot_id)
            .scalar()
            or 0
        )

    def count_selections(self, ballot_id: str) -> int:
        with self._guard("selection count"):
            return self._count_selections(ballot_id)

    def is_selected(self, ballot_id: str, candidate_id: str) -> bool:
        with self._guard("selection lookup"):
            return (
                self.db.query(Phase2Selection.id)
                .filter(
                    Phase2Selection.ballot_id == ballot_id,
                    Phase2Selection.candidate_id == candidate_id,
                )
                .first()
                is not None
            )

    def add_selection(self, ballot_id: str, candidate_id: str, quota: int) -> bool:
        """Insert a selection edge unless the ballot already holds ``quota`` edges.

        The count is read inside the writing transaction and re-checked after the
        flush, so interleaved toggles can never leave more than ``quota`` rows.
        """
        with self._serialized(), self._guard("selection write"):
            if self._count_selections(ballot_id) >= quota:
                self.db.rollback()
                return False
            self.db.add(Phase2Selection(ballot_id=ballot_id, candidate_id=candidate_id))
            try:
                self.db.flush()
            except IntegrityError:
                self.db.rollback()
                return False
            if self._count_selections(ballot_id) > quota:
                self.db.rollback()
                return False
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                return False
            return True

    def remove_selection(self, ballot_id: str, candidate_id: str) -> bool:
        with self._serialized(), self._guard("selection removal"):
            removed = (
                self.db.query(Phase2Selection)
                .filter(
                    Phase2Selection.ballot_id == ballot_id,
                    Phase2Selection.candidate_id == candidate_id,
                )
                .delete(synchronize_session=False)
            )
            self.db.commit()
            return bool(removed)


def get_gateway(db: Session = Depends(get_db)) -> PersistenceGateway:
    return PersistenceGateway(db, feed=change_feed)
