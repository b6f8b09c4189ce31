from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
)

from ..database import Base


def _uuid_str() -> str:
    return str(uuid4())


class Phase1Vote(Base):
    __tablename__ = "phase1_votes"
    __table_args__ = (
        UniqueConstraint(
            "session_id",
            "candidate_id",
            "user_id",
            name="uq_phase1_vote_identity",
        ),
    )

    vote_id = Column(String(36), primary_key=True, default=_uuid_str)
    session_id = Column(
        String(36),
        ForeignKey("deliberation_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    candidate_id = Column(
        String(36),
        ForeignKey("candidates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(64), nullable=False, index=True)
    vote = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)


class Phase2Ballot(Base):
    __tablename__ = "phase2_ballots"
    # Concurrent first toggles race to create the ballot; storage keeps one.
    __table_args__ = (
        UniqueConstraint(
            "session_id",
            "role_id",
            "user_id",
            name="uq_phase2_ballot_identity",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid_str)
    session_id = Column(
        String(36),
        ForeignKey("deliberation_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_id = Column(
        String(36),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(64), nullable=False, index=True)
    submitted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)


class Phase2Selection(Base):
    __tablename__ = "phase2_selections"
    __table_args__ = (
        UniqueConstraint(
            "ballot_id",
            "candidate_id",
            name="uq_phase2_selection_edge",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid_str)
    ballot_id = Column(
        String(36),
        ForeignKey("phase2_ballots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    candidate_id = Column(
        String(36),
        ForeignKey("candidates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
