from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base


def _uuid_str() -> str:
    return str(uuid4())


class DeliberationSession(Base):
    __tablename__ = "deliberation_sessions"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    name = Column(String(200), nullable=False)
    # setup, phase1_open, phase1_closed, phase2_open, phase2_closed, archived
    status = Column(String(16), nullable=False, default="setup")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    roles = relationship(
        "Role",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="Role.sort_order",
    )


class Role(Base):
    __tablename__ = "roles"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    session_id = Column(
        String(36),
        ForeignKey("deliberation_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(200), nullable=False)
    quota = Column(Integer, nullable=False, default=1)
    sort_order = Column(Integer, nullable=False, default=0)

    session = relationship("DeliberationSession", back_populates="roles")
    candidates = relationship(
        "Candidate",
        back_populates="role",
        cascade="all, delete-orphan",
        order_by="Candidate.slide_order",
    )


class Candidate(Base):
    __tablename__ = "candidates"

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
    name = Column(String(200), nullable=False)
    slide_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    advanced_to_phase2 = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    photo_url = Column(String(500), nullable=True)
    airtable_url = Column(String(500), nullable=True)
    # Facilitator-only grouping label shown on the results dashboard.
    admin_bucket = Column(String(50), nullable=True)

    role = relationship("Role", back_populates="candidates")


class SyncState(Base):
    """The one shared view-state row per session."""

    __tablename__ = "sync_state"

    session_id = Column(
        String(36),
        ForeignKey("deliberation_sessions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    current_role_id = Column(
        String(36), ForeignKey("roles.id", ondelete="SET NULL"), nullable=True
    )
    current_candidate_id = Column(
        String(36), ForeignKey("candidates.id", ondelete="SET NULL"), nullable=True
    )
    view_mode = Column(String(24), nullable=True)
    updated_by = Column(String(64), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
