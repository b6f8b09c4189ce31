"""Typed domain records and the single translation point for stored rows.

Every row that leaves the persistence boundary, whether read by the gateway
or carried as the row image of a change event, passes through
:func:`translate`. Rows that do not fit their record shape raise
:class:`MalformedRecord` here instead of leaking partial data into the
reducer.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from deliberation.errors import MalformedRecord


class SessionStatus(str, Enum):
    SETUP = "setup"
    PHASE1_OPEN = "phase1_open"
    PHASE1_CLOSED = "phase1_closed"
    PHASE2_OPEN = "phase2_open"
    PHASE2_CLOSED = "phase2_closed"
    ARCHIVED = "archived"


class ViewMode(str, Enum):
    ROLE_LIST = "role_list"
    CANDIDATE_FOCUS = "candidate_focus"
    PHASE2_ROLE_SELECT = "phase2_role_select"


class VoteValue(str, Enum):
    STRONG_YES = "strong_yes"
    YES = "yes"
    NO = "no"


class AppRole(str, Enum):
    ADMIN = "admin"
    FACILITATOR = "facilitator"
    VOTER = "voter"


PHASE1_STATUSES = frozenset({SessionStatus.PHASE1_OPEN, SessionStatus.PHASE1_CLOSED})
PHASE2_STATUSES = frozenset({SessionStatus.PHASE2_OPEN, SessionStatus.PHASE2_CLOSED})


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _Record(BaseModel):
    model_config = {"from_attributes": True, "frozen": True}


class SessionRecord(_Record):
    id: str
    name: str
    status: SessionStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _normalise_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class RoleRecord(_Record):
    id: str
    session_id: str
    name: str
    quota: int = Field(..., ge=0)
    sort_order: int = 0


class CandidateRecord(_Record):
    id: str
    session_id: str
    role_id: str
    name: str
    slide_order: int = 0
    is_active: bool = True
    advanced_to_phase2: bool = False
    notes: Optional[str] = None
    photo_url: Optional[str] = None
    airtable_url: Optional[str] = None
    admin_bucket: Optional[str] = None


class SyncStateRecord(_Record):
    session_id: str
    current_role_id: Optional[str] = None
    current_candidate_id: Optional[str] = None
    view_mode: Optional[ViewMode] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("updated_at")
    @classmethod
    def _normalise_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class VoteRecord(_Record):
    session_id: str
    candidate_id: str
    user_id: str
    vote: VoteValue
    updated_at: Optional[datetime] = None

    @field_validator("updated_at")
    @classmethod
    def _normalise_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class BallotRecord(_Record):
    id: str
    session_id: str
    role_id: str
    user_id: str
    submitted: bool = False


class SelectionRecord(_Record):
    ballot_id: str
    candidate_id: str


RecordT = TypeVar("RecordT", bound=_Record)

RECORD_KINDS: Dict[str, Type[_Record]] = {
    "deliberation_sessions": SessionRecord,
    "roles": RoleRecord,
    "candidates": CandidateRecord,
    "sync_state": SyncStateRecord,
    "phase1_votes": VoteRecord,
    "phase2_ballots": BallotRecord,
    "phase2_selections": SelectionRecord,
}


def translate(record_type: Type[RecordT], raw: Any) -> RecordT:
    """Map an ORM row or a row-image mapping onto its domain record."""
    if raw is None:
        raise MalformedRecord(f"Missing {record_type.__name__} row.")
    try:
        return record_type.model_validate(raw)
    except ValidationError as exc:
        raise MalformedRecord(
            f"Malformed {record_type.__name__} row: {exc.error_count()} error(s).",
            errors=exc.errors(include_url=False),
        ) from exc


def translate_table_row(table: str, raw: Any) -> _Record:
    record_type = RECORD_KINDS.get(table)
    if record_type is None:
        raise MalformedRecord(f"Unknown record table '{table}'.")
    return translate(record_type, raw)
