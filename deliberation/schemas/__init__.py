from .records import (
    AppRole,
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
)

__all__ = [
    "AppRole",
    "BallotRecord",
    "CandidateRecord",
    "RoleRecord",
    "SelectionRecord",
    "SessionRecord",
    "SessionStatus",
    "SyncStateRecord",
    "ViewMode",
    "VoteRecord",
    "VoteValue",
]
