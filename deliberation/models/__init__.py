# Import models to make them accessible via deliberation.models
# and ensure they are registered with SQLAlchemy's Base metadata
from .session import Candidate, DeliberationSession, Role, SyncState
from .voting import Phase1Vote, Phase2Ballot, Phase2Selection

__all__ = [
    "DeliberationSession",
    "Role",
    "Candidate",
    "SyncState",
    "Phase1Vote",
    "Phase2Ballot",
    "Phase2Selection",
]
