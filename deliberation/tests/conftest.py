import os
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Keep the application engine away from the working directory during tests.
_TEST_DIR = tempfile.mkdtemp(prefix="deliberation-")
os.environ.setdefault(
    "DELIBERATION_DATABASE_URL", "sqlite:///" + os.path.join(_TEST_DIR, "app.db")
)
os.environ.setdefault("DELIBERATION_LOG_DIR", os.path.join(_TEST_DIR, "logs"))

from deliberation.auth.auth import create_access_token  # noqa: E402
from deliberation.data.gateway import PersistenceGateway  # noqa: E402
from deliberation.database import Base, get_db, get_session_factory  # noqa: E402
from deliberation.main import app  # noqa: E402
from deliberation.schemas.records import AppRole, SessionStatus  # noqa: E402

FACILITATOR_ID = "facilitator-1"
VOTER_ID = "voter-1"
OTHER_VOTER_ID = "voter-2"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """A fresh file-backed SQLite database per test; each session gets its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def gateway(db_session: Session):
    return PersistenceGateway(db_session)


@pytest.fixture(scope="function")
def client(session_factory):
    """TestClient whose database dependencies point at the per-test database."""

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_session_factory, None)


def auth_headers(user_id: str, role: AppRole = AppRole.VOTER) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def facilitator_headers():
    return auth_headers(FACILITATOR_ID, AppRole.FACILITATOR)


@pytest.fixture
def voter_headers():
    return auth_headers(VOTER_ID)


@dataclass
class SeededSession:
    session_id: str
    president_role: str
    member_role: str
    president_candidates: List[str] = field(default_factory=list)
    member_candidates: List[str] = field(default_factory=list)


def seed_session(gateway: PersistenceGateway, status: SessionStatus = SessionStatus.SETUP):
    """Board election: President (quota 1, two candidates), Member (quota 2, four)."""
    session = gateway.create_session("Board election", created_by=FACILITATOR_ID)
    president = gateway.create_role(session.id, "President", 1, sort_order=0)
    member = gateway.create_role(session.id, "Member", 2, sort_order=1)
    seeded = SeededSession(session.id, president.id, member.id)
    for index, name in enumerate(["Ada", "Grace"]):
        seeded.president_candidates.append(
            gateway.create_candidate(session.id, president.id, name, slide_order=index).id
        )
    for index, name in enumerate(["Alan", "Barbara", "Claude", "Donald"]):
        seeded.member_candidates.append(
            gateway.create_candidate(session.id, member.id, name, slide_order=index).id
        )
    if status != SessionStatus.SETUP:
        gateway.update_session_status(session.id, status)
    return seeded


@pytest.fixture
def seeded(gateway):
    return seed_session(gateway)


def advance_members(gateway: PersistenceGateway, seeded: SeededSession) -> None:
    for candidate_id in seeded.member_candidates:
        gateway.set_candidate_advanced(candidate_id, True)
