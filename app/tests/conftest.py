import os
import tempfile

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

# Keep test runs from writing logs into the working tree.
os.environ.setdefault("RETRO_LOG_DIR", os.path.join(tempfile.gettempdir(), "retroboard-test-logs"))

from app.database import Base, get_db
from app.main import app
from app.auth.identity import UserIdentity
from app.services.presence_tracker import presence_tracker
from app.services.session_state import SessionStateMachine
from app.utils.broadcast_hub import BroadcastHub, broadcast_hub

# Define a test database URL
TEST_DATABASE_URL = "sqlite:///:memory:"  # Use in-memory SQLite for tests
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

OWNER = UserIdentity(user_id="owner-1", display_name="Olivia Owner")
PARTICIPANT = UserIdentity(user_id="member-1", display_name="Milo Member")
SECOND_PARTICIPANT = UserIdentity(user_id="member-2", display_name="Nia Member")


def headers_for(identity: UserIdentity) -> dict:
    return {"X-User-Id": identity.user_id, "X-User-Name": identity.display_name}


def drain(subscription) -> list:
    """Pull every queued event off a hub subscription without awaiting."""
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


@pytest.fixture(scope="session")
def create_test_tables():
    """Create all database tables once per session before tests run."""
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(scope="function")
def db_session(create_test_tables):
    """
    Provides a transactional database session for a test.
    Rolls back changes after the test.
    Overrides the main app's get_db dependency.
    """
    connection = engine.connect()
    transaction = connection.begin()
    db = TestingSessionLocal(bind=connection)

    original_get_db = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = lambda: db

    try:
        yield db
    finally:
        db.close()
        transaction.rollback()
        connection.close()
        if original_get_db:
            app.dependency_overrides[get_db] = original_get_db
        else:
            del app.dependency_overrides[get_db]


@pytest.fixture(autouse=True)
def reset_realtime_state():
    """The hub and presence tracker are process-wide; isolate tests from each other."""
    broadcast_hub.reset()
    presence_tracker.reset()
    yield
    broadcast_hub.reset()
    presence_tracker.reset()


@pytest.fixture(scope="function")
def client(db_session: Session):
    """Provides a TestClient instance for making requests to the FastAPI app."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def hub() -> BroadcastHub:
    return BroadcastHub(queue_size=64)


@pytest.fixture
def retrospective(db_session: Session, hub: BroadcastHub):
    machine = SessionStateMachine(db_session, hub)
    return machine.create_session(title="Sprint 42 retro", owner=OWNER)


# The fixture named 'session' used in some tests, make it an alias for db_session
@pytest.fixture(scope="function")
def session(db_session: Session):
    yield db_session
