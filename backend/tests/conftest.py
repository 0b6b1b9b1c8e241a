import pytest
from fastapi.testclient import TestClient

from roomchat.config import Settings
from roomchat.database import create_db_engine, create_session_factory, init_db
from roomchat.directory import UserDirectory
from roomchat.friends import FriendshipLedger
from roomchat.main import create_app
from roomchat.models import User
from roomchat.store import MessageStore


# 1) A fresh file-backed database per test
@pytest.fixture()
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path}/test.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


# 2) Provide the raw SQLAlchemy session to tests
@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# 3) Seed the user directory the way the account service would
@pytest.fixture()
def users(db_session):
    rows = [
        User(id="u1", username="alice", display_name="Alice"),
        User(id="u2", username="bob", display_name="Bob", profile_pic="https://img.example/bob.png"),
        User(id="u3", username="carol", display_name="Carol"),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {u.id: u for u in rows}


@pytest.fixture()
def store(session_factory):
    return MessageStore(session_factory, page_size=50, max_page_size=200)


@pytest.fixture()
def directory(session_factory):
    return UserDirectory(session_factory)


@pytest.fixture()
def ledger(session_factory):
    return FriendshipLedger(session_factory)


@pytest.fixture()
def settings():
    s = Settings()
    s.SOCKET_AUTH_REQUIRED = False
    s.SECRET_KEY = "test-secret"
    s.ALGORITHM = "HS256"
    s.SESSION_SEND_BUFFER = 10
    return s


# 4) The HTTP app wired to the test database
@pytest.fixture()
def app(settings, session_factory):
    return create_app(settings, session_factory=session_factory)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c
