import os

# Must be set before courier is imported: settings and the engine read it once.
os.environ["DATABASE_URL"] = "sqlite:///./test_courier.db"
os.environ["SECRET_KEY"] = "test-secret-key"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from courier.core.database import Base, get_db
from courier.main import app
from courier.models.user import User
from courier.services import event_publisher, rate_limiter
from courier.services.activity_log import handle_store
from courier.services.identity import create_access_token
from courier.services.presence import presence
from courier.services.websocket_manager import manager

SQLALCHEMY_DATABASE_URL = os.environ["DATABASE_URL"]

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch):
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    manager.clear()
    presence.clear()
    handle_store.clear()

    async def allow_all(key, max_requests, window_seconds):
        return True, 0

    monkeypatch.setattr(rate_limiter, "check_rate_limit", allow_all)
    monkeypatch.setattr(event_publisher, "_publish", lambda event_type, **fields: True)
    yield
    manager.clear()
    presence.clear()


@pytest.fixture
def published_events(monkeypatch):
    events = []

    def record(event_type, **fields):
        events.append({"event_type": event_type, **fields})
        return True

    monkeypatch.setattr(event_publisher, "_publish", record)
    return events


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    # One client per test so every websocket shares the same event loop.
    with TestClient(app) as test_client:
        yield test_client


def create_user(db, user_id, username, role="user", display_name=None):
    user = User(
        user_id=user_id,
        username=username,
        display_name=display_name or username.title(),
        password_hash="$2b$12$notarealhashnotarealhashnotarealhashnotarealhash",
        password_salt="notarealsalt",
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def alice(db):
    return create_user(db, "10000001", "alice")


@pytest.fixture
def bob(db):
    return create_user(db, "10000002", "bob")
