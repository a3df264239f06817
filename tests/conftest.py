"""Shared fixtures: an in-memory MongoDB, a recording broadcaster and an app wired to both."""
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from board import BoardService
from config import Settings
from main import create_app
from realtime import RecordingBroadcaster

USERS = {
    "alice": {"name": "Alice", "email": "alice@example.com"},
    "bob": {"name": "Bob", "email": "bob@example.com"},
    "carol": {"name": "Carol", "email": "carol@example.com"},
    "dave": {"name": "Dave", "email": "dave@example.com"},
}


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=True)["taskboard_test"]
    expires = datetime.now(timezone.utc) + timedelta(days=1)
    for user_id, profile in USERS.items():
        database["user"].insert_one({"_id": user_id, **profile})
        database["session"].insert_one({"token": f"token-{user_id}", "user_id": user_id, "expires_at": expires})
    return database


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def recorder():
    return RecordingBroadcaster()


@pytest.fixture
def board(db, recorder, settings):
    return BoardService.from_database(db, broadcaster=recorder, settings=settings)


@pytest.fixture
def project(board):
    """A default-column project owned by alice, with bob as a member."""
    created = board.create_project("alice", "Launch")
    data, _ = board.join_project("bob", created["joinCode"])
    return data


@pytest.fixture
def app(db, recorder, settings):
    return create_app(database=db, broadcaster=recorder, settings=settings)


@pytest.fixture
def http(app):
    return TestClient(app)


@pytest.fixture
def auth():
    return lambda user_id: {"Authorization": f"Bearer token-{user_id}"}
