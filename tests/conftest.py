from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from chatroom.config import Settings
from chatroom.main import create_app
from chatroom.schemas import Message
from chatroom.storage import MessageCollection


T1 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
T2 = datetime(2025, 1, 15, 10, 0, 5, 250000, tzinfo=timezone.utc)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'chat.db'}"


@pytest.fixture
def collection(db_url):
    with MessageCollection(db_url) as store:
        yield store


@pytest.fixture
def make_message():
    def _make(sender="alice", text="hi", sent_time=T1):
        return Message(sender=sender, sent_time=sent_time, text=text)

    return _make


@pytest.fixture
def settings(db_url, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", db_url)
    return Settings()


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c
