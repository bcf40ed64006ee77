import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient
from mongomock.collection import Collection

import database
import main
from relay_client import get_relay
from schemas import User

_emails = itertools.count(1)


class FakeRelay:
    def __init__(self):
        self.events = []

    def send_notification(self, recipient_id, notification):
        self.events.append(("send_notification", recipient_id, notification))
        return True

    def send_message(self, conversation_id, message):
        self.events.append(("send_message", conversation_id, message))
        return True


@pytest.fixture
def mock_db(monkeypatch):
    mdb = mongomock.MongoClient()["skillswap_test"]
    monkeypatch.setattr(database, "db", mdb)
    monkeypatch.setattr(main, "db", mdb)
    database.ensure_indexes(mdb)
    return mdb


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def client(mock_db, relay):
    main.app.dependency_overrides[get_relay] = lambda: relay
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(mock_db):
    def _make(name="Alice", **fields):
        fields.setdefault("email", f"{name.lower()}{next(_emails)}@example.com")
        return database.create_document(database.USERS, User(name=name, **fields))
    return _make


@pytest.fixture
def auth():
    def _auth(user_id):
        return {"Authorization": f"Bearer {main.create_access_token({'sub': user_id})}"}
    return _auth


@pytest.fixture
def race(monkeypatch):
    """Have another writer set fields on a document just before the next guarded write to it."""
    def _race(method, collection, changes):
        original = getattr(Collection, method)
        write = Collection.update_one
        pending = [True]

        def racing(self, filter, *args, **kwargs):
            if pending and self.name == collection:
                pending.clear()
                write(self, {"_id": filter["_id"]}, {"$set": changes})
            return original(self, filter, *args, **kwargs)

        monkeypatch.setattr(Collection, method, racing)
    return _race
