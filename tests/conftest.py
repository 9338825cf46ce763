"""Shared fixtures: an in-memory MongoDB, a controllable clock and a recording mailer."""

from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import AuthManager
from main import create_app
from stores import StoreRepository


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send(self, user, subject, template_name, **context):
        self.sent.append({"user": user, "subject": subject, "template_name": template_name, **context})


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def stores(db, clock):
    return StoreRepository(db, clock=clock)


@pytest.fixture
def auth(db, mailer, clock):
    return AuthManager(db, mailer=mailer, clock=clock)


@pytest.fixture
def alice(auth):
    return auth.register("alice@example.com", "Alice", "wonderland")


@pytest.fixture
def bob(auth):
    return auth.register("bob@example.com", "Bob", "builder")


@pytest.fixture
def store_input():
    def make(name="Coffee Corner", **extra):
        data = {
            "name": name,
            "description": "Good coffee and fast wifi",
            "tags": ["cafe", "wifi"],
            "location": {"address": "1 Main St", "coordinates": [-79.38, 43.65]},
        }
        data.update(extra)
        return data
    return make


@pytest.fixture
def client(db, stores, auth):
    app = create_app(db, mailer=auth.mailer)
    app.state.stores = stores
    app.state.auth = auth
    return TestClient(app)
