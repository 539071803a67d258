"""
Shared fixtures: a throwaway SQLite store per test, the app wired to it, and
a push transport that records instead of sending.
"""
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from pywebpush import WebPushException
from sqlalchemy.orm import sessionmaker

from vchats.api.deps import get_push_transport
from vchats.core.config import Settings, get_settings
from vchats.core.database import Base, build_engine, get_change_feed, get_session_factory
from vchats.main import create_app
from vchats.models import message, push, social  # noqa: F401 - register models
from vchats.services.channels import BroadcastChannel, ChangeFeed, attach_change_feed
from vchats.services.social import FriendService

TEST_SECRET = "test-secret-key-12345"


class FakeTransport:
    """Records pushes; ``fail_with`` makes the next sends fail with that HTTP status."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send(self, subscription_info: dict, data: str) -> None:
        if self.fail_with is not None:
            raise WebPushException(
                "Push failed",
                response=SimpleNamespace(status_code=self.fail_with, text=""),
            )
        self.sent.append((subscription_info, data))


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        relay_secret=TEST_SECRET,
        vapid_public_key="test-vapid-public",
        vapid_private_key="test-vapid-private",
        database_url=f"sqlite:///{tmp_path}/vchats-test.db",
        seen_debounce_seconds=0.01,
        log_level="DEBUG",
        log_format="text",
    )


@pytest.fixture
def engine(test_settings):
    engine = build_engine(test_settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def session_factory(engine, feed):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    attach_change_feed(factory, feed)
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def broadcast() -> BroadcastChannel:
    return BroadcastChannel()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def app(test_settings, session_factory, feed, transport):
    app = create_app()
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_change_feed] = lambda: feed
    app.dependency_overrides[get_push_transport] = lambda: transport
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Create a test client."""
    return TestClient(app)


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def make_friends(db, user_id: str, peer_id: str) -> None:
    friends = FriendService(db)
    request = friends.send_request(user_id, peer_id)
    friends.accept(request.id, peer_id)
