"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration with markers and a scratch database per test
WHY: Every test gets an isolated SQLite file and a transport that records notices
HOW: Define pytest markers, engine/session/service fixtures, and test helpers
"""

import pytest
from fastapi.testclient import TestClient

from bookswap.core.database import create_db_engine, make_session_factory, init_db
from bookswap.core.models import ListingKind
from bookswap.models.negotiation import BookRef
from bookswap.notifications.transport import NotificationDeliveryError
from bookswap.notifications.transport_factory import reset_transport
from bookswap.services.negotiation import build_negotiation_service


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (multiple components)"
    )
    config.addinivalue_line(
        "markers", "concurrency: Tests that race several threads against one database"
    )


class RecordingTransport:
    """Notification transport that keeps every notice in memory."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, recipient_id, template_kind, payload):
        if self.fail:
            raise NotificationDeliveryError("transport down")
        self.sent.append((recipient_id, template_kind, payload))

    def kinds(self, recipient_id=None):
        return [kind for rid, kind, _ in self.sent if recipient_id is None or rid == recipient_id]

    def clear(self):
        self.sent.clear()


@pytest.fixture(autouse=True)
def reset_transport_singleton():
    """
    Reset transport singleton before each test.

    WHAT: Clear transport cache between tests
    WHY: Prevent test pollution and ensure clean state
    HOW: Call reset_transport() before and after each test
    """
    reset_transport()
    yield
    reset_transport()


@pytest.fixture
def db_engine(tmp_path):
    """Fresh SQLite database file for each test."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'bookswap_test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def service(session_factory, transport):
    return build_negotiation_service(session_factory, transport)


@pytest.fixture
def client(service):
    """FastAPI test client bound to the scratch database."""
    from bookswap.main import create_app

    with TestClient(create_app(service)) as test_client:
        yield test_client


@pytest.fixture
def make_listing(service):
    """Create listings with sensible defaults."""
    def _make(owner_id="alice", kind=ListingKind.GIFT, title="Dune", genre="sci-fi"):
        return service.create_listing(
            owner_id,
            BookRef(title=title, author="Frank Herbert", genre=genre),
            kind,
        )
    return _make

