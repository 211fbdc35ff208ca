"""Pytest configuration and fixtures."""

import pytest
import pytest_asyncio

from services.realtime.session_coordinator import SessionCoordinator
from services.store.document_store import DocumentStore
from helpers import FAST_RETRY


@pytest_asyncio.fixture
async def store():
    """Fresh in-process store; every connection is signed off afterwards."""
    document_store = DocumentStore()
    yield document_store
    await document_store.shutdown()


@pytest.fixture
def make_client(store):
    """Create a coordinator on its own live connection.

    Returns a factory `(client_id, **kwargs) -> (coordinator, connection, states)`
    where `states` collects every ConnectionState the coordinator emitted.
    """

    def _make(client_id, **kwargs):
        connection = store.connect()
        states = []
        kwargs.setdefault("retry", FAST_RETRY)
        kwargs.setdefault("alias_factory", lambda: f"{client_id}-alias")
        kwargs.setdefault("on_state", states.append)
        coordinator = SessionCoordinator(connection, client_id, **kwargs)
        return coordinator, connection, states

    return _make


@pytest.fixture
def app_settings(monkeypatch):
    """Settings for an in-memory app with the periodic cleaner effectively idle."""
    from utils.settings import Settings

    monkeypatch.delenv("DATABASE_DIR", raising=False)
    monkeypatch.setenv("PRESENCE_MODE", "disconnect")
    monkeypatch.setenv("CLEANUP_INTERVAL_SECONDS", "3600")
    return Settings()


@pytest.fixture
def client(app_settings):
    from fastapi.testclient import TestClient

    from main import create_app

    with TestClient(create_app(app_settings)) as test_client:
        yield test_client
