"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from chatrelay.config import AppConfig, StorageSettings
from chatrelay.main import create_app
from chatrelay.services import build_services
from chatrelay.storage import DuckDBConversationStore


@pytest.fixture
def relay_config() -> AppConfig:
    """Config with a throwaway in-memory store."""
    return AppConfig(storage=StorageSettings(db_path=":memory:", timeout_seconds=5))


@pytest.fixture
def store():
    """In-memory DuckDB conversation store."""
    s = DuckDBConversationStore(db_path=":memory:")
    yield s
    s.close()


@pytest.fixture
def services(relay_config, store):
    """Fully wired relay components around the in-memory store."""
    return build_services(relay_config, store=store)


@pytest.fixture
def api_client(relay_config):
    """Provide a TestClient for a fresh app with its lifespan running.

    Named api_client (not client) so modules can build their own clients
    for custom configs.
    """
    with TestClient(create_app(relay_config)) as client:
        yield client
