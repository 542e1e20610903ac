import pytest

from rosterauth.authentication import discovery
from rosterauth.identity.backend import reset_identity_backend
from rosterauth.main.aiohttp_client import aiohttp_client
from rosterauth.main.config import Settings, reset_settings, set_settings
from rosterauth.main.request_context import clear_request_context
from unittests.fakes import (
    DISCOVERY_DOCUMENT,
    DISCOVERY_URL,
    FakeRedis,
    FakeSession,
    make_settings,
)


@pytest.fixture
def test_settings() -> Settings:
    settings = make_settings()
    set_settings(settings)
    return settings


@pytest.fixture(autouse=True)
def reset_singletons_after_test():
    """Reset process-wide state after each test to prevent leakage."""
    yield
    reset_settings()
    reset_identity_backend()
    discovery.reset_discovery_resolver()
    discovery._DISCOVERY_LOCKS.clear()
    clear_request_context()


@pytest.fixture
def fake_http(monkeypatch) -> FakeSession:
    session = FakeSession()
    monkeypatch.setattr(aiohttp_client, "session", session)
    return session


@pytest.fixture
def provider(fake_http: FakeSession) -> FakeSession:
    """Fake HTTP session with the provider's discovery document already routed."""
    fake_http.route("GET", DISCOVERY_URL, DISCOVERY_DOCUMENT)
    return fake_http


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
