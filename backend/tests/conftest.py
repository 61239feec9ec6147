"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.deps import get_auth_validator, get_kite_client, get_state_codec
from database import Base, get_db
from main import app
from services.oauth_state import OAuthStateCodec
# Pytest fixtures - imported to make them available to tests
from tests.fixtures import (  # noqa: F401
    claimed_session,
    expired_session,
    pending_session,
)
from tests.fixtures.mocks import (
    MockAuthValidator,
    MockKiteClient,
    SAMPLE_KITE_HOLDINGS,
    SAMPLE_KITE_QUOTES,
)

TEST_STATE_SECRET = "test-state-secret"

USER_TOKENS = {
    "user-1-token": "user-1",
    "user-2-token": "user-2",
}


@pytest.fixture(name="db")
def db_fixture():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(name="mock_kite_client")
def mock_kite_client_fixture():
    """Create a mock Kite client with sample holdings and quotes."""
    return MockKiteClient(holdings=SAMPLE_KITE_HOLDINGS, quotes=SAMPLE_KITE_QUOTES)


@pytest.fixture(name="state_codec")
def state_codec_fixture():
    return OAuthStateCodec(TEST_STATE_SECRET)


@pytest.fixture(name="client")
def client_fixture(db, mock_kite_client, state_codec):
    """Create a test client with the test database and mocked externals."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_auth_validator] = lambda: MockAuthValidator(USER_TOKENS)
    app.dependency_overrides[get_kite_client] = lambda: mock_kite_client
    app.dependency_overrides[get_state_codec] = lambda: state_codec
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="user_headers")
def user_headers_fixture():
    return {"Authorization": "Bearer user-1-token"}


@pytest.fixture(name="other_user_headers")
def other_user_headers_fixture():
    return {"Authorization": "Bearer user-2-token"}


@pytest.fixture(name="internal_headers")
def internal_headers_fixture():
    return {"Authorization": "Bearer service-role-key"}


@pytest.fixture(name="cron_headers")
def cron_headers_fixture():
    return {"X-Cron-Secret": "cron-secret"}
