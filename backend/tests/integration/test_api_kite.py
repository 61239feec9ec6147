"""Integration tests for the Kite connection API."""

from unittest.mock import Mock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from api.deps import get_kite_client, get_state_codec
from config import settings
from integrations.exceptions import BrokerConfigError, BrokerRateLimitError
from integrations.kite_client import KiteClient
from main import app
from models import BrokerSession, SessionStatus, SyncLogEntry, SyncStatus
from services.reconciliation_service import current_holdings
from tests.fixtures.mocks import MockKiteClient

APP_URL = "http://app.example"


@pytest.fixture(autouse=True)
def front_end_urls():
    with patch.object(settings, "APP_URL", APP_URL), \
         patch.object(settings, "CORS_ORIGINS", [APP_URL, "http://localhost:5173"]):
        yield


def state_from(login_url: str) -> str:
    return parse_qs(urlparse(login_url).query)["state"][0]


class TestLoginUrl:
    """Tests for GET /api/kite/login-url."""

    def test_returns_signed_state_for_caller(self, client, user_headers, state_codec):
        response = client.get("/api/kite/login-url", headers=user_headers)
        assert response.status_code == 200

        login_url = response.json()["login_url"]
        assert login_url.startswith("https://kite.example/connect/login?")
        decoded = state_codec.decode(state_from(login_url))
        assert decoded.user_id == "user-1"
        assert decoded.app_url is None

    def test_allowed_origin_carried_in_state(self, client, user_headers, state_codec):
        headers = {**user_headers, "Origin": "http://localhost:5173"}
        response = client.get("/api/kite/login-url", headers=headers)
        decoded = state_codec.decode(state_from(response.json()["login_url"]))
        assert decoded.app_url == "http://localhost:5173"

    def test_unknown_origin_ignored(self, client, user_headers, state_codec):
        headers = {**user_headers, "Origin": "https://evil.example"}
        response = client.get("/api/kite/login-url", headers=headers)
        decoded = state_codec.decode(state_from(response.json()["login_url"]))
        assert decoded.app_url is None

    def test_requires_user(self, client, internal_headers):
        assert client.get("/api/kite/login-url").status_code == 401
        assert client.get("/api/kite/login-url", headers=internal_headers).status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/api/kite/login-url", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_not_configured(self, client, user_headers):
        app.dependency_overrides[get_kite_client] = lambda: MockKiteClient(configured=False)
        response = client.get("/api/kite/login-url", headers=user_headers)
        assert response.status_code == 500
        assert response.json()["detail"] == "Kite API credentials not configured"

    def test_no_signing_key(self, client, user_headers):
        app.dependency_overrides[get_state_codec] = lambda: None
        response = client.get("/api/kite/login-url", headers=user_headers)
        assert response.status_code == 500


class TestCallback:
    """Tests for GET /api/kite/callback."""

    def test_connects_user_and_redirects(self, client, db, state_codec, mock_kite_client):
        response = client.get(
            "/api/kite/callback",
            params={"request_token": "req-token", "state": state_codec.encode("user-1")},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == f"{APP_URL}?kite_connected=true"
        assert mock_kite_client.exchanged_tokens == ["req-token"]
        session = db.query(BrokerSession).one()
        assert session.user_id == "user-1"
        assert len(current_holdings(db, "user-1", "Zerodha")) == 3

    def test_missing_request_token(self, client, db):
        response = client.get("/api/kite/callback", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == f"{APP_URL}?kite_error=No%20request%20token%20provided"
        assert db.query(BrokerSession).count() == 0

    def test_orphan_session_then_claimed(self, client, db, user_headers):
        response = client.get(
            "/api/kite/callback", params={"request_token": "req-token"}, follow_redirects=False,
        )
        assert response.headers["location"].endswith("kite_connected=true")
        assert db.query(BrokerSession).one().status == SessionStatus.PENDING.value

        response = client.post("/api/kite/sync", headers=user_headers)
        assert response.status_code == 200
        db.expire_all()
        assert db.query(BrokerSession).one().user_id == "user-1"

    def test_unexpected_error_redirects(self, client, state_codec):
        with patch(
            "api.kite.SessionExchangeService.handle_callback", side_effect=RuntimeError("boom"),
        ):
            response = client.get(
                "/api/kite/callback", params={"request_token": "x"}, follow_redirects=False,
            )
        assert response.status_code == 302
        assert response.headers["location"] == f"{APP_URL}?kite_error=Unexpected%20error"


class TestSessionStatus:
    """Tests for GET /api/kite/session."""

    def test_connected(self, client, claimed_session, user_headers):
        response = client.get("/api/kite/session", headers=user_headers)
        data = response.json()
        assert response.status_code == 200
        assert data["connected"] is True
        assert data["expires_at"] is not None

    def test_not_connected(self, client, user_headers):
        response = client.get("/api/kite/session", headers=user_headers)
        assert response.json() == {"connected": False, "expires_at": None, "broker_user_id": None}

    def test_other_users_session_not_visible(self, client, claimed_session, other_user_headers):
        response = client.get("/api/kite/session", headers=other_user_headers)
        assert response.json()["connected"] is False


class TestSync:
    """Tests for POST /api/kite/sync."""

    def test_user_sync(self, client, db, claimed_session, user_headers):
        response = client.post("/api/kite/sync", headers=user_headers)
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "holdings_count": 3,
            "source": "Zerodha",
            "message": "Synced 3 holdings from Zerodha",
        }
        assert len(current_holdings(db, "user-1")) == 3

    def test_no_session(self, client, db, user_headers):
        response = client.post("/api/kite/sync", headers=user_headers)
        assert response.status_code == 401
        assert "No valid Kite session" in response.json()["detail"]
        log = db.query(SyncLogEntry).one()
        assert log.status == SyncStatus.ERROR.value

    def test_broker_auth_failure(self, client, claimed_session, user_headers):
        app.dependency_overrides[get_kite_client] = lambda: MockKiteClient(
            should_fail=True, failure_type="auth", failure_message="Kite session expired or invalid",
        )
        response = client.post("/api/kite/sync", headers=user_headers)
        assert response.status_code == 401

    def test_broker_failure(self, client, claimed_session, user_headers):
        app.dependency_overrides[get_kite_client] = lambda: MockKiteClient(
            should_fail=True, failure_message="Kite API error (HTTP 503)",
        )
        response = client.post("/api/kite/sync", headers=user_headers)
        assert response.status_code == 502
        assert response.json()["detail"] == "Kite API error (HTTP 503)"

    def test_undecodable_broker_response(self, client, db, claimed_session, user_headers):
        def handler(request):
            return httpx.Response(
                200,
                headers={"Content-Encoding": "gzip", "Content-Type": "application/json"},
                content=b"definitely not gzip",
            )

        app.dependency_overrides[get_kite_client] = lambda: KiteClient(
            api_key="test-key",
            api_secret="test-secret",
            base_url="https://api.kite.test",
            transport=httpx.MockTransport(handler),
        )
        response = client.post("/api/kite/sync", headers=user_headers)

        assert response.status_code == 502
        assert response.json()["detail"] == "Kite response could not be decoded (/portfolio/holdings)"
        log = db.query(SyncLogEntry).one()
        assert log.status == SyncStatus.ERROR.value
        assert log.error_message == "Kite response could not be decoded (/portfolio/holdings)"

    def test_rate_limited(self, client, claimed_session, user_headers, mock_kite_client):
        mock_kite_client.get_holdings = Mock(
            side_effect=BrokerRateLimitError("Kite rate limit exceeded", broker_name="Zerodha"),
        )
        response = client.post("/api/kite/sync", headers=user_headers)
        assert response.status_code == 429

    def test_not_configured(self, client, claimed_session, user_headers, mock_kite_client):
        mock_kite_client.get_holdings = Mock(
            side_effect=BrokerConfigError("Kite API credentials not configured", broker_name="Zerodha"),
        )
        response = client.post("/api/kite/sync", headers=user_headers)
        assert response.status_code == 500
        assert response.json()["detail"] == "Kite API credentials not configured"

    def test_internal_caller_names_user(self, client, claimed_session, internal_headers):
        response = client.post("/api/kite/sync", headers=internal_headers, json={"user_id": "user-1"})
        assert response.status_code == 200
        assert response.json()["holdings_count"] == 3

    def test_internal_caller_must_name_user(self, client, internal_headers):
        response = client.post("/api/kite/sync", headers=internal_headers)
        assert response.status_code == 400

    def test_user_cannot_sync_someone_else(self, client, claimed_session, other_user_headers):
        response = client.post("/api/kite/sync", headers=other_user_headers, json={"user_id": "user-1"})
        assert response.status_code == 403

    def test_cron_caller(self, client, claimed_session, cron_headers):
        response = client.post("/api/kite/sync", headers=cron_headers, json={"user_id": "user-1"})
        assert response.status_code == 200

    def test_unauthenticated(self, client):
        assert client.post("/api/kite/sync").status_code == 401


class TestDisconnect:
    """Tests for POST /api/kite/disconnect."""

    def test_disconnects(self, client, db, claimed_session, user_headers, mock_kite_client):
        response = client.post("/api/kite/disconnect", headers=user_headers)
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Disconnected from Zerodha"}
        assert mock_kite_client.invalidated == ["stored-access-token"]
        assert db.query(BrokerSession).count() == 0

    def test_nothing_to_disconnect(self, client, user_headers):
        response = client.post("/api/kite/disconnect", headers=user_headers)
        assert response.json() == {"success": True, "message": "No active Zerodha session"}
