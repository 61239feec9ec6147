"""OAuth callback handling - turn a Kite request token into a stored session.

The callback is a browser navigation, so every outcome is a redirect back
to the front end with either ``kite_connected=true`` or a URL-encoded
``kite_error`` reason.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from urllib.parse import quote

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from integrations.exceptions import BrokerConfigError, BrokerDataError, BrokerError
from integrations.kite_client import BROKER_NAME, KiteClient
from models import SyncStatus
from models.utils import utcnow
from services.broker_session_service import BrokerSessionService
from services.broker_sync_service import BrokerSyncService, NoValidSessionError
from services.oauth_state import OAuthState, OAuthStateCodec, StateDecodeError
from services.reconciliation_service import record_sync_log

logger = logging.getLogger(__name__)


@dataclass
class CallbackOutcome:
    redirect_url: str
    connected: bool
    user_id: str | None = None
    error: str | None = None


def allowed_app_urls() -> set[str]:
    """Front-end origins the callback may redirect to."""
    return {url.rstrip("/") for url in [settings.APP_URL, *settings.CORS_ORIGINS] if url}


def _with_query(url: str, query: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query}"


class SessionExchangeService:
    """Complete the Kite login flow started from ``/api/kite/login-url``.

    Args:
        kite_client: Kite API client
        state_codec: Verifier for the signed state, or None if no signing
            key is configured (every callback is then an orphan flow)
        session_service: Session store
        sync_service: Used for the initial holdings sync
    """

    def __init__(
        self,
        kite_client: KiteClient,
        state_codec: OAuthStateCodec | None,
        session_service: BrokerSessionService | None = None,
        sync_service: BrokerSyncService | None = None,
    ):
        self._kite = kite_client
        self._codec = state_codec
        self._sessions = session_service or BrokerSessionService()
        self._sync = sync_service or BrokerSyncService(
            kite_client=kite_client, session_service=self._sessions,
        )

    def _decode_state(self, state: str | None) -> OAuthState | None:
        """Recover the initiating user, or None for an orphan flow."""
        if not state or self._codec is None:
            logger.info("Kite callback without a usable state; treating as orphan flow")
            return None
        try:
            decoded = self._codec.decode(state)
        except StateDecodeError as exc:
            logger.warning("Kite callback state rejected (%s); treating as orphan flow", exc)
            return None

        if decoded.is_stale(self._codec.now_ms(), self._codec.max_age):
            logger.warning(
                "Kite callback state for user %s is %s old; continuing",
                decoded.user_id, decoded.age(self._codec.now_ms()),
            )
        return decoded

    def handle_callback(
        self, db: Session, request_token: str | None, state: str | None
    ) -> CallbackOutcome:
        """Exchange the request token and store the resulting session.

        Never raises for expected failures; they become error redirects.
        """
        decoded = self._decode_state(state)
        user_id = decoded.user_id if decoded else None
        app_url = settings.APP_URL.rstrip("/")
        if decoded and decoded.app_url and decoded.app_url.rstrip("/") in allowed_app_urls():
            app_url = decoded.app_url.rstrip("/")

        if not request_token:
            return self._failure(app_url, "No request token provided", user_id)
        if not self._kite.is_configured():
            logger.error("Kite callback received but KITE_API_KEY/KITE_API_SECRET are not set")
            return self._failure(app_url, "Kite API credentials not configured", user_id)

        try:
            token = self._kite.exchange_request_token(request_token)
        except BrokerConfigError:
            return self._failure(app_url, "Kite API credentials not configured", user_id)
        except BrokerDataError:
            return self._failure(app_url, "No access token received", user_id)
        except BrokerError as exc:
            logger.warning("Kite token exchange failed: %s", exc)
            return self._failure(app_url, "Token exchange failed", user_id)

        expires_at = utcnow() + timedelta(hours=settings.KITE_SESSION_TTL_HOURS)
        try:
            self._sessions.create_session(
                db,
                access_token=token.access_token,
                expires_at=expires_at,
                user_id=user_id,
                broker_user_id=token.broker_user_id,
            )
            record_sync_log(db, user_id, BROKER_NAME, SyncStatus.CONNECTED)
        except SQLAlchemyError:
            db.rollback()
            logger.error("Failed to store Kite session", exc_info=True)
            return self._failure(app_url, "Failed to store session", user_id)

        if user_id:
            self._initial_sync(db, user_id)

        logger.info("Kite connected for user %s", user_id or "<pending>")
        return CallbackOutcome(
            redirect_url=_with_query(app_url, "kite_connected=true"),
            connected=True,
            user_id=user_id,
        )

    def _initial_sync(self, db: Session, user_id: str) -> None:
        """Populate holdings right away. Failures do not undo the connection."""
        try:
            result = self._sync.sync_user(db, user_id)
            logger.info("Initial Kite sync for user %s: %d holdings", user_id, result.holdings_count)
        except (NoValidSessionError, BrokerError, SQLAlchemyError) as exc:
            logger.warning("Initial Kite sync failed for user %s: %s", user_id, exc)
        except Exception:
            logger.exception("Unexpected error during initial Kite sync for user %s", user_id)

    @staticmethod
    def _failure(app_url: str, reason: str, user_id: str | None) -> CallbackOutcome:
        logger.info("Kite callback failed: %s", reason)
        return CallbackOutcome(
            redirect_url=_with_query(app_url, f"kite_error={quote(reason)}"),
            connected=False,
            user_id=user_id,
            error=reason,
        )
