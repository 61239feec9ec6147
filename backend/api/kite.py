"""Kite Connect API endpoints: login, OAuth callback, session, sync, disconnect."""

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from api.deps import (
    get_caller,
    get_kite_client,
    get_state_codec,
    get_sync_service,
    require_user,
    resolve_target_user,
)
from config import settings
from database import get_db
from integrations.exceptions import (
    BrokerAuthError,
    BrokerConfigError,
    BrokerError,
    BrokerRateLimitError,
)
from integrations.kite_client import BROKER_NAME, KiteClient
from schemas import (
    DisconnectResponse,
    KiteSessionResponse,
    KiteSyncRequest,
    KiteSyncResponse,
    LoginUrlResponse,
)
from services.auth_service import Caller
from services.broker_session_service import BrokerSessionService
from services.broker_sync_service import BrokerSyncService, NoValidSessionError
from services.oauth_state import OAuthStateCodec
from services.session_exchange_service import SessionExchangeService, allowed_app_urls

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/kite", tags=["kite"])


@router.get("/login-url", response_model=LoginUrlResponse)
def get_login_url(
    request: Request,
    caller: Caller = Depends(require_user),
    kite_client: KiteClient = Depends(get_kite_client),
    codec: Optional[OAuthStateCodec] = Depends(get_state_codec),
):
    """Return the Kite login URL with a signed state bound to the caller.

    The request's ``Origin`` is carried in the state (when it is an allowed
    front-end origin) so the callback can redirect back to it.

    Raises:
        HTTPException: 500 if the Kite API key/secret are not configured.
    """
    if not kite_client.is_configured() or codec is None:
        raise HTTPException(status_code=500, detail="Kite API credentials not configured")

    origin = (request.headers.get("origin") or "").rstrip("/")
    app_url = origin if origin in allowed_app_urls() else None
    state = codec.encode(caller.user_id, app_url=app_url)
    return LoginUrlResponse(login_url=kite_client.login_url(state))


@router.get("/callback")
def kite_callback(
    request_token: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    kite_client: KiteClient = Depends(get_kite_client),
    codec: Optional[OAuthStateCodec] = Depends(get_state_codec),
    sync_service: BrokerSyncService = Depends(get_sync_service),
):
    """OAuth redirect target registered with Kite.

    Always answers with a 302 back to the front end carrying either
    ``kite_connected=true`` or ``kite_error=<reason>``.
    """
    service = SessionExchangeService(
        kite_client=kite_client, state_codec=codec, sync_service=sync_service,
    )
    try:
        outcome = service.handle_callback(db, request_token, state)
    except Exception:
        logger.error("Unexpected error in Kite callback", exc_info=True)
        return RedirectResponse(
            f"{settings.APP_URL}?kite_error={quote('Unexpected error')}", status_code=302,
        )
    return RedirectResponse(outcome.redirect_url, status_code=302)


@router.get("/session", response_model=KiteSessionResponse)
def get_session_status(
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Report whether the caller has a valid Kite session."""
    status = BrokerSessionService().get_status(db, caller.user_id)
    return KiteSessionResponse(
        connected=status.connected,
        expires_at=status.expires_at,
        broker_user_id=status.broker_user_id,
    )


@router.post("/sync", response_model=KiteSyncResponse)
def sync_holdings(
    body: Optional[KiteSyncRequest] = Body(None),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
    sync_service: BrokerSyncService = Depends(get_sync_service),
):
    """Fetch the user's Kite holdings and replace their "Zerodha" holdings.

    Users sync themselves; internal and operator callers pass ``user_id``.

    Raises:
        HTTPException:
            - 401 Unauthorized: No valid session, or Kite rejected it
            - 429 Too Many Requests: Kite rate limit
            - 500 Internal Server Error: Kite not configured, or unexpected error
            - 502 Bad Gateway: Other Kite failures
    """
    user_id = resolve_target_user(caller, body.user_id if body else None)

    try:
        result = sync_service.sync_user(db, user_id)
    except (NoValidSessionError, BrokerAuthError) as e:
        raise HTTPException(status_code=401, detail=str(e))
    except BrokerRateLimitError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except BrokerConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except BrokerError as e:
        logger.warning("Kite sync failed for user %s: %s", user_id, e)
        raise HTTPException(status_code=502, detail=str(e))
    except Exception:
        logger.error("Unexpected error syncing Kite holdings for user %s", user_id, exc_info=True)
        raise HTTPException(status_code=500, detail="Sync failed due to an internal error")

    return KiteSyncResponse(
        success=True,
        holdings_count=result.holdings_count,
        source=BROKER_NAME,
        message=f"Synced {result.holdings_count} holdings from {BROKER_NAME}",
    )


@router.post("/disconnect", response_model=DisconnectResponse)
def disconnect(
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
    kite_client: KiteClient = Depends(get_kite_client),
):
    """Invalidate and forget the caller's Kite session."""
    removed = BrokerSessionService().disconnect(db, caller.user_id, kite_client)
    message = "Disconnected from Zerodha" if removed else "No active Zerodha session"
    return DisconnectResponse(success=True, message=message)
