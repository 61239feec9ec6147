"""Shared FastAPI dependencies: caller authentication and service factories.

Each factory is a plain function so tests can replace it through
``app.dependency_overrides``.
"""

from datetime import timedelta
from typing import Optional

from fastapi import Depends, Header, HTTPException

from config import settings
from integrations.kite_client import KiteClient
from services.auth_service import AuthenticationError, AuthValidator, Caller, CallerKind
from services.broker_sync_service import BrokerSyncService
from services.oauth_state import OAuthStateCodec
from services.reconciliation_service import HoldingsReconciler
from services.spreadsheet_ingestion import BrokerExportParser, HoldingsStatementParser


def get_auth_validator() -> AuthValidator:
    """Get the auth validator (dependency for injection in tests)."""
    return AuthValidator()


def get_caller(
    authorization: Optional[str] = Header(None),
    x_cron_secret: Optional[str] = Header(None),
    validator: AuthValidator = Depends(get_auth_validator),
) -> Caller:
    """Authenticate the request.

    Raises:
        HTTPException: 401 with the rejection reason.
    """
    try:
        return validator.validate(authorization, x_cron_secret)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=401,
            detail=e.reason,
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_user(caller: Caller = Depends(get_caller)) -> Caller:
    """Only allow end users (their own data)."""
    if caller.kind != CallerKind.USER or not caller.user_id:
        raise HTTPException(status_code=401, detail="User credentials required")
    return caller


def require_trusted(caller: Caller = Depends(get_caller)) -> Caller:
    """Only allow internal services and scheduled jobs."""
    if not caller.is_trusted:
        raise HTTPException(status_code=403, detail="Operator credentials required")
    return caller


def resolve_target_user(caller: Caller, requested_user_id: Optional[str]) -> str:
    """Pick the user a request acts on.

    Users always act on themselves; trusted callers must name a user.

    Raises:
        HTTPException: 403 if a user names someone else, 400 if a trusted
            caller names nobody.
    """
    if caller.kind == CallerKind.USER:
        if requested_user_id and requested_user_id != caller.user_id:
            raise HTTPException(status_code=403, detail="Cannot act on behalf of another user")
        return caller.user_id
    if not requested_user_id:
        raise HTTPException(status_code=400, detail="user_id is required for internal calls")
    return requested_user_id


def get_kite_client() -> KiteClient:
    """Get a Kite client built from settings."""
    return KiteClient()


def get_state_codec() -> Optional[OAuthStateCodec]:
    """Get the OAuth state codec, or None if no signing key is configured."""
    key = settings.state_signing_key
    if not key:
        return None
    return OAuthStateCodec(
        key, max_age=timedelta(minutes=settings.OAUTH_STATE_MAX_AGE_MINUTES),
    )


def get_sync_service(kite_client: KiteClient = Depends(get_kite_client)) -> BrokerSyncService:
    """Get the broker sync service bound to the request's Kite client."""
    return BrokerSyncService(kite_client=kite_client)


def get_reconciler() -> HoldingsReconciler:
    return HoldingsReconciler()


def get_statement_parser() -> HoldingsStatementParser:
    return HoldingsStatementParser()


def get_broker_export_parser() -> BrokerExportParser:
    return BrokerExportParser()
