"""Sync API endpoints: sync history and the scheduled all-users sync."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from api.deps import get_sync_service, require_trusted, require_user
from database import get_db
from models import SyncLogEntry
from schemas import ScheduledSyncResponse, SyncLogResponse, UserSyncResultResponse
from services.auth_service import Caller
from services.broker_sync_service import BrokerSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.get("/logs", response_model=list[SyncLogResponse])
def list_sync_logs(
    source: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Most recent sync log entries for the caller, newest first."""
    query = db.query(SyncLogEntry).filter(SyncLogEntry.user_id == caller.user_id)
    if source:
        query = query.filter(SyncLogEntry.source == source)
    return query.order_by(SyncLogEntry.created_at.desc()).limit(limit).all()


@router.post("/scheduled", response_model=ScheduledSyncResponse)
def run_scheduled_sync(
    caller: Caller = Depends(require_trusted),
    db: Session = Depends(get_db),
    sync_service: BrokerSyncService = Depends(get_sync_service),
):
    """Sync every user with an active Kite session.

    Per-user failures are reported in ``results`` and do not fail the run.

    Raises:
        HTTPException: 500 if the run could not start.
    """
    try:
        outcome = sync_service.sync_all_active(db)
    except Exception:
        logger.error("Scheduled sync failed", exc_info=True)
        raise HTTPException(status_code=500, detail="Scheduled sync failed")

    return ScheduledSyncResponse(
        success=outcome.failed == 0,
        users=len(outcome.outcomes),
        succeeded=outcome.succeeded,
        failed=outcome.failed,
        results=[UserSyncResultResponse.model_validate(o) for o in outcome.outcomes],
    )
