"""Pydantic schemas for sync logs and scheduled syncs."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SyncLogResponse(BaseModel):
    """A sync log entry."""

    id: str
    source: str
    status: str
    holdings_count: int
    error_message: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserSyncResultResponse(BaseModel):
    user_id: str
    success: bool
    holdings_count: int = 0
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ScheduledSyncResponse(BaseModel):
    """Outcome of syncing every user with an active broker session."""

    success: bool
    users: int
    succeeded: int
    failed: int
    results: list[UserSyncResultResponse]
