"""Pydantic schemas for API request/response validation."""

from schemas.holding import (
    HoldingResponse,
    ParseSummaryResponse,
    SkippedRowResponse,
    UploadResponse,
)
from schemas.kite import (
    DisconnectResponse,
    KiteSessionResponse,
    KiteSyncRequest,
    KiteSyncResponse,
    LoginUrlResponse,
)
from schemas.sync import ScheduledSyncResponse, SyncLogResponse, UserSyncResultResponse

__all__ = [
    "DisconnectResponse",
    "HoldingResponse",
    "KiteSessionResponse",
    "KiteSyncRequest",
    "KiteSyncResponse",
    "LoginUrlResponse",
    "ParseSummaryResponse",
    "ScheduledSyncResponse",
    "SkippedRowResponse",
    "SyncLogResponse",
    "UploadResponse",
    "UserSyncResultResponse",
]
