"""Pydantic schemas for the Kite connection endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class LoginUrlResponse(BaseModel):
    """Kite login URL carrying a signed state for the current user."""

    login_url: str


class KiteSessionResponse(BaseModel):
    """Whether the current user has a valid Kite session."""

    connected: bool
    expires_at: Optional[datetime] = None
    broker_user_id: Optional[str] = None


class KiteSyncRequest(BaseModel):
    """Optional body for a sync; ``user_id`` is honoured for trusted callers only."""

    user_id: Optional[str] = None


class KiteSyncResponse(BaseModel):
    success: bool
    holdings_count: int
    source: str
    message: str


class DisconnectResponse(BaseModel):
    success: bool
    message: str
