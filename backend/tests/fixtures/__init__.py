"""Test fixtures and sample data."""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from integrations.provider_protocol import AssetType, ProviderHolding
from models import BrokerSession, SessionStatus
from models.utils import utcnow
from sqlalchemy.orm import Session


def create_broker_session(
    db: Session,
    user_id: str | None = None,
    access_token: str = "stored-access-token",
    expires_at: datetime | None = None,
    created_at: datetime | None = None,
) -> BrokerSession:
    """Insert a broker session directly, bypassing the service.

    Args:
        db: Database session
        user_id: Owner, or None for a pending (orphan) session
        access_token: Stored access token
        expires_at: Defaults to eight hours from now
        created_at: Defaults to now

    Returns:
        The persisted BrokerSession
    """
    now = utcnow()
    session = BrokerSession(
        broker="Zerodha",
        user_id=user_id,
        access_token=access_token,
        status=(SessionStatus.CLAIMED if user_id else SessionStatus.PENDING).value,
        version=0,
        expires_at=expires_at or now + timedelta(hours=8),
        created_at=created_at or now,
        claimed_at=now if user_id else None,
    )
    db.add(session)
    db.commit()
    return session


def make_holding(
    symbol: str,
    quantity: str = "10",
    avg_price: str = "100",
    last_price: str = "110",
    asset_type: AssetType = AssetType.EQUITY,
    broker: str | None = None,
) -> ProviderHolding:
    """Build a canonical holding with sensible defaults."""
    return ProviderHolding(
        symbol=symbol,
        name=f"{symbol} Ltd",
        asset_type=asset_type,
        quantity=Decimal(quantity),
        avg_price=Decimal(avg_price),
        last_price=Decimal(last_price),
        broker=broker,
    )


@pytest.fixture
def claimed_session(db):
    """A valid session owned by user-1."""
    return create_broker_session(db, user_id="user-1")


@pytest.fixture
def pending_session(db):
    """A valid orphan session waiting to be claimed."""
    return create_broker_session(db, access_token="orphan-access-token")


@pytest.fixture
def expired_session(db):
    """An expired session owned by user-1."""
    return create_broker_session(
        db, user_id="user-1", access_token="expired-token",
        expires_at=utcnow() - timedelta(hours=1),
    )
