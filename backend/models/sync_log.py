"""SyncLogEntry model - append-only record of every sync/upload outcome."""

from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text

from database import Base
from models.utils import generate_uuid, utcnow


class SyncStatus(str, Enum):
    """Outcome recorded for a source."""

    SUCCESS = "success"
    ERROR = "error"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SyncLogEntry(Base):
    """A log entry recording the result of one sync, upload or connection event.

    Rows are only ever inserted.
    """

    __tablename__ = "sync_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=True, index=True)  # None for orphan OAuth flows
    source = Column(String, nullable=False)
    status = Column(String, nullable=False)  # SyncStatus value
    holdings_count = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
