"""SQLAlchemy ORM models."""

from .broker_session import BrokerSession, SessionStatus
from .holding import Holding
from .holding_batch import HoldingBatch
from .quote_cache import QuoteCache
from .sync_log import SyncLogEntry, SyncStatus
from .utils import generate_uuid

__all__ = ["BrokerSession", "Holding", "HoldingBatch", "QuoteCache", "SessionStatus", "SyncLogEntry", "SyncStatus", "generate_uuid"]
