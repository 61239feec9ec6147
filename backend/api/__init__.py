"""API route handlers."""
from . import holdings, kite, sync

__all__ = ["holdings", "kite", "sync"]
