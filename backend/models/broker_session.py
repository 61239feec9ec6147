"""BrokerSession model - a Kite Connect access session."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text

from database import Base
from integrations.parsing_utils import ensure_utc
from models.utils import generate_uuid, utcnow


class SessionStatus(str, Enum):
    """Ownership state of a broker session.

    A session is created PENDING when the OAuth callback could not tell which
    user started the login, and becomes CLAIMED once a user id is attached.
    """

    PENDING = "pending"
    CLAIMED = "claimed"


class BrokerSession(Base):
    """A broker access credential, optionally owned by an application user.

    ``status`` and ``user_id`` move together: PENDING rows have no owner,
    CLAIMED rows always do. ``version`` is bumped on every ownership change
    and is the compare-and-swap token used when claiming.
    """

    __tablename__ = "broker_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    broker = Column(String, nullable=False, default="Zerodha")
    user_id = Column(String, nullable=True, index=True)
    broker_user_id = Column(String, nullable=True)  # Kite client id, e.g. "AB1234"
    access_token = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=SessionStatus.PENDING.value)
    version = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    claimed_at = Column(DateTime, nullable=True)

    @property
    def is_pending(self) -> bool:
        return self.status == SessionStatus.PENDING.value

    def is_valid(self, now: datetime | None = None) -> bool:
        """Return True if the session has not yet expired."""
        now = now or utcnow()
        return ensure_utc(self.expires_at) > ensure_utc(now)

    def __repr__(self) -> str:
        # Never include the access token
        return (
            f"<BrokerSession id={self.id} status={self.status} "
            f"user_id={self.user_id} expires_at={self.expires_at}>"
        )
