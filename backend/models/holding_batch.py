"""HoldingBatch model - one ingestion of holdings for a (user, source) pair."""


from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class HoldingBatch(Base):
    """A complete set of holdings produced by a single sync or upload.

    Exactly one batch per (user_id, source) is current at a time. New
    batches are written as non-current and swapped in once every row has
    been inserted.
    """

    __tablename__ = "holding_batches"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=False, index=True)
    source = Column(String, nullable=False)
    is_current = Column(Boolean, nullable=False, default=False)
    holdings_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    activated_at = Column(DateTime, nullable=True)

    holdings = relationship(
        "Holding", back_populates="batch", cascade="all, delete-orphan",
    )
