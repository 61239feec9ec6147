"""Holding model - one canonical position within a holdings batch."""

from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class Holding(Base):
    """A normalized position, independent of where it came from.

    Rows are written once by the reconciler and never updated field by
    field; a new ingestion produces a new batch instead.
    """

    __tablename__ = "holdings"
    __table_args__ = (
        Index("ix_holdings_user_source", "user_id", "source"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    batch_id = Column(
        String(36), ForeignKey("holding_batches.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = Column(String, nullable=False)
    source = Column(String, nullable=False)  # e.g. "Zerodha", "INDMoney"
    broker_account = Column(String, nullable=True)  # Broker / platform the position sits with
    symbol = Column(String, nullable=False)
    name = Column(String, nullable=False)
    asset_type = Column(String, nullable=False)  # AssetType value
    sector = Column(String, nullable=False, default="Other")
    quantity = Column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    avg_price = Column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    last_price = Column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    exchange = Column(String, nullable=False, default="NSE")
    isin = Column(String, nullable=True)
    xirr = Column(Numeric(10, 4), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    batch = relationship("HoldingBatch", back_populates="holdings")

    @property
    def invested_value(self) -> Decimal:
        return (self.quantity or Decimal("0")) * (self.avg_price or Decimal("0"))

    @property
    def current_value(self) -> Decimal:
        return (self.quantity or Decimal("0")) * (self.last_price or Decimal("0"))
