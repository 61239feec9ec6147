"""QuoteCache model - last seen broker quote per symbol."""


from sqlalchemy import BigInteger, Column, DateTime, Numeric, String

from database import Base
from models.utils import generate_uuid, utcnow


class QuoteCache(Base):
    """Latest quote fetched from the broker for a trading symbol."""

    __tablename__ = "quotes_cache"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    symbol = Column(String, nullable=False, unique=True)
    last_price = Column(Numeric(18, 4), nullable=False)
    change_percent = Column(Numeric(10, 4), nullable=True)
    volume = Column(BigInteger, nullable=True)
    source = Column(String, nullable=False)
    fetched_at = Column(DateTime, default=utcnow)
