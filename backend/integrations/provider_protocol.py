"""Normalized data types shared by the broker integration and file ingestion.

Both ingestion paths (the live Kite API and uploaded holdings files) map
their untrusted input to :class:`ProviderHolding` before anything is
written to the database.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class AssetType(str, Enum):
    """Canonical asset taxonomy stored on every holding."""

    EQUITY = "Equity"
    ETF = "ETF"
    REIT = "REIT"
    SGB = "SGB"
    MUTUAL_FUND = "Mutual Fund"
    DEBT_MF = "Debt MF"
    COMMODITY_MF = "Commodity MF"
    US_STOCK = "US Stock"
    NPS = "NPS"
    EPF = "EPF"
    PPF = "PPF"
    BOND = "Bond"
    COMMODITY = "Commodity"
    INDEX = "Index"
    OTHER = "Other"

    @property
    def is_retirement(self) -> bool:
        """Government retirement schemes (no broker, no market price)."""
        return self in RETIREMENT_TYPES

    @property
    def is_mutual_fund(self) -> bool:
        return self in MUTUAL_FUND_TYPES


RETIREMENT_TYPES = frozenset({AssetType.NPS, AssetType.EPF, AssetType.PPF})
MUTUAL_FUND_TYPES = frozenset(
    {AssetType.MUTUAL_FUND, AssetType.DEBT_MF, AssetType.COMMODITY_MF}
)


@dataclass
class KiteHolding:
    """One entry of the Kite ``/portfolio/holdings`` response."""

    tradingsymbol: str
    exchange: str
    quantity: Decimal  # settled + T1 quantity
    average_price: Decimal
    last_price: Decimal
    isin: str | None = None
    raw_data: dict | None = None  # Raw broker response for debugging


@dataclass
class KiteQuote:
    """Last traded price data from the Kite ``/quote`` endpoint."""

    instrument: str  # "EXCHANGE:TRADINGSYMBOL"
    last_price: Decimal
    change_percent: Decimal | None = None
    volume: int | None = None


@dataclass
class KiteSessionToken:
    """Result of exchanging a request token for an access token."""

    access_token: str
    broker_user_id: str | None = None


@dataclass
class ProviderHolding:
    """Canonical holding produced by every ingestion path.

    Quantities and prices are finite Decimals; ``quantity`` is strictly
    positive and both prices are non-negative by the time a holding
    reaches the reconciler.
    """

    symbol: str
    name: str
    asset_type: AssetType
    quantity: Decimal
    avg_price: Decimal
    last_price: Decimal
    sector: str = "Other"
    exchange: str = "NSE"
    broker: str | None = None  # Broker name reported in the source file
    isin: str | None = None
    xirr: Decimal | None = None
    raw_data: dict | None = field(default=None, repr=False)

    @property
    def invested_value(self) -> Decimal:
        return self.quantity * self.avg_price

    @property
    def current_value(self) -> Decimal:
        return self.quantity * self.last_price
