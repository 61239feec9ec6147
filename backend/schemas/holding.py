"""Pydantic schemas for holdings and holdings uploads."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


class HoldingResponse(BaseModel):
    """A stored canonical holding."""

    id: str
    source: str
    broker_account: Optional[str] = None
    symbol: str
    name: str
    asset_type: str
    sector: str
    quantity: Decimal
    avg_price: Decimal
    last_price: Decimal
    exchange: str
    isin: Optional[str] = None
    xirr: Optional[Decimal] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SkippedRowResponse(BaseModel):
    """A spreadsheet row that was not imported, with the reason."""

    row_number: int
    reason: str


class ParseSummaryResponse(BaseModel):
    sheet_name: str
    header_row: int
    total_rows: int
    parsed: int
    skipped: int
    total_invested: Decimal
    total_market_value: Decimal
    processing_time_ms: int

    model_config = ConfigDict(from_attributes=True)


class UploadResponse(BaseModel):
    """Result of importing a holdings file."""

    success: bool
    source: str
    holdings_count: int
    skipped_count: int
    skipped: list[SkippedRowResponse]
    warnings: list[str]
    processing_time_ms: int
    summary: ParseSummaryResponse
    message: str
