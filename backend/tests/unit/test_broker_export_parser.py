"""Tests for broker holdings export parsing."""

from decimal import Decimal

import pytest

from integrations.provider_protocol import AssetType
from services.ingestion_errors import HeaderNotFoundError, InvalidFileError, MissingColumnError
from services.spreadsheet_ingestion import (
    BROKER_EXPORT_COLUMN_RULES,
    BrokerExportParser,
    find_broker_header_row,
    map_columns,
)
from tests.fixtures.workbooks import BROKER_EXPORT_ROWS, build_csv, build_xlsx


@pytest.fixture
def parser():
    return BrokerExportParser(max_rows=100, timeout_seconds=30)


class TestBrokerHeader:
    def test_header_row_found(self):
        assert find_broker_header_row(BROKER_EXPORT_ROWS) == 2

    def test_columns(self):
        columns = map_columns(BROKER_EXPORT_ROWS[2], BROKER_EXPORT_COLUMN_RULES)
        assert columns == {"symbol": 0, "isin": 1, "quantity": 2, "avg_price": 3, "last_price": 4}

    def test_no_header(self):
        with pytest.raises(HeaderNotFoundError):
            find_broker_header_row([["Portfolio"], ["Symbol", "Price"]])


class TestBrokerExportParser:
    def test_parses_export(self, parser):
        result = parser.parse(build_xlsx(BROKER_EXPORT_ROWS), "holdings.xlsx", "Upstox")

        assert [h.symbol for h in result.holdings] == ["INFY", "NIFTYBEES", "SGBMAR29"]
        assert [(s.row_number, s.reason) for s in result.skipped] == [
            (7, "Invalid quantity"),
            (8, "Missing symbol"),
        ]
        assert result.summary.header_row == 3
        assert all(h.broker == "Upstox" for h in result.holdings)

    def test_holding_values(self, parser):
        result = parser.parse(build_xlsx(BROKER_EXPORT_ROWS), "holdings.xlsx", "Upstox")
        infy, niftybees, sgb = result.holdings

        assert infy.name == "INFY"
        assert infy.asset_type == AssetType.EQUITY
        assert infy.quantity == Decimal("10")
        assert infy.avg_price == Decimal("1450.50")
        assert infy.last_price == Decimal("1520.10")
        assert infy.isin == "INE009A01021"
        assert infy.exchange == "NSE"

        # Blank LTP falls back to the average price
        assert niftybees.asset_type == AssetType.ETF
        assert niftybees.last_price == Decimal("210.4")

        assert sgb.asset_type == AssetType.SGB

    def test_csv(self, parser):
        result = parser.parse(build_csv(BROKER_EXPORT_ROWS), "holdings.csv", "Groww", "text/csv")
        assert [h.symbol for h in result.holdings] == ["INFY", "NIFTYBEES", "SGBMAR29"]

    def test_name_column_used_as_symbol(self, parser):
        rows = [
            ["Stock Name", "Quantity", "Average Price", "Current Price"],
            ["Tata Motors", 15, 620, 700],
        ]
        result = parser.parse(build_xlsx(rows), "h.xlsx", "Groww")

        holding = result.holdings[0]
        assert holding.symbol == "TATA MOTORS"
        assert holding.name == "Tata Motors"
        assert holding.sector == "Auto"
        assert holding.last_price == Decimal("700")

    def test_missing_quantity_column(self, parser):
        rows = [["Symbol", "Avg Price", "LTP"], ["INFY", 100, 110]]
        with pytest.raises(HeaderNotFoundError):
            parser.parse(build_xlsx(rows), "h.xlsx", "Groww")

    def test_missing_symbol_column(self, parser):
        rows = [["Scrip Qty", "Avg Price"], [10, 100]]
        with pytest.raises(MissingColumnError) as exc_info:
            parser.parse(build_xlsx(rows), "h.xlsx", "Groww")
        assert exc_info.value.column == "Symbol"

    def test_broker_required(self, parser):
        with pytest.raises(InvalidFileError):
            parser.parse(build_xlsx(BROKER_EXPORT_ROWS), "h.xlsx", "   ")
