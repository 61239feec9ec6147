"""Holdings file ingestion - turn uploaded spreadsheets into canonical holdings.

Two layouts are supported:

- :class:`HoldingsStatementParser` reads aggregator-style holdings
  statements (one row per investment with an asset type, broker, units,
  invested amount and market value), such as the INDMoney export.
- :class:`BrokerExportParser` reads a plain broker holdings export
  (symbol, quantity, average price, LTP) for a broker named by the user.

Both accept .xlsx (openpyxl), .xls (xlrd) and .csv files. Rows that cannot
be used are skipped individually and reported with their 1-based sheet row
number; only file-level problems raise.
"""

import csv
import io
import logging
import re
import time
import zipfile
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Callable, Iterable, Sequence

import xlrd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from config import settings
from integrations.parsing_utils import clean_string, parse_number, parse_percentage
from integrations.provider_protocol import ProviderHolding
from services.classification_service import (
    classify_asset_type,
    classify_broker_symbol,
    classify_sector,
    guess_exchange,
)
from services.ingestion_errors import (
    HeaderNotFoundError,
    InvalidFileError,
    MissingColumnError,
    TooManyRowsError,
)
from utils.deadline import Clock, Deadline

logger = logging.getLogger(__name__)

ACCEPTED_EXTENSIONS = (".xlsx", ".xls", ".csv")

ACCEPTED_CONTENT_TYPES = frozenset({
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
    "text/csv",
    "application/csv",
    "text/plain",
    # Browsers fall back to this when they do not know the extension
    "application/octet-stream",
})

SHEET_NAME_PATTERN = re.compile(r"holding|portfolio|investment", re.IGNORECASE)

_READ_ERRORS = (
    InvalidFileException,
    zipfile.BadZipFile,
    xlrd.XLRDError,
    csv.Error,
    KeyError,
    ValueError,
    OSError,
)

_QUANTITY_PLACES = Decimal("0.000001")
_PRICE_PLACES = Decimal("0.0001")
_CODE_RE = re.compile(r"^[A-Z0-9][A-Z0-9.&_-]{1,29}$")
_ISIN_RE = re.compile(r"^[A-Z]{2}[A-Z0-9]{9}[0-9]$")


@dataclass
class SkippedRow:
    row_number: int  # 1-based row in the sheet
    reason: str


@dataclass
class ParseSummary:
    sheet_name: str
    header_row: int  # 1-based
    total_rows: int  # non-blank data rows
    parsed: int
    skipped: int
    total_invested: Decimal
    total_market_value: Decimal
    processing_time_ms: int


@dataclass
class ParseResult:
    holdings: list[ProviderHolding] = field(default_factory=list)
    skipped: list[SkippedRow] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    summary: ParseSummary | None = None


@dataclass(frozen=True)
class ColumnRule:
    """Header synonyms for one canonical column, as regexes over normalized text."""

    field: str
    patterns: tuple[str, ...]


# Evaluated per header cell, top to bottom; a column is assigned to the
# first rule that matches and has not been assigned yet.
COLUMN_RULES: list[ColumnRule] = [
    ColumnRule("isin", (r"\bisin\b",)),
    ColumnRule("asset_type", (r"asset (type|class)", r"^type$", r"^asset$", r"instrument type")),
    ColumnRule("category", (r"sub ?category", r"^category$", r"fund category", r"^sector$")),
    ColumnRule("xirr", (r"\bxirr\b", r"annuali[sz]ed return")),
    ColumnRule("broker", (r"broker", r"platform", r"^dp\b", r"held (with|at)", r"demat")),
    ColumnRule(
        "invested",
        (
            r"invested", r"investment (amount|value)", r"amount invested",
            r"total cost", r"cost value", r"buy value", r"purchase value",
        ),
    ),
    ColumnRule("market_value", (r"market value", r"current value", r"present value", r"valuation")),
    ColumnRule(
        "avg_price",
        (r"\bavg\b.*(price|cost|nav)", r"average.*(price|cost|nav)", r"buy price", r"purchase (price|nav)"),
    ),
    ColumnRule("last_price", (r"\bltp\b", r"current (price|nav)", r"market price", r"last price", r"\bnav\b")),
    ColumnRule("quantity", (r"units", r"quantity", r"\bqty\b", r"shares")),
    ColumnRule("code", (r"investment code", r"symbol", r"ticker", r"scheme code", r"\bcode\b")),
    ColumnRule(
        "name",
        (
            r"investment name", r"^investment$", r"(stock|fund|scheme|security|company) name",
            r"^(name|stock|fund|scheme|security|instrument)$", r"description",
        ),
    ),
]

REQUIRED_COLUMNS: dict[str, str] = {
    "asset_type": "Asset Type",
    "name": "Investment Name",
    "broker": "Broker",
}

BROKER_EXPORT_COLUMN_RULES: list[ColumnRule] = [
    ColumnRule("isin", (r"\bisin\b",)),
    ColumnRule("quantity", (r"\bqty\b", r"quantity", r"units", r"shares")),
    ColumnRule("avg_price", (r"\bavg\b", r"average", r"buy price", r"purchase price", r"\bcost\b")),
    ColumnRule(
        "last_price",
        (r"\bltp\b", r"last (traded )?price", r"current price", r"market price", r"\bclos(e|ing)\b", r"^cmp$"),
    ),
    ColumnRule("symbol", (r"symbol", r"^scrip$", r"^stock$", r"^instrument$", r"ticker", r"^security$")),
    ColumnRule("name", (r"name", r"company", r"description")),
]

# Header-row signals for each layout
_STATEMENT_SIGNALS = (
    r"asset (type|class)",
    r"investment|stock|fund|scheme",
    r"units|quantity|\bqty\b",
    r"amount|value",
)
_BROKER_SYMBOL_SIGNAL = r"symbol|scrip|stock|instrument|ticker|security"
_BROKER_QUANTITY_SIGNAL = r"\bqty\b|quantity|units|shares"


class _SkipRow(Exception):
    """Raised inside row parsing to skip the current row with a reason."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def check_upload(
    file_bytes: bytes,
    file_name: str,
    content_type: str | None = None,
    max_bytes: int | None = None,
) -> str:
    """Apply the size/extension/MIME gate to an upload.

    Returns:
        The lowercase file extension.

    Raises:
        InvalidFileError: With status 400 (empty), 413 (too large) or 415
            (unsupported type).
    """
    max_bytes = max_bytes or settings.UPLOAD_MAX_BYTES
    if not file_bytes:
        raise InvalidFileError("File is empty")
    if len(file_bytes) > max_bytes:
        raise InvalidFileError(
            f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB",
            status_code=413,
        )

    extension = Path(file_name or "").suffix.lower()
    if extension not in ACCEPTED_EXTENSIONS:
        raise InvalidFileError(
            "Unsupported file type. Upload an .xlsx, .xls or .csv file",
            status_code=415,
        )

    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime and mime not in ACCEPTED_CONTENT_TYPES:
            raise InvalidFileError(f"Unsupported content type: {mime}", status_code=415)
    return extension


def normalize_header(value) -> str:
    """Lowercase a header cell and reduce punctuation to single spaces."""
    text = clean_string(value, max_length=100).lower()
    return re.sub(r"[^a-z0-9%]+", " ", text).strip()


def map_columns(header: Sequence, rules: list[ColumnRule]) -> dict[str, int]:
    """Map canonical column names to indexes in ``header``."""
    mapping: dict[str, int] = {}
    for index, cell in enumerate(header):
        text = normalize_header(cell)
        if not text:
            continue
        for rule in rules:
            if rule.field in mapping:
                continue
            if any(re.search(p, text) for p in rule.patterns):
                mapping[rule.field] = index
                break
    return mapping


def _row_text(row: Sequence) -> str:
    return " ".join(normalize_header(c) for c in row if c is not None)


def _is_blank(row: Sequence) -> bool:
    return all(clean_string(c) == "" for c in row)


def find_header_row(rows: list[Sequence], scan_rows: int = 20) -> int:
    """Index of the statement header row within the first ``scan_rows`` rows.

    A row qualifies when at least two of the four header signals (asset
    type, investment name, units, amount/value) appear in its text; the
    earliest row with the most signals wins.

    Raises:
        HeaderNotFoundError: If no row qualifies.
    """
    best_index, best_score = -1, 1
    for index, row in enumerate(rows[:scan_rows]):
        text = _row_text(row)
        if not text:
            continue
        score = sum(1 for signal in _STATEMENT_SIGNALS if re.search(signal, text))
        if score > best_score:
            best_index, best_score = index, score
    if best_index < 0:
        raise HeaderNotFoundError(
            "Could not find the header row. Expected columns such as "
            "Asset Type, Investment Name, Units and Market Value"
        )
    return best_index


def find_broker_header_row(rows: list[Sequence], scan_rows: int = 15) -> int:
    """Index of the first row with both a symbol and a quantity header."""
    for index, row in enumerate(rows[:scan_rows]):
        text = _row_text(row)
        if re.search(_BROKER_SYMBOL_SIGNAL, text) and re.search(_BROKER_QUANTITY_SIGNAL, text):
            return index
    raise HeaderNotFoundError(
        "Could not find header row. Expected columns: Symbol, Name/Stock, "
        "Quantity/Qty, Avg Price/Buy Avg, LTP/Current Price"
    )


def _to_decimal(value: float, places: Decimal) -> Decimal:
    return Decimal(str(value)).quantize(places, rounding=ROUND_HALF_UP)


def _cell(row: Sequence, columns: dict[str, int], name: str):
    index = columns.get(name)
    if index is None or index >= len(row):
        return None
    return row[index]


class _SpreadsheetParser:
    """Shared gate, loading and bookkeeping for both layouts."""

    header_scan_rows = 20

    def __init__(
        self,
        max_rows: int | None = None,
        timeout_seconds: float | None = None,
        max_bytes: int | None = None,
        clock: Clock = time.monotonic,
    ):
        self.max_rows = max_rows or settings.PARSE_MAX_ROWS
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.PARSE_TIMEOUT_SECONDS
        )
        self.max_bytes = max_bytes or settings.UPLOAD_MAX_BYTES
        self._clock = clock

    def _deadline(self, deadline: Deadline | None) -> Deadline:
        if deadline is None:
            return Deadline(self.timeout_seconds, self._clock)
        return deadline.child(self.timeout_seconds)

    def _load(
        self,
        file_bytes: bytes,
        file_name: str,
        content_type: str | None,
        deadline: Deadline,
        pick_sheet: Callable[[list[str]], str],
    ) -> tuple[str, list[list]]:
        extension = check_upload(file_bytes, file_name, content_type, self.max_bytes)
        # Enough rows to prove the limit is exceeded without reading a huge sheet
        row_cap = self.header_scan_rows + self.max_rows + 1
        try:
            if extension == ".xlsx":
                return self._read_xlsx(file_bytes, pick_sheet, row_cap, deadline)
            if extension == ".xls":
                return self._read_xls(file_bytes, pick_sheet, row_cap, deadline)
            return self._read_csv(file_bytes, file_name, row_cap, deadline)
        except _READ_ERRORS as exc:
            logger.info("Unreadable upload %r: %s", file_name, type(exc).__name__)
            raise InvalidFileError("Could not read the file. Is it a valid spreadsheet?") from exc

    @staticmethod
    def _collect(rows: Iterable[Sequence], row_cap: int, deadline: Deadline) -> list[list]:
        collected: list[list] = []
        non_blank = 0
        for row in rows:
            deadline.check()
            values = list(row)
            collected.append(values)
            if not _is_blank(values):
                non_blank += 1
                if non_blank > row_cap:
                    break
        return collected

    def _read_xlsx(self, file_bytes, pick_sheet, row_cap, deadline):
        workbook = load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
        try:
            if not workbook.sheetnames:
                raise InvalidFileError("Workbook has no sheets")
            sheet_name = pick_sheet(workbook.sheetnames)
            sheet = workbook[sheet_name]
            return sheet_name, self._collect(sheet.iter_rows(values_only=True), row_cap, deadline)
        finally:
            workbook.close()

    def _read_xls(self, file_bytes, pick_sheet, row_cap, deadline):
        book = xlrd.open_workbook(file_contents=file_bytes)
        names = book.sheet_names()
        if not names:
            raise InvalidFileError("Workbook has no sheets")
        sheet_name = pick_sheet(names)
        sheet = book.sheet_by_name(sheet_name)
        rows = (sheet.row_values(i) for i in range(sheet.nrows))
        return sheet_name, self._collect(rows, row_cap, deadline)

    def _read_csv(self, file_bytes, file_name, row_cap, deadline):
        try:
            text = file_bytes.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = file_bytes.decode("latin-1")
        sheet_name = Path(file_name).stem or "CSV"
        return sheet_name, self._collect(csv.reader(io.StringIO(text)), row_cap, deadline)

    def _data_rows(self, rows: list[list], header_index: int) -> list[tuple[int, list]]:
        data = [
            (index + 1, row)
            for index, row in enumerate(rows)
            if index > header_index and not _is_blank(row)
        ]
        if len(data) > self.max_rows:
            raise TooManyRowsError(self.max_rows)
        return data

    def _run_rows(
        self,
        data: list[tuple[int, list]],
        parse_row: Callable[[int, list, list[str]], ProviderHolding],
        deadline: Deadline,
        result: ParseResult,
    ) -> None:
        for row_number, row in data:
            deadline.check()
            try:
                result.holdings.append(parse_row(row_number, row, result.warnings))
            except _SkipRow as skip:
                result.skipped.append(SkippedRow(row_number, skip.reason))
            except (ArithmeticError, ValueError):
                logger.debug("Row %d could not be parsed", row_number, exc_info=True)
                result.skipped.append(SkippedRow(row_number, "Could not parse row"))

    @staticmethod
    def _validate(holding: ProviderHolding, row_number: int, warnings: list[str]) -> ProviderHolding:
        if len(holding.symbol) < 2 or len(holding.name) < 2:
            raise _SkipRow("Symbol and name must be at least 2 characters")
        if holding.quantity <= 0:
            raise _SkipRow("Quantity must be positive")
        if holding.avg_price < 0 or holding.last_price < 0:
            raise _SkipRow("Prices must not be negative")
        if holding.avg_price == 0 and holding.last_price == 0:
            warnings.append(f"Row {row_number}: {holding.name} has zero average and current price")
        return holding

    @staticmethod
    def _check_aggregates(result: ParseResult) -> None:
        rows_by_symbol: dict[str, int] = {}
        for holding in result.holdings:
            rows_by_symbol[holding.symbol] = rows_by_symbol.get(holding.symbol, 0) + 1
        for symbol, count in rows_by_symbol.items():
            if count > 1:
                result.warnings.append(f"Duplicate symbol {symbol} appears {count} times")

        if result.holdings and sum(h.invested_value for h in result.holdings) == 0:
            result.warnings.append("Total invested value is zero")

    def _finish(
        self,
        result: ParseResult,
        sheet_name: str,
        header_index: int,
        total_rows: int,
        started: float,
    ) -> ParseResult:
        self._check_aggregates(result)
        result.summary = ParseSummary(
            sheet_name=sheet_name,
            header_row=header_index + 1,
            total_rows=total_rows,
            parsed=len(result.holdings),
            skipped=len(result.skipped),
            total_invested=sum((h.invested_value for h in result.holdings), Decimal("0")),
            total_market_value=sum((h.current_value for h in result.holdings), Decimal("0")),
            processing_time_ms=int((self._clock() - started) * 1000),
        )
        logger.info(
            "Parsed sheet %r: %d holdings, %d skipped, %d warnings",
            sheet_name, len(result.holdings), len(result.skipped), len(result.warnings),
        )
        return result


def _pick_statement_sheet(names: list[str]) -> str:
    for name in names:
        if SHEET_NAME_PATTERN.search(name):
            return name
    return names[0]


def _synthetic_symbol(code: str, name: str) -> str:
    """Symbol from a well-formed investment code, else from the name."""
    code = code.upper().replace(" ", "")
    if code and _CODE_RE.match(code):
        return code
    return re.sub(r"[^A-Z0-9]+", "_", name.upper()).strip("_")[:20].rstrip("_")


class HoldingsStatementParser(_SpreadsheetParser):
    """Parse an aggregator holdings statement into canonical holdings.

    Args:
        max_rows: Maximum data rows (defaults to ``PARSE_MAX_ROWS``)
        timeout_seconds: Processing budget (defaults to ``PARSE_TIMEOUT_SECONDS``)
        max_bytes: Upload size limit (defaults to ``UPLOAD_MAX_BYTES``)
        clock: Monotonic clock (tests pass a fake)
    """

    header_scan_rows = 20

    def parse(
        self,
        file_bytes: bytes,
        file_name: str,
        content_type: str | None = None,
        deadline: Deadline | None = None,
    ) -> ParseResult:
        """Parse a holdings statement.

        Raises:
            InvalidFileError: The file failed the gate or could not be read.
            HeaderNotFoundError: No header row in the first 20 rows.
            MissingColumnError: A required column is not present.
            TooManyRowsError: More data rows than ``max_rows``.
            ProcessingTimeoutError: The processing budget ran out.
        """
        started = self._clock()
        budget = self._deadline(deadline)
        sheet_name, rows = self._load(
            file_bytes, file_name, content_type, budget, _pick_statement_sheet,
        )

        header_index = find_header_row(rows, self.header_scan_rows)
        columns = map_columns(rows[header_index], COLUMN_RULES)
        for column, label in REQUIRED_COLUMNS.items():
            if column not in columns:
                raise MissingColumnError(label)
        if not {"quantity", "invested", "market_value"} & columns.keys():
            raise MissingColumnError("Units / Invested Amount / Market Value")
        logger.debug("Statement header at row %d: %s", header_index + 1, columns)

        data = self._data_rows(rows, header_index)
        result = ParseResult()

        def parse_row(row_number: int, row: list, warnings: list[str]) -> ProviderHolding:
            return self._parse_row(row_number, row, columns, warnings)

        self._run_rows(data, parse_row, budget, result)
        return self._finish(result, sheet_name, header_index, len(data), started)

    def _parse_row(
        self, row_number: int, row: list, columns: dict[str, int], warnings: list[str]
    ) -> ProviderHolding:
        declared = clean_string(_cell(row, columns, "asset_type"))
        name = clean_string(_cell(row, columns, "name"))
        if not declared or not name:
            raise _SkipRow("Missing asset type or investment name")

        quantity = parse_number(_cell(row, columns, "quantity"))
        invested = parse_number(_cell(row, columns, "invested"))
        market_value = parse_number(_cell(row, columns, "market_value"))
        avg_price = parse_number(_cell(row, columns, "avg_price"))
        last_price = parse_number(_cell(row, columns, "last_price"))

        if not invested and quantity and avg_price:
            invested = quantity * avg_price
        if not market_value and quantity and last_price:
            market_value = quantity * last_price
        if quantity == 0 and invested == 0 and market_value == 0:
            raise _SkipRow("Zero quantity, invested amount and market value")

        category = clean_string(_cell(row, columns, "category"))
        asset_type = classify_asset_type(declared, name, category)

        broker = clean_string(_cell(row, columns, "broker"))
        if not broker:
            if not asset_type.is_retirement:
                raise _SkipRow("Missing broker")
            broker = asset_type.value

        if quantity > 0:
            avg = invested / quantity if invested else avg_price
            current = market_value / quantity if market_value else (last_price or avg)
        elif quantity == 0 and asset_type.is_retirement:
            # Lump-sum accounts (EPF/PPF/NPS) report amounts without units
            quantity = 1
            avg = invested
            current = market_value or invested
        else:
            avg, current = avg_price, last_price

        isin = clean_string(_cell(row, columns, "isin")).upper()
        isin = isin if _ISIN_RE.match(isin) else None
        symbol = _synthetic_symbol(clean_string(_cell(row, columns, "code")), name)
        xirr = parse_percentage(_cell(row, columns, "xirr"))

        holding = ProviderHolding(
            symbol=symbol,
            name=name,
            asset_type=asset_type,
            quantity=_to_decimal(quantity, _QUANTITY_PLACES),
            avg_price=_to_decimal(avg, _PRICE_PLACES),
            last_price=_to_decimal(current, _PRICE_PLACES),
            sector=classify_sector(name, symbol, category, default="Diversified"),
            exchange=guess_exchange(asset_type, isin),
            broker=broker,
            isin=isin,
            xirr=_to_decimal(xirr, _PRICE_PLACES) if xirr is not None else None,
            raw_data={"row": row_number},
        )
        return self._validate(holding, row_number, warnings)


class BrokerExportParser(_SpreadsheetParser):
    """Parse a broker's own holdings export (symbol / qty / avg / LTP)."""

    header_scan_rows = 15

    def parse(
        self,
        file_bytes: bytes,
        file_name: str,
        broker: str,
        content_type: str | None = None,
        deadline: Deadline | None = None,
    ) -> ParseResult:
        """Parse a broker export. Raises the same errors as the statement parser."""
        broker = clean_string(broker, max_length=64)
        if not broker:
            raise InvalidFileError("Broker name is required")

        started = self._clock()
        budget = self._deadline(deadline)
        sheet_name, rows = self._load(
            file_bytes, file_name, content_type, budget, lambda names: names[0],
        )

        header_index = find_broker_header_row(rows, self.header_scan_rows)
        columns = map_columns(rows[header_index], BROKER_EXPORT_COLUMN_RULES)
        if "symbol" not in columns:
            if "name" not in columns:
                raise MissingColumnError("Symbol")
            columns["symbol"] = columns["name"]
        if "quantity" not in columns:
            raise MissingColumnError("Quantity")

        data = self._data_rows(rows, header_index)
        result = ParseResult()

        def parse_row(row_number: int, row: list, warnings: list[str]) -> ProviderHolding:
            return self._parse_row(row_number, row, columns, broker, warnings)

        self._run_rows(data, parse_row, budget, result)
        return self._finish(result, sheet_name, header_index, len(data), started)

    def _parse_row(
        self,
        row_number: int,
        row: list,
        columns: dict[str, int],
        broker: str,
        warnings: list[str],
    ) -> ProviderHolding:
        symbol = clean_string(_cell(row, columns, "symbol"), max_length=64).upper()
        if not symbol:
            raise _SkipRow("Missing symbol")
        name = clean_string(_cell(row, columns, "name")) or symbol

        quantity = parse_number(_cell(row, columns, "quantity"))
        if quantity <= 0:
            raise _SkipRow("Invalid quantity")
        avg_price = round(parse_number(_cell(row, columns, "avg_price")), 2)
        last_price = round(parse_number(_cell(row, columns, "last_price")), 2) or avg_price

        isin = clean_string(_cell(row, columns, "isin")).upper()
        isin = isin if _ISIN_RE.match(isin) else None
        asset_type = classify_broker_symbol(symbol)

        holding = ProviderHolding(
            symbol=symbol,
            name=name,
            asset_type=asset_type,
            quantity=_to_decimal(quantity, _QUANTITY_PLACES),
            avg_price=_to_decimal(avg_price, _PRICE_PLACES),
            last_price=_to_decimal(last_price, _PRICE_PLACES),
            sector=classify_sector(name, symbol),
            exchange=guess_exchange(asset_type, isin),
            broker=broker,
            isin=isin,
            raw_data={"row": row_number},
        )
        return self._validate(holding, row_number, warnings)

