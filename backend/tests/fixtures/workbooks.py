"""Builders for in-memory spreadsheet uploads."""

import csv
import io

from openpyxl import Workbook

STATEMENT_HEADER = [
    "Asset Type", "Investment Name", "Investment Code", "Broker",
    "Units", "Invested Amount", "Market Value", "XIRR",
]

# Ten data rows: seven importable, three skipped for three different reasons
STATEMENT_ROWS = [
    ["Stocks", "Infosys Ltd", "INFY", "Zerodha", 10, 15000, 18000, "12.5%"],
    ["Mutual Fund", "Parag Parikh Flexi Cap Fund Direct Growth", None, "Groww", 250.5, 12000, 15500, "18.2%"],
    ["EPF", "Employees Provident Fund", None, None, None, 500000, 550000, None],
    ["Stocks", None, "XYZ", "Zerodha", 5, 1000, 1200, None],
    ["Mutual Fund", "HDFC Liquid Fund", None, "Kuvera", 0, 0, 0, None],
    ["Stocks", "Tata Consultancy Services", "TCS", None, 5, 17000, 19000, None],
    ["ETF", "Nippon India Gold BeES", "GOLDBEES", "Zerodha", 100, 4500, 5200, None],
    ["US Stocks", "Apple Inc", "AAPL", "INDMoney", 2, 30000, 36000, None],
    ["SGB", "Sovereign Gold Bond 2023 Series I", "SGBDEC31", "Zerodha", 10, 60000, 65000, None],
    ["PPF", "Public Provident Fund", None, None, None, 150000, 165000, None],
]

# Title rows, a blank row, then the header on sheet row 4
STATEMENT_PREAMBLE = [
    ["INDMoney Holdings Statement"],
    ["Generated for Test User"],
    [],
]


def build_xlsx(rows: list[list], sheet_name: str = "Holdings", extra_sheets: tuple[str, ...] = ()) -> bytes:
    """Serialize rows to an .xlsx workbook.

    ``extra_sheets`` are created (empty) before the data sheet.
    """
    workbook = Workbook()
    first = workbook.active
    if extra_sheets:
        first.title = extra_sheets[0]
        first.append(["Nothing to see here"])
        for name in extra_sheets[1:]:
            workbook.create_sheet(name).append(["Nothing to see here"])
        sheet = workbook.create_sheet(sheet_name)
    else:
        first.title = sheet_name
        sheet = first
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def build_csv(rows: list[list]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    for row in rows:
        writer.writerow(["" if v is None else v for v in row])
    return buffer.getvalue().encode("utf-8")


def statement_rows(data: list[list] | None = None) -> list[list]:
    """Preamble + header + data rows of a holdings statement."""
    return [*STATEMENT_PREAMBLE, STATEMENT_HEADER, *(STATEMENT_ROWS if data is None else data)]


def sample_statement_xlsx() -> bytes:
    return build_xlsx(statement_rows(), extra_sheets=("Summary",))


BROKER_EXPORT_ROWS = [
    ["Holdings as on 15-Jan-2024"],
    [],
    ["Symbol", "ISIN", "Qty", "Avg. Cost", "LTP", "Cur. Val"],
    ["INFY", "INE009A01021", 10, "1,450.50", "1520.10", 15201],
    ["NIFTYBEES", "INF204KB14I2", 50, 210.4, None, 10520],
    ["SGBMAR29", "IN0020200096", 4, 4800, 6100, 24400],
    ["OLDCO", "INE000A00000", 0, 100, 90, 0],
    [None, None, 5, 10, 10, 50],
]
