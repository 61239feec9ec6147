"""Shared coercion utilities for broker payloads and uploaded spreadsheets.

Centralises the locale-tolerant number parsing that every ingestion path
needs: Indian digit grouping, currency symbols, accounting-style negatives,
percent strings, and guarded conversions that never let NaN or infinity
leak into stored holdings.
"""

import math
import re
from datetime import datetime, timezone
from decimal import Decimal

# Currency markers stripped before numeric parsing
_CURRENCY_RE = re.compile(r"(₹|\$|€|£|\bRs\.?|\bINR\b|\bUSD\b)", re.IGNORECASE)
_PAREN_NEGATIVE_RE = re.compile(r"^\((.+)\)$")
_WHITESPACE_RE = re.compile(r"\s+")


def _to_finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def parse_number(value) -> float:
    """Parse a loosely formatted number, returning 0 when it cannot be read.

    Handles the formats seen in broker exports and statement spreadsheets:
    - Currency symbols and codes: "₹1,23,456.50", "Rs. 500", "$12"
    - Thousands separators in any grouping: "1,234,567" or "12,34,567"
    - Parenthesis negatives: "(500)" -> -500
    - Percent suffix: "12.5%" -> 12.5
    - Booleans and non-finite floats are rejected (-> 0)

    Args:
        value: A number, string, or None.

    Returns:
        A finite float; 0.0 if the value is blank or unparseable.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return _to_finite(float(value))
    if isinstance(value, Decimal):
        return _to_finite(float(value)) if value.is_finite() else 0.0

    text = str(value).strip()
    if not text:
        return 0.0

    text = _CURRENCY_RE.sub("", text)
    text = text.replace(",", "").replace("%", "")
    text = _WHITESPACE_RE.sub("", text)

    match = _PAREN_NEGATIVE_RE.match(text)
    if match:
        text = "-" + match.group(1)

    # Trailing minus sign, as some exports write "500-"
    if text.endswith("-") and not text.startswith("-"):
        text = "-" + text[:-1]

    try:
        return _to_finite(float(text))
    except ValueError:
        return 0.0


def parse_percentage(value) -> float | None:
    """Parse a percentage such as "12.5%" or 12.5.

    Unlike :func:`parse_number`, blanks and unparseable strings give
    ``None`` so that "not reported" stays distinguishable from 0%.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text or text in {"-", "--", "N/A", "NA", "n/a"}:
            return None
        if not re.search(r"\d", text):
            return None
    result = parse_number(value)
    if isinstance(value, (int, float)) and not math.isfinite(float(value)):
        return None
    return result


def safe_decimal(value, places: int | None = None) -> Decimal:
    """Convert a loosely formatted value to a finite Decimal.

    Args:
        value: Anything :func:`parse_number` accepts.
        places: Optional number of decimal places to round to.

    Returns:
        A finite Decimal (0 for unparseable input).
    """
    number = parse_number(value)
    if places is not None:
        number = round(number, places)
    return Decimal(str(number))


def clean_string(value, max_length: int = 500) -> str:
    """Trim, collapse internal whitespace and truncate a cell value.

    Float cells that hold whole numbers (e.g. codes typed into Excel) are
    rendered without the trailing ``.0``.
    """
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = _WHITESPACE_RE.sub(" ", str(value)).strip()
    return text[:max_length]


def ensure_utc(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (UTC).

    SQLite returns naive datetimes even for values written as aware UTC,
    so anything read back from the database goes through here before being
    compared with ``datetime.now(timezone.utc)``.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
