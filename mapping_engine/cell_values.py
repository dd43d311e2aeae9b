"""
cell_values.py — Normalization of raw spreadsheet/PDF cell values.

Every cell entering the engine becomes a CellValue: str, int, float, Decimal
or None. The parsers below are shared by the value profiler (shape inference)
and the row transformer (type normalization).
"""

import math
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

import pandas as pd

CellValue = Union[str, int, float, Decimal, None]

_BLANK_STRINGS = {'', 'nan', 'none', 'null', 'n/a', 'na', '-', '--'}


# ═══════════════════════════════════════════════════════════════
#  CELL NORMALIZATION
# ═══════════════════════════════════════════════════════════════

def to_cell_value(raw) -> CellValue:
    """
    Collapse any decoded cell (pandas/numpy scalars, datetimes, NaN) into a CellValue.

    Dates become ISO strings so they parse the same way as text dates.
    """
    if raw is None:
        return None
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, (str, int, Decimal)):
        return raw
    if isinstance(raw, float):
        return None if math.isnan(raw) else raw
    if isinstance(raw, (pd.Timestamp, datetime)):
        if pd.isna(raw):
            return None
        return raw.isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    try:
        if pd.isna(raw):
            return None
    except (TypeError, ValueError):
        pass
    # numpy scalars
    if hasattr(raw, 'item'):
        return to_cell_value(raw.item())
    return str(raw)


def is_blank(value: CellValue) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str):
        return value.strip().lower() in _BLANK_STRINGS
    return False


def clean_text(value: CellValue) -> str:
    """Trimmed string form; blank cells become ''."""
    if is_blank(value):
        return ''
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return re.sub(r'\s+', ' ', str(value)).strip()


# ═══════════════════════════════════════════════════════════════
#  DATES
# ═══════════════════════════════════════════════════════════════

_MONTHS = {
    'jan': 1, 'january': 1, 'feb': 2, 'february': 2, 'mar': 3, 'march': 3,
    'apr': 4, 'april': 4, 'may': 5, 'jun': 6, 'june': 6, 'jul': 7, 'july': 7,
    'aug': 8, 'august': 8, 'sep': 9, 'sept': 9, 'september': 9,
    'oct': 10, 'october': 10, 'nov': 11, 'november': 11, 'dec': 12, 'december': 12,
}

# Tried in order; first successful parse wins. US month-first before day-first.
DATE_FORMATS = [
    '%Y-%m-%d',
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%dT%H:%M:%S.%f',
    '%Y-%m-%d %H:%M:%S',
    '%Y/%m/%d',
    '%m/%d/%Y',
    '%m/%d/%y',
    '%m/%d/%Y %H:%M',
    '%m/%d/%Y %H:%M:%S',
    '%d/%m/%Y',
    '%d/%m/%y',
    '%m-%d-%Y',
    '%m-%d-%y',
    '%d.%m.%Y',
    '%b %d, %Y',
    '%B %d, %Y',
    '%b %d %Y',
    '%d %b %Y',
    '%d %B %Y',
    '%d-%b-%Y',
    '%d-%b-%y',
]

_MONTH_YEAR_RE = re.compile(r'^([A-Za-z]+)[\s\-_/]+(\d{4})$')
_NUM_MONTH_YEAR_RE = re.compile(r'^(\d{1,2})/(\d{4})$')
_YEAR_MONTH_RE = re.compile(r'^(\d{4})[-/](\d{1,2})$')
_QUARTER_RE = re.compile(r'^(?:Q([1-4])[\s\-]*(\d{4})|(\d{4})[\s\-]*Q([1-4]))$', re.IGNORECASE)
_ISO_PREFIX_RE = re.compile(r'^(\d{4}-\d{2}-\d{2})[T ]')

# Excel serial dates between 1954 and 2119
_EXCEL_SERIAL_RANGE = (20000, 80000)
_EXCEL_EPOCH = date(1899, 12, 30)


def _parse_period_text(text: str) -> Optional[date]:
    """Month/quarter forms resolve to the first day of the period."""
    m = _MONTH_YEAR_RE.match(text)
    if m:
        month = _MONTHS.get(m.group(1).lower())
        if month:
            return date(int(m.group(2)), month, 1)
    m = _NUM_MONTH_YEAR_RE.match(text)
    if m and 1 <= int(m.group(1)) <= 12:
        return date(int(m.group(2)), int(m.group(1)), 1)
    m = _YEAR_MONTH_RE.match(text)
    if m and 1 <= int(m.group(2)) <= 12:
        return date(int(m.group(1)), int(m.group(2)), 1)
    m = _QUARTER_RE.match(text)
    if m:
        quarter = int(m.group(1) or m.group(4))
        year = int(m.group(2) or m.group(3))
        return date(year, (quarter - 1) * 3 + 1, 1)
    return None


def parse_date(value: CellValue, allow_serial: bool = False) -> Optional[date]:
    """
    Parse a cell into a date, or None.

    Args:
        value: raw cell
        allow_serial: treat numbers as Excel serial dates (only safe when the
                      column is already known to be a date column)
    """
    if is_blank(value):
        return None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        if not allow_serial:
            return None
        serial = float(value)
        if _EXCEL_SERIAL_RANGE[0] <= serial <= _EXCEL_SERIAL_RANGE[1]:
            return _EXCEL_EPOCH + timedelta(days=int(serial))
        return None

    text = re.sub(r'\s+', ' ', str(value)).strip()
    m = _ISO_PREFIX_RE.match(text)
    if m:
        text_iso = m.group(1)
        try:
            return datetime.strptime(text_iso, '%Y-%m-%d').date()
        except ValueError:
            return None

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return _parse_period_text(text)


def looks_like_date(value: CellValue) -> bool:
    return parse_date(value) is not None


def normalize_period(value: CellValue) -> Optional[str]:
    """'2024-01', 'Jan 2024', '01/15/2024' → '2024-01'."""
    parsed = parse_date(value)
    if parsed is None:
        return None
    return f"{parsed.year:04d}-{parsed.month:02d}"


# ═══════════════════════════════════════════════════════════════
#  NUMBERS
# ═══════════════════════════════════════════════════════════════

_CURRENCY_SYMBOLS = '$€£¥'
_CURRENCY_RE = re.compile(
    r'^\(?\s*-?\s*[' + _CURRENCY_SYMBOLS + r']?\s*-?\s*'
    r'(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?\s*\)?$'
)
_THOUSANDS_RE = re.compile(r'\d,\d{3}')


def parse_decimal(value: CellValue) -> Optional[Decimal]:
    """
    Parse a currency-like cell ('$1,234.50', '(12.00)', 99) into a Decimal.

    Parenthesised amounts are negative. Returns None for non-numeric text.
    """
    if is_blank(value):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return Decimal(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return Decimal(str(value))

    text = str(value).strip()
    if not _CURRENCY_RE.match(text):
        return None
    negative = text.startswith('(') and text.endswith(')')
    cleaned = re.sub(r'[()\s,' + _CURRENCY_SYMBOLS + r']', '', text)
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return None
    return -abs(number) if negative else number


def looks_like_currency(value: CellValue) -> bool:
    """A number carrying a money signal: symbol, separators or a fraction."""
    if isinstance(value, bool) or is_blank(value):
        return False
    if isinstance(value, float):
        return not value.is_integer()
    if isinstance(value, Decimal):
        return value != value.to_integral_value()
    if isinstance(value, int):
        return False
    text = str(value).strip()
    if parse_decimal(text) is None:
        return False
    return (
        any(s in text for s in _CURRENCY_SYMBOLS)
        or bool(_THOUSANDS_RE.search(text))
        or '.' in text
    )


def parse_quantity(value: CellValue) -> Optional[int]:
    """Integer quantity from '12', 12.0, '1,200'; fractions round half up."""
    number = parse_decimal(value)
    if number is None:
        return None
    return int(number.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def is_small_count(value: CellValue, upper: int) -> bool:
    """Non-negative whole number in [0, upper] without currency markings."""
    if isinstance(value, bool) or is_blank(value):
        return False
    if isinstance(value, float) and not value.is_integer():
        return False
    if isinstance(value, str):
        text = value.strip()
        if any(s in text for s in _CURRENCY_SYMBOLS) or '.' in text and not text.endswith('.0'):
            return False
    number = parse_decimal(value)
    if number is None or number != number.to_integral_value():
        return False
    return 0 <= number <= upper
