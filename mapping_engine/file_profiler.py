"""
file_profiler.py — Value-shape analysis of decoded extracts.

Locates the header row of a raw extract, bounds the sample handed to the
detectors, and infers date / revenue / quantity columns purely from the
shape of their sampled values.
100% offline — no API calls.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

import pandas as pd

from .cell_values import (
    clean_text, is_blank, is_small_count, looks_like_currency, looks_like_date,
    to_cell_value,
)
from .config import EngineConfig
from .fields import CanonicalField, ColumnMapping, DetectionMethod, FieldMapping


# ═══════════════════════════════════════════════════════════════
#  DETECTION PATTERNS
# ═══════════════════════════════════════════════════════════════

_HEADER_KEYWORD_RE = re.compile(
    r'^(type|date|name|account|customer|product|item|quantity|qty|amount|revenue|'
    r'price|total|memo|description|number|id|state|region|rep|representative|brand|'
    r'sku|order|invoice|cases|units|sales)$',
    re.IGNORECASE,
)
_UNDERSCORE_NAME_RE = re.compile(r'^[A-Z][a-z]+(_[A-Z][a-z]+)+', re.IGNORECASE)
_MONTH_COLUMN_RE = re.compile(r'^\d{2}/\d{4}$')
_FULL_DATE_RE = re.compile(r'^\d{2}/\d{2}/\d{4}$')
_SECTION_RE = re.compile(
    r'^(total|inventory|summary|subtotal|grand total|report|category|share|dataset|user|cube|by|sort)$',
    re.IGNORECASE,
)
_METADATA_RE = re.compile(r'^(by|sort|total|dataset|user|cube|12 months|share):', re.IGNORECASE)
_SUMMARY_ROW_RE = re.compile(
    r'^(total|subtotal|grand total|sum|summary|inventory|category|section|group)\b',
    re.IGNORECASE,
)
# Full-data filter; account names like "Total Wine & More" must survive it
_TOTAL_ROW_RE = re.compile(r'^(total|subtotal|grand total)$', re.IGNORECASE)


# ═══════════════════════════════════════════════════════════════
#  DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════

@dataclass
class HeaderDetection:
    """Where the header row sits in a raw extract."""
    index: int
    headers: list
    column_indices: list
    confidence: float

    def summary(self) -> str:
        return (
            f"Header row {self.index} ({self.confidence:.0%}): "
            f"{', '.join(self.headers)}"
        )


@dataclass
class ColumnProfile:
    """Share of a column's non-blank samples fitting each value shape."""
    column: str
    non_blank: int
    pct_date: float = 0.0
    pct_currency: float = 0.0
    pct_small_count: float = 0.0
    inferred: Optional[CanonicalField] = None


@dataclass
class ValueProfile:
    """Result of value-shape analysis over a bounded sample."""
    sample_size: int
    columns: list = field(default_factory=list)
    skipped: list = field(default_factory=list)

    def summary(self) -> str:
        """Human-readable value profile."""
        lines = [f"Value Profile (sampled {self.sample_size} rows):"]
        for col in self.columns:
            guess = col.inferred.value if col.inferred else '-'
            lines.append(
                f"  {col.column:<20} date {col.pct_date:.0%}  currency {col.pct_currency:.0%}  "
                f"count {col.pct_small_count:.0%}  → {guess}"
            )
        if self.skipped:
            lines.append(f"  Skipped (already mapped): {', '.join(self.skipped)}")
        return '\n'.join(lines)


# ═══════════════════════════════════════════════════════════════
#  HEADER ROW DETECTION
# ═══════════════════════════════════════════════════════════════

def _non_empty(values: list) -> list:
    return [v for v in values if not is_blank(v)]


def _is_numeric_text(value) -> bool:
    text = re.sub(r'[$,\s]', '', str(value))
    try:
        float(text)
    except ValueError:
        return False
    return text != ''


def _header_score(values: list, rows: list, row_index: int) -> int:
    """How header-like a row looks. Higher is more likely."""
    score = 0
    filled = _non_empty(values)
    non_empty = len(filled)
    strings = [v.strip() for v in filled if isinstance(v, str)]
    score += non_empty * 10

    score += sum(1 for s in strings if _HEADER_KEYWORD_RE.match(s)) * 50
    score += sum(1 for s in strings if _UNDERSCORE_NAME_RE.match(s)) * 40

    month_columns = sum(1 for s in strings if _MONTH_COLUMN_RE.match(s))
    score += month_columns * 30
    if month_columns >= 5:
        score += 200

    # Real dates and prices mean a data row
    if any(_FULL_DATE_RE.match(s) for s in strings):
        score -= 300
    decimals = 0
    for v in filled:
        text = re.sub(r'[$,\s]', '', str(v))
        if '.' in text and _is_numeric_text(v) and float(text) > 0:
            decimals += 1
    if decimals >= 2:
        score -= 150

    numeric = sum(1 for v in filled if _is_numeric_text(v))
    if numeric > non_empty * 0.6:
        score -= numeric * 20

    if any(_SECTION_RE.match(s) for s in strings) and non_empty < 5:
        score -= 100
    if any(_METADATA_RE.match(s) for s in strings):
        score -= 200

    if row_index > 0 and len(_non_empty(rows[row_index - 1])) < 3:
        score += 30

    score += sum(1 for s in strings if '_' in s) * 15

    shapes = set()
    for v in values:
        if is_blank(v):
            shapes.add('empty')
        elif isinstance(v, str) and _MONTH_COLUMN_RE.match(v.strip()):
            shapes.add('month_column')
        elif isinstance(v, str) and _UNDERSCORE_NAME_RE.match(v.strip()):
            shapes.add('underscore_name')
        elif re.match(r'^\d+$', str(v)):
            shapes.add('number')
        elif isinstance(v, str):
            shapes.add('text')
        else:
            shapes.add('other')
    if len(shapes) >= 3:
        score += 25

    if non_empty < 3 and row_index < 10:
        score -= 50

    short_text = sum(1 for s in strings if 0 < len(s) <= 20)
    if non_empty >= 4 and short_text >= non_empty * 0.7:
        score += 40

    return score


def detect_header_row(rows: list, max_scan: int = 15) -> HeaderDetection:
    """
    Find the most header-like row among the first max_scan rows.

    Args:
        rows: raw extract rows (lists of decoded cells)
        max_scan: how many leading rows to consider

    Returns:
        HeaderDetection; confidence is 0.0 when the extract is empty.
    """
    cleaned = [[to_cell_value(v) for v in row] for row in rows]
    if not cleaned:
        return HeaderDetection(index=0, headers=[], column_indices=[], confidence=0.0)

    best_index, best_score = 0, None
    for i, row in enumerate(cleaned[:max_scan]):
        score = _header_score(row, cleaned, i)
        if best_score is None or score > best_score:
            best_index, best_score = i, score

    header_row = cleaned[best_index]
    headers, indices = [], []
    for idx, value in enumerate(header_row):
        text = clean_text(value)
        if text:
            headers.append(text)
            indices.append(idx)

    # 500 points is a clearly labelled row; scale into [0, 1]
    confidence = max(0.0, min(1.0, best_score / 500.0)) if best_score is not None else 0.0
    return HeaderDetection(
        index=best_index, headers=headers, column_indices=indices,
        confidence=round(confidence, 2),
    )


def is_summary_row(row: list) -> bool:
    """First non-blank cell starts with total/subtotal/summary/..."""
    for value in row:
        if is_blank(value):
            continue
        return isinstance(value, str) and bool(_SUMMARY_ROW_RE.match(value.strip()))
    return False


def is_total_row(row: list) -> bool:
    """First non-blank cell is exactly TOTAL, SUBTOTAL or GRAND TOTAL."""
    for value in row:
        if is_blank(value):
            continue
        return isinstance(value, str) and _TOTAL_ROW_RE.match(value.strip()) is not None
    return False


def prepare_sample(rows: Iterable, max_rows: Optional[int] = None,
                   column_indices: Optional[list] = None) -> list:
    """
    Bounded sample of data rows for the detectors.

    Blank rows and total/summary rows are dropped; cells become CellValues.
    When column_indices is given (from detect_header_row), each row is
    re-aligned to those positions.
    """
    limit = max_rows if max_rows is not None else EngineConfig().max_sample_rows
    sample = []
    for row in rows:
        if len(sample) >= limit:
            break
        cells = [to_cell_value(v) for v in row]
        if column_indices is not None:
            cells = [cells[i] if i < len(cells) else None for i in column_indices]
        if not _non_empty(cells) or is_summary_row(cells):
            continue
        sample.append(cells)
    return sample


def split_extract(rows: list, config: Optional[EngineConfig] = None) -> tuple:
    """Raw extract → (HeaderDetection, bounded sample rows aligned to the headers)."""
    config = config or EngineConfig()
    detection = detect_header_row(rows, max_scan=config.max_sample_rows)
    body = rows[detection.index + 1:]
    sample = prepare_sample(body, config.max_sample_rows, detection.column_indices)
    return detection, sample


# ═══════════════════════════════════════════════════════════════
#  VALUE INFERENCE
# ═══════════════════════════════════════════════════════════════

def _sample_frame(headers: list, sample_rows: list) -> pd.DataFrame:
    """Positional DataFrame; headers may repeat so columns are addressed by index."""
    width = len(headers)
    aligned = [
        (list(row) + [None] * width)[:width]
        for row in sample_rows
    ]
    return pd.DataFrame(aligned, columns=range(width), dtype=object)


def profile_values(headers: list, sample_rows: list,
                   skip_columns: Iterable[str] = (),
                   config: Optional[EngineConfig] = None) -> ValueProfile:
    """
    Measure each column's value shapes and infer date / revenue / quantity.

    Shapes are tested in order: date, currency, small count. The first shape
    reaching value_match_ratio decides the column.
    """
    config = config or EngineConfig()
    skip = set(skip_columns)
    df = _sample_frame(headers, sample_rows[:config.max_sample_rows])
    profile = ValueProfile(sample_size=len(df))

    for idx, header in enumerate(headers):
        if header in skip:
            profile.skipped.append(header)
            continue
        values = [to_cell_value(v) for v in df[idx].tolist()]
        values = [v for v in values if not is_blank(v)]
        col = ColumnProfile(column=header, non_blank=len(values))
        if values:
            n = len(values)
            col.pct_date = sum(1 for v in values if looks_like_date(v)) / n
            col.pct_currency = sum(1 for v in values if looks_like_currency(v)) / n
            col.pct_small_count = sum(
                1 for v in values if is_small_count(v, config.max_inferred_quantity)
            ) / n

            ratio = config.value_match_ratio
            if col.pct_date >= ratio:
                col.inferred = CanonicalField.DATE
            elif col.pct_currency >= ratio:
                col.inferred = CanonicalField.REVENUE
            elif col.pct_small_count >= ratio:
                col.inferred = CanonicalField.QUANTITY
        profile.columns.append(col)

    return profile


def infer_from_values(headers: list, sample_rows: list,
                      skip_columns: Iterable[str] = (),
                      config: Optional[EngineConfig] = None) -> ColumnMapping:
    """
    Value detector. Never assigns account or product.

    The first column inferred for a field keeps it.
    """
    config = config or EngineConfig()
    confidences = {
        CanonicalField.DATE: config.value_date_confidence,
        CanonicalField.REVENUE: config.value_revenue_confidence,
        CanonicalField.QUANTITY: config.value_quantity_confidence,
    }
    profile = profile_values(headers, sample_rows, skip_columns, config)
    mapping = ColumnMapping()
    for col in profile.columns:
        if col.inferred is None or col.inferred in mapping:
            continue
        mapping.set(col.inferred, FieldMapping(
            source_column=col.column,
            confidence=confidences[col.inferred],
            method=DetectionMethod.VALUE_INFERENCE,
            contributors=(DetectionMethod.VALUE_INFERENCE,),
        ))
    return mapping
