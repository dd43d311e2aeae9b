"""
row_transformer.py — Apply a column mapping to every row and validate it.

Each row moves Pending → Valid | PartiallyValid | Invalid. Only a bad
account or product makes a row Invalid; everything else is recorded as a
ValidationIssue and downgrades the row to PartiallyValid.
"""

from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

import pandas as pd

from .cell_values import (
    CellValue, clean_text, is_blank, normalize_period, parse_date, parse_decimal,
    parse_quantity, to_cell_value,
)
from .config import EngineConfig
from .fields import CanonicalField, ColumnMapping


# ═══════════════════════════════════════════════════════════════
#  DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════

class RowStatus(str, Enum):
    PENDING = 'pending'
    VALID = 'valid'
    PARTIALLY_VALID = 'partially_valid'
    INVALID = 'invalid'


class IssueReason(str, Enum):
    MISSING_REQUIRED = 'MissingRequired'
    INVALID_TYPE = 'InvalidType'
    OUT_OF_RANGE = 'OutOfRange'
    DUPLICATE = 'Duplicate'


@dataclass
class ValidationIssue:
    """One row-level problem (a RowValidationFailure)."""
    row_index: int
    field: str
    reason: IssueReason
    message: str = ''
    value: CellValue = None

    @property
    def rejects_row(self) -> bool:
        return self.reason == IssueReason.MISSING_REQUIRED

    def to_dict(self) -> dict:
        return {
            'rowIndex': self.row_index,
            'field': self.field,
            'reason': self.reason.value,
            'message': self.message,
        }


@dataclass
class TransformedRecord:
    """Canonical output row."""
    row_index: int
    account: str
    product: str
    quantity: int = 1
    date: Optional[str] = None            # ISO YYYY-MM-DD
    revenue: Optional[Decimal] = None
    has_revenue_data: bool = False
    period: Optional[str] = None          # YYYY-MM, from date or the default period
    representative: Optional[str] = None
    order_id: Optional[str] = None
    category: Optional[str] = None
    region: Optional[str] = None
    distributor: Optional[str] = None
    status: RowStatus = RowStatus.PENDING

    @property
    def is_dateless(self) -> bool:
        return self.date is None

    @property
    def is_complete(self) -> bool:
        """False when neither a date nor a default period is known."""
        return self.period is not None

    def to_dict(self) -> dict:
        return {
            'account': self.account,
            'product': self.product,
            'quantity': self.quantity,
            'date': self.date,
            'revenue': str(self.revenue) if self.revenue is not None else None,
            'hasRevenueData': self.has_revenue_data,
            'period': self.period,
            'representative': self.representative,
            'orderId': self.order_id,
            'category': self.category,
            'region': self.region,
            'distributor': self.distributor,
            'isDateless': self.is_dateless,
            'status': self.status.value,
        }


@dataclass
class TransformResult:
    """Result from transforming a full row set."""
    records: list = field(default_factory=list)
    issues: list = field(default_factory=list)
    total_rows: int = 0
    valid_count: int = 0
    partial_count: int = 0
    invalid_count: int = 0
    default_period: Optional[str] = None

    @property
    def success_rate(self) -> float:
        """(valid + partially valid) / total; 0.0 for an empty input."""
        if self.total_rows == 0:
            return 0.0
        return (self.valid_count + self.partial_count) / self.total_rows

    def invalid_reasons(self) -> Counter:
        """Rejected-row causes, e.g. {'account: MissingRequired': 3}."""
        return Counter(
            f"{i.field}: {i.reason.value}" for i in self.issues if i.rejects_row
        )

    def to_dict(self) -> dict:
        return {
            'records': [r.to_dict() for r in self.records],
            'issues': [i.to_dict() for i in self.issues],
            'successRate': round(self.success_rate, 4),
        }

    def summary(self) -> str:
        lines = [
            f"Transform: {self.total_rows} rows",
            f"  Valid: {self.valid_count}",
            f"  Partially valid: {self.partial_count}",
            f"  Invalid: {self.invalid_count}",
            f"  Success rate: {self.success_rate:.1%}",
        ]
        if self.default_period:
            lines.append(f"  Default period: {self.default_period}")
        for reason, n in self.invalid_reasons().most_common():
            lines.append(f"  ✗ {reason} ({n})")
        warn_counts = Counter(
            f"{i.field}: {i.reason.value}" for i in self.issues if not i.rejects_row
        )
        for reason, n in warn_counts.most_common():
            lines.append(f"  ⚠ {reason} ({n})")
        return '\n'.join(lines)


# ═══════════════════════════════════════════════════════════════
#  INPUT SHAPES
# ═══════════════════════════════════════════════════════════════

def _reject_duplicates(columns: list):
    repeated = sorted({str(c) for c in columns if str(c) and list(columns).count(c) > 1})
    if repeated:
        raise ValueError(f"Duplicate column headers: {', '.join(repeated)}")


def _row_dicts(rows, headers: Optional[list]) -> list:
    """
    DataFrame, list of dicts, or list of lists + headers → list of dicts.

    Raises:
        ValueError: repeated column names (use fields.clean_headers first).
    """
    if isinstance(rows, pd.DataFrame):
        columns = [str(c) for c in rows.columns]
        _reject_duplicates(columns)
        return [dict(zip(columns, values)) for values in rows.itertuples(index=False, name=None)]
    if headers is not None:
        _reject_duplicates(headers)
    out = []
    for row in rows:
        if isinstance(row, dict):
            out.append(row)
        else:
            if headers is None:
                raise ValueError("headers are required when rows are sequences")
            out.append(dict(zip(headers, row)))
    return out


# ═══════════════════════════════════════════════════════════════
#  ROW RULES
# ═══════════════════════════════════════════════════════════════

_OPTIONAL_TEXT = (
    CanonicalField.REPRESENTATIVE, CanonicalField.ORDER_ID, CanonicalField.CATEGORY,
    CanonicalField.REGION, CanonicalField.DISTRIBUTOR,
)


class RowTransformer:
    """
    Applies one ColumnMapping to rows.

    Args:
        mapping: detected (or caller-supplied) mapping; account and product required
        default_period: YYYY-MM (or any date form) used when a row has no date
        config: policy constants
        today: upper bound for plausible dates
    """

    def __init__(self, mapping: ColumnMapping, default_period: Optional[str] = None,
                 config: Optional[EngineConfig] = None, today: Optional[date] = None):
        self.mapping = mapping
        self.config = config or EngineConfig()
        self.today = today or date.today()
        self.default_period = None
        if default_period:
            self.default_period = normalize_period(default_period)
            if self.default_period is None:
                raise ValueError(f"Invalid default period: {default_period!r}")
        self._columns = {f: entry.source_column for f, entry in mapping.items()}

    def _raw(self, row: dict, canonical: CanonicalField) -> CellValue:
        column = self._columns.get(canonical)
        if column is None:
            return None
        return to_cell_value(row.get(column))

    def _text(self, row: dict, canonical: CanonicalField, idx: int, issues: list,
              required: bool) -> str:
        raw = self._raw(row, canonical)
        text = clean_text(raw)
        if required and len(text) < self.config.min_text_length:
            issues.append(ValidationIssue(
                idx, canonical.value, IssueReason.MISSING_REQUIRED,
                f"{canonical.value} is empty or shorter than {self.config.min_text_length} characters",
                raw,
            ))
        elif len(text) > self.config.max_text_length:
            issues.append(ValidationIssue(
                idx, canonical.value, IssueReason.OUT_OF_RANGE,
                f"{canonical.value} longer than {self.config.max_text_length} characters",
                raw,
            ))
        return text

    def transform_row(self, idx: int, row: dict) -> tuple:
        """
        One row → (TransformedRecord or None, issues).

        Duplicate detection needs the whole row set and is done by transform().
        """
        issues: list = []
        account = self._text(row, CanonicalField.ACCOUNT, idx, issues, required=True)
        product = self._text(row, CanonicalField.PRODUCT, idx, issues, required=True)
        if any(i.rejects_row for i in issues):
            return None, issues

        record = TransformedRecord(row_index=idx, account=account, product=product)

        # quantity
        raw_qty = self._raw(row, CanonicalField.QUANTITY)
        if not is_blank(raw_qty):
            qty = parse_quantity(raw_qty)
            if qty is None:
                issues.append(ValidationIssue(
                    idx, 'quantity', IssueReason.INVALID_TYPE, "quantity is not numeric; defaulted to 1", raw_qty,
                ))
            elif qty <= 0 or qty > self.config.max_quantity:
                issues.append(ValidationIssue(
                    idx, 'quantity', IssueReason.OUT_OF_RANGE,
                    f"quantity {qty} outside 1..{self.config.max_quantity}; defaulted to 1", raw_qty,
                ))
            else:
                record.quantity = qty

        # date
        raw_date = self._raw(row, CanonicalField.DATE)
        if not is_blank(raw_date):
            parsed = parse_date(raw_date, allow_serial=True)
            if parsed is None:
                issues.append(ValidationIssue(
                    idx, 'date', IssueReason.INVALID_TYPE, "unrecognised date", raw_date,
                ))
            else:
                if parsed.year < 1900 or parsed > self.today:
                    issues.append(ValidationIssue(
                        idx, 'date', IssueReason.OUT_OF_RANGE, f"implausible date {parsed.isoformat()}", raw_date,
                    ))
                record.date = parsed.isoformat()
        if record.date:
            record.period = record.date[:7]
        else:
            record.period = self.default_period

        # revenue
        raw_rev = self._raw(row, CanonicalField.REVENUE)
        if not is_blank(raw_rev):
            revenue = parse_decimal(raw_rev)
            if revenue is None:
                issues.append(ValidationIssue(
                    idx, 'revenue', IssueReason.INVALID_TYPE, "revenue is not numeric", raw_rev,
                ))
            elif revenue < 0:
                issues.append(ValidationIssue(
                    idx, 'revenue', IssueReason.INVALID_TYPE, "negative revenue", raw_rev,
                ))
            else:
                record.revenue = revenue
                record.has_revenue_data = True

        for canonical in _OPTIONAL_TEXT:
            text = clean_text(self._raw(row, canonical))
            setattr(record, canonical.value, text or None)

        return record, issues

    def _transform_chunk(self, start: int, rows: list) -> list:
        return [self.transform_row(start + offset, row) for offset, row in enumerate(rows)]

    def transform(self, rows, headers: Optional[list] = None) -> TransformResult:
        """Transform every row; rows may be a DataFrame, dicts, or sequences + headers."""
        row_dicts = _row_dicts(rows, headers)
        result = TransformResult(total_rows=len(row_dicts), default_period=self.default_period)

        chunk = max(1, self.config.transform_chunk_size)
        chunks = [(s, row_dicts[s:s + chunk]) for s in range(0, len(row_dicts), chunk)]
        if self.config.transform_workers > 1 and len(chunks) > 1:
            with ThreadPoolExecutor(max_workers=self.config.transform_workers) as pool:
                outputs = list(pool.map(lambda c: self._transform_chunk(*c), chunks))
        else:
            outputs = [self._transform_chunk(s, rows_) for s, rows_ in chunks]

        seen_orders: set = set()
        for chunk_output in outputs:
            for record, issues in chunk_output:
                if record is not None and record.order_id:
                    key = (record.order_id, record.product)
                    if key in seen_orders:
                        issues.append(ValidationIssue(
                            record.row_index, 'order_id', IssueReason.DUPLICATE,
                            f"order {record.order_id} repeats product {record.product}",
                            record.order_id,
                        ))
                    seen_orders.add(key)

                result.issues.extend(issues)
                if record is None:
                    result.invalid_count += 1
                    continue
                if issues or not record.is_complete or not record.has_revenue_data:
                    record.status = RowStatus.PARTIALLY_VALID
                    result.partial_count += 1
                else:
                    record.status = RowStatus.VALID
                    result.valid_count += 1
                result.records.append(record)

        return result


def transform_rows(rows, mapping: ColumnMapping, headers: Optional[list] = None,
                   default_period: Optional[str] = None,
                   config: Optional[EngineConfig] = None) -> TransformResult:
    """Convenience wrapper around RowTransformer."""
    return RowTransformer(mapping, default_period, config).transform(rows, headers)
