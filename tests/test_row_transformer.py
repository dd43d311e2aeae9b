"""
test_row_transformer.py — Row transformation and data-quality rules.

Usage:
    python -m pytest tests/test_row_transformer.py
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import date
from decimal import Decimal

import pandas as pd
import pytest

from mapping_engine.config import EngineConfig
from mapping_engine.fields import ColumnMapping, DetectionMethod, FieldMapping
from mapping_engine.row_transformer import (
    IssueReason, RowStatus, RowTransformer, transform_rows,
)


TODAY = date(2024, 6, 30)

HEADERS = ['Customer', 'Item', 'Cases', 'Invoice Date', 'Amount', 'Order #', 'Rep']


def _mapping(**fields):
    mapping = ColumnMapping()
    for name, column in fields.items():
        mapping.set(name, FieldMapping(column, 1.0, DetectionMethod.SYNONYM))
    return mapping


FULL = _mapping(account='Customer', product='Item', quantity='Cases', date='Invoice Date',
                revenue='Amount', order_id='Order #', representative='Rep')


def _transform(rows, mapping=FULL, headers=HEADERS, **kw):
    config = kw.pop('config', None)
    return RowTransformer(mapping, config=config, today=TODAY, **kw).transform(rows, headers)


def _issues(result, reason):
    return [i for i in result.issues if i.reason == reason]


# ═══════════════════════════════════════════════════════════════
#  CLEAN ROWS
# ═══════════════════════════════════════════════════════════════

def test_clean_row_is_valid_and_normalized():
    result = _transform([['  Acme   Corp ', 'Widget A', '12', '01/15/2024', '$1,234.50', 'SO-1', 'Jane']])
    assert result.valid_count == 1
    rec = result.records[0]
    assert rec.status == RowStatus.VALID
    assert rec.account == 'Acme Corp'
    assert rec.quantity == 12
    assert rec.date == '2024-01-15'
    assert rec.period == '2024-01'
    assert rec.revenue == Decimal('1234.50')
    assert rec.has_revenue_data
    assert rec.order_id == 'SO-1'
    assert rec.representative == 'Jane'
    assert result.success_rate == pytest.approx(1.0)


def test_record_serializes_revenue_as_string():
    result = _transform([['Acme', 'Widget', 1, '2024-01-15', '10.50', None, None]])
    data = result.records[0].to_dict()
    assert data['revenue'] == '10.50'
    assert data['isDateless'] is False
    assert data['status'] == 'valid'


# ═══════════════════════════════════════════════════════════════
#  REQUIRED FIELDS
# ═══════════════════════════════════════════════════════════════

@pytest.mark.parametrize('account', ['A', '', None, '   '])
def test_short_or_blank_account_rejects_row(account):
    result = _transform([[account, 'Widget', 1, '2024-01-15', '5.00', None, None]])
    assert result.invalid_count == 1
    assert result.records == []
    issue = result.issues[0]
    assert issue.field == 'account'
    assert issue.reason == IssueReason.MISSING_REQUIRED
    assert issue.rejects_row


def test_invalid_rows_lower_success_rate():
    rows = [
        ['Acme', 'Widget', 1, '2024-01-15', '5.00', None, None],
        ['Bolt', 'X', 1, '2024-01-15', '5.00', None, None],
    ]
    result = _transform(rows)
    assert result.success_rate == pytest.approx(0.5)
    assert result.invalid_reasons() == {'product: MissingRequired': 1}


# ═══════════════════════════════════════════════════════════════
#  DEPLETION REPORTS
# ═══════════════════════════════════════════════════════════════

DEPLETION = _mapping(account='Customer', product='Item', quantity='Cases')


def test_depletion_rows_take_the_default_period():
    rows = [['Acme', 'Widget', 3], ['Bolt Supply', 'Gadget', 5]]
    result = transform_rows(rows, DEPLETION, headers=['Customer', 'Item', 'Cases'],
                            default_period='2024-03')
    assert result.success_rate == pytest.approx(1.0)
    assert result.invalid_count == 0
    for rec in result.records:
        assert rec.is_dateless
        assert rec.period == '2024-03'
        assert not rec.has_revenue_data
        assert rec.revenue is None
        assert rec.status == RowStatus.PARTIALLY_VALID


def test_default_period_accepts_month_names():
    transformer = RowTransformer(DEPLETION, default_period='Mar 2024')
    assert transformer.default_period == '2024-03'


def test_dateless_without_default_period_is_incomplete():
    result = transform_rows([['Acme', 'Widget', 3]], DEPLETION, headers=['Customer', 'Item', 'Cases'])
    rec = result.records[0]
    assert not rec.is_complete
    assert rec.period is None
    assert rec.status == RowStatus.PARTIALLY_VALID


def test_invalid_default_period_is_rejected():
    with pytest.raises(ValueError):
        RowTransformer(DEPLETION, default_period='sometime')


# ═══════════════════════════════════════════════════════════════
#  QUANTITY / REVENUE / DATE RULES
# ═══════════════════════════════════════════════════════════════

def test_missing_quantity_defaults_to_one():
    result = _transform([['Acme', 'Widget', None, '2024-01-15', '5.00', None, None]])
    assert result.records[0].quantity == 1
    assert result.records[0].status == RowStatus.VALID


def test_non_numeric_quantity_is_invalid_type():
    result = _transform([['Acme', 'Widget', 'abc', '2024-01-15', '5.00', None, None]])
    rec = result.records[0]
    assert rec.quantity == 1
    assert rec.status == RowStatus.PARTIALLY_VALID
    assert _issues(result, IssueReason.INVALID_TYPE)[0].field == 'quantity'


@pytest.mark.parametrize('qty', [0, -4, 5000000])
def test_quantity_outside_range(qty):
    result = _transform([['Acme', 'Widget', qty, '2024-01-15', '5.00', None, None]])
    assert result.records[0].quantity == 1
    assert _issues(result, IssueReason.OUT_OF_RANGE)[0].field == 'quantity'


def test_negative_revenue_is_invalid_type():
    result = _transform([['Acme', 'Widget', 1, '2024-01-15', '-12.00', None, None]])
    rec = result.records[0]
    assert rec.revenue is None
    assert not rec.has_revenue_data
    assert _issues(result, IssueReason.INVALID_TYPE)[0].field == 'revenue'


def test_unparseable_date_is_invalid_type():
    result = _transform([['Acme', 'Widget', 1, 'next tuesday', '5.00', None, None]])
    rec = result.records[0]
    assert rec.date is None
    assert _issues(result, IssueReason.INVALID_TYPE)[0].field == 'date'


def test_future_date_is_out_of_range_but_kept():
    result = _transform([['Acme', 'Widget', 1, '2025-01-15', '5.00', None, None]])
    rec = result.records[0]
    assert rec.date == '2025-01-15'
    assert rec.status == RowStatus.PARTIALLY_VALID
    assert _issues(result, IssueReason.OUT_OF_RANGE)[0].field == 'date'


def test_excel_serial_dates_are_accepted_in_date_column():
    result = _transform([['Acme', 'Widget', 1, 45306, '5.00', None, None]])
    assert result.records[0].date == '2024-01-15'


def test_overlong_account_is_flagged():
    result = _transform([['A' * 250, 'Widget', 1, '2024-01-15', '5.00', None, None]])
    assert result.records[0].status == RowStatus.PARTIALLY_VALID
    assert _issues(result, IssueReason.OUT_OF_RANGE)[0].field == 'account'


def test_duplicate_order_and_product_is_flagged():
    rows = [
        ['Acme', 'Widget', 1, '2024-01-15', '5.00', 'SO-1', None],
        ['Acme', 'Gadget', 1, '2024-01-15', '5.00', 'SO-1', None],
        ['Acme', 'Widget', 2, '2024-01-15', '5.00', 'SO-1', None],
    ]
    result = _transform(rows)
    dupes = _issues(result, IssueReason.DUPLICATE)
    assert [d.row_index for d in dupes] == [2]
    assert result.records[2].status == RowStatus.PARTIALLY_VALID
    assert result.valid_count == 2


# ═══════════════════════════════════════════════════════════════
#  INPUT SHAPES / PARALLELISM
# ═══════════════════════════════════════════════════════════════

def test_dataframe_and_dict_rows():
    df = pd.DataFrame({'Customer': ['Acme', 'Bolt'], 'Item': ['Widget', 'Gadget'], 'Cases': [2, 4]})
    from_df = transform_rows(df, DEPLETION, default_period='2024-03')
    from_dicts = transform_rows(df.to_dict('records'), DEPLETION, default_period='2024-03')
    assert [r.to_dict() for r in from_df.records] == [r.to_dict() for r in from_dicts.records]
    assert from_df.records[1].quantity == 4


def test_sequence_rows_need_headers():
    with pytest.raises(ValueError):
        RowTransformer(DEPLETION).transform([['Acme', 'Widget', 1]])


def test_parallel_chunks_match_sequential():
    rows = [[f'Account {i}', f'Item {i % 3}', i + 1, '2024-01-15', f'{i}.50', f'SO-{i % 4}', None]
            for i in range(23)]
    sequential = _transform(rows)
    parallel = _transform(rows, config=EngineConfig(transform_workers=4, transform_chunk_size=5))
    assert [r.to_dict() for r in parallel.records] == [r.to_dict() for r in sequential.records]
    assert [i.to_dict() for i in parallel.issues] == [i.to_dict() for i in sequential.issues]
    assert parallel.success_rate == sequential.success_rate


def test_empty_input():
    result = _transform([])
    assert result.total_rows == 0
    assert result.success_rate == 0.0


def test_summary_lists_rejection_reasons():
    result = _transform([['A', 'Widget', 1, '2024-01-15', '5.00', None, None]])
    text = result.summary()
    assert 'Invalid: 1' in text
    assert 'account: MissingRequired' in text


def test_repeated_column_names_are_rejected():
    df = pd.DataFrame([['Acme', 'Widget', 2, 3]], columns=['Customer', 'Item', 'Cases', 'Cases'])
    with pytest.raises(ValueError, match='Cases'):
        transform_rows(df, DEPLETION, default_period='2024-03')
    with pytest.raises(ValueError):
        RowTransformer(DEPLETION).transform([['Acme', 'Acme', 'Widget']], ['Customer', 'Customer', 'Item'])
