"""
test_file_profiler.py — Value inference, header-row detection and sampling.

Usage:
    python -m pytest tests/test_file_profiler.py
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from mapping_engine.config import EngineConfig
from mapping_engine.fields import CanonicalField, DetectionMethod
from mapping_engine.file_profiler import (
    detect_header_row, infer_from_values, is_summary_row, is_total_row,
    prepare_sample, profile_values, split_extract,
)


HEADERS = ['When', 'Amt', 'Units', 'Name']
ROWS = [
    ['2024-01-15', '$12.50', 3, 'Acme Corp'],
    ['2024-01-16', '$1,200.00', 12, 'Bolt Supply'],
    ['01/17/2024', '99.99', 7, 'Crown Liquor'],
    ['2024-01-18', '$5.25', 1, 'Delta Market'],
]


# ═══════════════════════════════════════════════════════════════
#  VALUE INFERENCE
# ═══════════════════════════════════════════════════════════════

def test_infers_date_revenue_and_quantity_from_values():
    mapping = infer_from_values(HEADERS, ROWS)
    assert mapping.column_for('date') == 'When'
    assert mapping.column_for('revenue') == 'Amt'
    assert mapping.column_for('quantity') == 'Units'
    assert mapping.get('date').confidence == pytest.approx(0.7)
    assert mapping.get('revenue').confidence == pytest.approx(0.7)
    assert mapping.get('quantity').confidence == pytest.approx(0.6)
    assert all(e.method == DetectionMethod.VALUE_INFERENCE for _, e in mapping.items())


def test_never_assigns_account_or_product():
    mapping = infer_from_values(HEADERS, ROWS)
    assert CanonicalField.ACCOUNT not in mapping
    assert CanonicalField.PRODUCT not in mapping


def test_below_match_ratio_is_not_inferred():
    rows = [['2024-01-15'], ['hello'], ['2024-01-17'], ['world']]
    assert not infer_from_values(['Mixed'], rows)


def test_bare_integers_are_quantity_not_revenue():
    rows = [[100], [250], [5000], [42]]
    mapping = infer_from_values(['Col'], rows)
    assert mapping.column_for('quantity') == 'Col'
    assert 'revenue' not in mapping


def test_large_integers_are_not_quantity():
    rows = [[150000], [250000], [990000]]
    assert not infer_from_values(['Col'], rows)


def test_skip_columns_are_not_profiled():
    mapping = infer_from_values(HEADERS, ROWS, skip_columns=['When'])
    assert 'date' not in mapping
    profile = profile_values(HEADERS, ROWS, skip_columns=['When'])
    assert profile.skipped == ['When']


def test_first_column_keeps_the_field():
    headers = ['Ordered', 'Shipped']
    rows = [[1, 2], [3, 4], [5, 6]]
    mapping = infer_from_values(headers, rows)
    assert mapping.column_for('quantity') == 'Ordered'


def test_blank_cells_do_not_count_against_ratio():
    rows = [['2024-01-15'], [None], [''], ['2024-01-16']]
    mapping = infer_from_values(['D'], rows)
    assert mapping.column_for('date') == 'D'


def test_short_rows_are_padded():
    rows = [['2024-01-15'], ['2024-01-16', 5]]
    profile = profile_values(['D', 'Q'], rows)
    assert profile.columns[1].non_blank == 1


def test_value_profile_summary():
    text = profile_values(HEADERS, ROWS).summary()
    assert 'Value Profile' in text
    assert 'When' in text


# ═══════════════════════════════════════════════════════════════
#  HEADER ROW DETECTION
# ═══════════════════════════════════════════════════════════════

RAW_EXTRACT = [
    ['Monthly Sales Report', None, None, None],
    [None, None, None, None],
    ['Date', 'Customer', 'Product', 'Qty'],
    ['01/15/2024', 'Acme Corp', 'Widget A', 5],
    ['01/16/2024', 'Bolt Supply', 'Widget B', 2],
    ['Total', None, None, 7],
]


def test_detects_header_below_title_rows():
    detection = detect_header_row(RAW_EXTRACT)
    assert detection.index == 2
    assert detection.headers == ['Date', 'Customer', 'Product', 'Qty']
    assert detection.column_indices == [0, 1, 2, 3]
    assert 0.0 < detection.confidence <= 1.0


def test_header_on_first_row():
    rows = [['Account', 'Product', 'Cases'], ['Acme', 'Widget', 4]]
    assert detect_header_row(rows).index == 0


def test_header_detection_skips_blank_header_cells():
    rows = [['Customer', None, 'Item', 'Qty'], ['Acme', None, 'Widget', 3]]
    detection = detect_header_row(rows)
    assert detection.headers == ['Customer', 'Item', 'Qty']
    assert detection.column_indices == [0, 2, 3]


def test_empty_extract():
    detection = detect_header_row([])
    assert detection.headers == []
    assert detection.confidence == 0.0


# ═══════════════════════════════════════════════════════════════
#  SAMPLING
# ═══════════════════════════════════════════════════════════════

def test_summary_rows():
    assert is_summary_row(['Grand Total', None, 7])
    assert is_summary_row([None, 'Subtotal', 3])
    assert not is_summary_row(['Acme Corp', 'Total Wine', 3])
    assert not is_summary_row(['Summit Liquor', 'Widget', 3])


def test_prepare_sample_drops_blank_and_summary_rows():
    sample = prepare_sample(RAW_EXTRACT[3:])
    assert len(sample) == 2
    assert sample[0][1] == 'Acme Corp'


def test_prepare_sample_is_bounded():
    rows = [[f'Acct {i}', 'Widget', i] for i in range(50)]
    assert len(prepare_sample(rows)) == EngineConfig().max_sample_rows
    assert len(prepare_sample(rows, max_rows=5)) == 5


def test_split_extract_aligns_sample_to_headers():
    rows = [['Customer', None, 'Item', 'Qty'], ['Acme', 'x', 'Widget', 3]]
    detection, sample = split_extract(rows)
    assert detection.headers == ['Customer', 'Item', 'Qty']
    assert sample == [['Acme', 'Widget', 3]]


def test_total_rows_need_an_exact_label():
    assert is_total_row(['TOTAL', None, 8])
    assert is_total_row([None, 'Grand Total ', 8])
    assert not is_total_row(['Total Wine & More', 'Widget', 3])
    assert not is_total_row(['Group Sales Bar', 'Widget', 3])
