"""
test_hybrid_combiner.py — Fusion of detector proposals.

Usage:
    python -m pytest tests/test_hybrid_combiner.py
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from mapping_engine.fields import ColumnMapping, DetectionMethod, FieldMapping
from mapping_engine.hybrid_combiner import combine, overall_method


def _proposal(method, **fields):
    """_proposal(SYNONYM, account=('Customer', 0.9)) → ColumnMapping."""
    mapping = ColumnMapping()
    for name, (column, confidence) in fields.items():
        mapping.set(name, FieldMapping(column, confidence, method, contributors=(method,)))
    return mapping


SYN = DetectionMethod.SYNONYM
PAT = DetectionMethod.PATTERN
VAL = DetectionMethod.VALUE_INFERENCE
AI = DetectionMethod.AI
LEARNED = DetectionMethod.LEARNED


# ═══════════════════════════════════════════════════════════════
#  AGREEMENT / DISAGREEMENT
# ═══════════════════════════════════════════════════════════════

def test_agreeing_detectors_take_max_confidence_and_become_hybrid():
    combined = combine({
        SYN: _proposal(SYN, quantity=('Cases', 1.0)),
        PAT: _proposal(PAT, quantity=('Cases', 0.75)),
    })
    entry = combined.mapping.get('quantity')
    assert entry.source_column == 'Cases'
    assert entry.confidence == pytest.approx(1.0)
    assert entry.method == DetectionMethod.HYBRID
    assert set(entry.contributors) == {SYN, PAT}


def test_highest_confidence_proposal_wins():
    combined = combine({
        SYN: _proposal(SYN, date=('Ship Date', 0.9)),
        VAL: _proposal(VAL, date=('Posted', 0.7)),
    })
    assert combined.mapping.column_for('date') == 'Ship Date'
    assert combined.mapping.get('date').method == SYN


def test_equal_confidence_tie_goes_to_detector_priority():
    combined = combine({
        PAT: _proposal(PAT, product=('Item', 0.7)),
        AI: _proposal(AI, product=('Description', 0.7)),
        VAL: _proposal(VAL, quantity=('Units', 0.7)),
    }, headers=['Item', 'Description', 'Units'])
    assert combined.mapping.column_for('product') == 'Description'
    assert combined.mapping.get('product').method == AI


def test_synonym_beats_pattern_on_tie():
    combined = combine({
        PAT: _proposal(PAT, account=('Buyer', 0.7)),
        SYN: _proposal(SYN, account=('Client', 0.7)),
    })
    assert combined.mapping.column_for('account') == 'Client'


def test_zero_confidence_proposals_are_ignored():
    combined = combine({SYN: _proposal(SYN, account=('Customer', 0.0))})
    assert 'account' not in combined.mapping


# ═══════════════════════════════════════════════════════════════
#  LEARNED AUTHORITY
# ═══════════════════════════════════════════════════════════════

def test_learned_mapping_at_threshold_is_authoritative():
    learned = _proposal(LEARNED, account=('Sold To', 0.7))
    combined = combine({
        LEARNED: learned,
        SYN: _proposal(SYN, account=('Customer', 1.0)),
    }, authoritative=learned)
    entry = combined.mapping.get('account')
    assert entry.source_column == 'Sold To'
    assert entry.method == LEARNED


def test_learned_mapping_below_threshold_competes_normally():
    learned = _proposal(LEARNED, account=('Sold To', 0.6))
    combined = combine({
        LEARNED: learned,
        SYN: _proposal(SYN, account=('Customer', 1.0)),
    }, authoritative=learned)
    assert combined.mapping.column_for('account') == 'Customer'


def test_authoritative_column_is_not_reused_by_other_fields():
    learned = _proposal(LEARNED, account=('Name', 0.9))
    combined = combine({
        LEARNED: learned,
        SYN: _proposal(SYN, product=('Name', 0.95), account=('Other', 0.5)),
    }, authoritative=learned)
    assert combined.mapping.column_for('account') == 'Name'
    assert 'product' not in combined.mapping


# ═══════════════════════════════════════════════════════════════
#  COLUMN EXCLUSIVITY
# ═══════════════════════════════════════════════════════════════

def test_a_column_serves_at_most_one_field():
    combined = combine({
        SYN: _proposal(SYN, revenue=('Total', 0.7)),
        PAT: _proposal(PAT, quantity=('Total', 0.65), revenue=('Amount', 0.6)),
    })
    assert combined.mapping.column_for('revenue') == 'Total'
    assert 'quantity' not in combined.mapping
    assert len(set(combined.mapping.columns())) == len(combined.mapping.columns())


def test_loser_falls_back_to_its_next_column():
    combined = combine({
        SYN: _proposal(SYN, revenue=('Total', 0.9)),
        PAT: _proposal(PAT, quantity=('Total', 0.75)),
        VAL: _proposal(VAL, quantity=('Units', 0.6)),
    })
    assert combined.mapping.column_for('revenue') == 'Total'
    assert combined.mapping.column_for('quantity') == 'Units'


def test_equal_cross_field_competition_warns_ambiguous():
    combined = combine({
        SYN: _proposal(SYN, revenue=('Total', 0.8)),
        PAT: _proposal(PAT, quantity=('Total', 0.8)),
    })
    assert combined.mapping.column_for('revenue') == 'Total'
    assert any(w.startswith('AmbiguousMapping:') for w in combined.warnings)


def test_no_warning_without_ties():
    combined = combine({
        SYN: _proposal(SYN, account=('Customer', 1.0), product=('Item', 1.0)),
    })
    assert combined.warnings == []


# ═══════════════════════════════════════════════════════════════
#  OVERALL CONFIDENCE / METHOD
# ═══════════════════════════════════════════════════════════════

def test_overall_confidence_is_average_of_used_fields():
    combined = combine({
        SYN: _proposal(SYN, account=('Customer', 1.0), product=('Item', 0.8)),
        VAL: _proposal(VAL, quantity=('Units', 0.6)),
    })
    assert combined.overall_confidence == pytest.approx(0.8)


def test_overall_method_is_plurality():
    combined = combine({
        SYN: _proposal(SYN, account=('Customer', 1.0), product=('Item', 0.8)),
        VAL: _proposal(VAL, quantity=('Units', 0.6)),
    })
    assert combined.method == SYN


def test_overall_method_tie_breaks_by_priority():
    mapping = ColumnMapping()
    mapping.set('account', FieldMapping('A', 0.9, PAT))
    mapping.set('product', FieldMapping('P', 0.9, SYN))
    assert overall_method(mapping) == SYN


def test_synonym_keys_survive_fusion():
    mapping = ColumnMapping()
    mapping.set('quantity', FieldMapping('Cases', 1.0, SYN, synonyms=(('quantity', 'cases', ''),)))
    combined = combine({SYN: mapping, PAT: _proposal(PAT, quantity=('Cases', 0.75))})
    assert combined.mapping.get('quantity').synonyms == (('quantity', 'cases', ''),)
