"""
test_history_db.py — SQLite learning store: synonyms, learned mappings, idempotence.

Usage:
    python -m pytest tests/test_history_db.py
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from mapping_engine.errors import LearningPersistenceFailure
from mapping_engine.fields import ColumnMapping, DetectionMethod, FieldMapping, FieldSynonym
from mapping_engine.history_db import HistoryDB, learned_mapping


def _mapping(**fields):
    mapping = ColumnMapping()
    for name, column in fields.items():
        mapping.set(name, FieldMapping(column, 0.9, DetectionMethod.SYNONYM))
    return mapping


MAPPING = _mapping(account='Customer', product='Item', quantity='Cases')


@pytest.fixture
def db():
    store = HistoryDB()
    yield store
    store.close()


def _apply(db, run_id, mapping=MAPPING, confidence=0.9, **kw):
    return db.apply_outcome(run_id, 'acme:abc', mapping, confidence,
                            rows_processed=10, success_rate=1.0,
                            detection_method='synonym', **kw)


# ═══════════════════════════════════════════════════════════════
#  SYNONYMS
# ═══════════════════════════════════════════════════════════════

def test_default_synonyms_are_seeded_once(db):
    count = len(db.load_synonyms())
    assert count > 50
    assert db.get_synonym('quantity', 'Cases') is not None
    # seeding again inserts nothing
    from mapping_engine.column_mapper import default_synonyms
    assert db.seed_synonyms(default_synonyms()) == 0
    assert len(db.load_synonyms()) == count


def test_unseeded_store_is_empty():
    with HistoryDB(seed=False) as store:
        assert store.load_synonyms() == []


def test_synonym_triple_is_unique(db):
    assert not db.insert_synonym(FieldSynonym('quantity', 'cases'))
    assert db.insert_synonym(FieldSynonym('quantity', 'cases', organization_id='org-1', weight=0.8))
    assert not db.insert_synonym(FieldSynonym('quantity', 'CASES', organization_id='org-1'))


def test_organization_synonyms_are_scoped(db):
    db.insert_synonym(FieldSynonym('product', 'widget code', organization_id='org-1'))
    assert db.get_synonym('product', 'widget code', 'org-1') is not None
    assert not any(s.variant_text == 'widget code' for s in db.load_synonyms())
    assert any(s.variant_text == 'widget code' for s in db.load_synonyms('org-1'))
    assert not any(s.variant_text == 'widget code' for s in db.load_synonyms('org-2'))


def test_deactivated_synonyms_are_hidden_unless_requested(db):
    assert db.set_synonym_active('quantity', 'cases', active=False)
    assert not any(s.variant_text == 'cases' and s.canonical_field.value == 'quantity'
                   for s in db.load_synonyms())
    assert any(s.variant_text == 'cases' and not s.is_active
               for s in db.load_synonyms(include_inactive=True))
    assert not db.set_synonym_active('quantity', 'no such variant', active=False)


# ═══════════════════════════════════════════════════════════════
#  LEARNED MAPPINGS
# ═══════════════════════════════════════════════════════════════

def test_first_outcome_creates_record(db):
    outcome = _apply(db, 'run-1', distributor_id='acme', filename_pattern='acme_*.csv')
    assert outcome.created
    record = db.get_active_record('acme:abc')
    assert record.mapping == MAPPING
    assert record.success_count == 1
    assert record.confidence == pytest.approx(0.9)
    assert record.distributor_id == 'acme'
    assert record.filename_pattern == 'acme_*.csv'
    assert record.is_active


def test_same_mapping_increments_success_and_confidence(db):
    _apply(db, 'run-1', confidence=0.8)
    outcome = _apply(db, 'run-2', confidence=0.8)
    assert not outcome.created
    assert outcome.record.success_count == 2
    assert outcome.record.confidence == pytest.approx(0.85)


def test_confidence_is_capped_at_one(db):
    _apply(db, 'run-1', confidence=0.98)
    outcome = _apply(db, 'run-2', confidence=0.98)
    assert outcome.record.confidence == pytest.approx(1.0)


def test_different_mapping_supersedes(db):
    first = _apply(db, 'run-1').record
    changed = _mapping(account='Customer', product='SKU', quantity='Cases')
    outcome = _apply(db, 'run-2', mapping=changed)
    assert outcome.created
    assert outcome.superseded_id == first.id
    assert db.get_active_record('acme:abc').mapping == changed
    history = db.list_records(include_superseded=True)
    assert len(history) == 2
    assert sum(1 for r in history if r.is_active) == 1


def test_repeated_run_id_is_a_no_op(db):
    _apply(db, 'run-1')
    again = _apply(db, 'run-1')
    assert again.duplicate
    assert again.record is None
    assert db.get_active_record('acme:abc').success_count == 1
    assert db.is_run_applied('run-1')
    assert not db.is_run_applied('run-2')


def test_records_are_scoped_by_organization(db):
    _apply(db, 'run-1', organization_id='org-1')
    assert db.get_active_record('acme:abc') is None
    assert db.get_active_record('acme:abc', 'org-1') is not None


def test_contributing_synonyms_are_bumped_and_capped(db):
    key = ('quantity', 'cases', '')
    before = db.get_synonym('quantity', 'cases')
    outcome = _apply(db, 'run-1', synonym_keys=[key, key])
    assert outcome.synonyms_bumped == 1
    after = db.get_synonym('quantity', 'cases')
    assert after.usage_count == before.usage_count + 1
    assert after.weight == pytest.approx(min(1.0, before.weight + 0.02))

    db.insert_synonym(FieldSynonym('product', 'thing', weight=0.99))
    _apply(db, 'run-2', synonym_keys=[('product', 'thing', '')])
    assert db.get_synonym('product', 'thing').weight == pytest.approx(1.0)


def test_distributor_records(db):
    _apply(db, 'run-1', distributor_id='acme')
    assert len(db.find_distributor_records('acme')) == 1
    assert db.find_distributor_records('other') == []


def test_learned_mapping_retags_entries(db):
    record = _apply(db, 'run-1').record
    learned = learned_mapping(record)
    assert learned == MAPPING
    assert all(e.method == DetectionMethod.LEARNED for _, e in learned.items())
    assert all(e.confidence == pytest.approx(0.9) for _, e in learned.items())


# ═══════════════════════════════════════════════════════════════
#  FAILURES / PERSISTENCE
# ═══════════════════════════════════════════════════════════════

def test_closed_store_raises_persistence_failure():
    store = HistoryDB()
    store.close()
    with pytest.raises(LearningPersistenceFailure):
        _apply(store, 'run-1')


def test_file_store_survives_reopen(tmp_path):
    path = str(tmp_path / 'nested' / 'history.db')
    with HistoryDB(path) as store:
        _apply(store, 'run-1')
    with HistoryDB(path) as store:
        assert store.get_active_record('acme:abc').mapping == MAPPING
        assert store.is_run_applied('run-1')


def test_statistics(db):
    _apply(db, 'run-1', synonym_keys=[('quantity', 'cases', '')])
    db.record_attempt('other:1', MAPPING, rows_processed=5, success_rate=0.2)
    stats = db.statistics()
    assert stats.total_mappings == 1
    assert stats.total_attempts == 2
    assert stats.failed_attempts == 1
    assert stats.average_success_rate == pytest.approx(0.6)
    assert stats.detection_methods == {'synonym': 1}
    assert stats.top_synonyms[0]['variant_text'] == 'cases'
    assert 'Active mappings: 1' in stats.summary()
