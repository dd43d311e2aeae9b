"""
history_db.py — Local SQLite learning store.

Holds the synonym table and the learned-mapping history so accepted mappings
can be reused on the next file from the same source. One HistoryDB is shared
by every detection in the process; writes are serialized and each feedback
outcome is applied in a single transaction.
"""

import json
import os
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from .column_mapper import default_synonyms
from .errors import LearningPersistenceFailure
from .fields import (
    CanonicalField, ColumnMapping, DetectionMethod, FieldMapping, FieldSynonym,
    normalize_header,
)


MEMORY_DB = ':memory:'


def _org(organization_id: Optional[str]) -> str:
    """Global rows are stored with organization_id '' so the unique index applies."""
    return organization_id or ''


@dataclass
class MappingHistoryRecord:
    source_key: str
    mapping: ColumnMapping
    confidence: float
    success_count: int = 1
    created_at: str = ''
    last_success_at: str = ''
    id: int = 0
    organization_id: Optional[str] = None
    distributor_id: Optional[str] = None
    filename_pattern: str = ''
    detection_method: str = ''
    superseded_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.superseded_at is None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'sourceKey': self.source_key,
            'mapping': self.mapping.as_simple(),
            'confidence': round(self.confidence, 4),
            'successCount': self.success_count,
            'createdAt': self.created_at,
            'lastSuccessAt': self.last_success_at,
            'distributorId': self.distributor_id,
            'filenamePattern': self.filename_pattern,
            'detectionMethod': self.detection_method,
            'supersededAt': self.superseded_at,
        }


@dataclass
class AppliedOutcome:
    """What one successful feedback write changed."""
    record: Optional[MappingHistoryRecord] = None
    created: bool = False
    superseded_id: Optional[int] = None
    synonyms_bumped: int = 0
    duplicate: bool = False


@dataclass
class StoreStatistics:
    total_mappings: int = 0
    average_confidence: float = 0.0
    total_attempts: int = 0
    failed_attempts: int = 0
    average_success_rate: float = 0.0
    detection_methods: dict = field(default_factory=dict)
    top_synonyms: list = field(default_factory=list)

    def summary(self) -> str:
        lines = [
            "Learning Store Statistics:",
            f"  Active mappings: {self.total_mappings}",
            f"  Average confidence: {self.average_confidence:.0%}",
            f"  Attempts: {self.total_attempts} ({self.failed_attempts} not learned)",
            f"  Average success rate: {self.average_success_rate:.0%}",
        ]
        if self.detection_methods:
            methods = ', '.join(f"{m}={n}" for m, n in sorted(self.detection_methods.items()))
            lines.append(f"  Methods: {methods}")
        for syn in self.top_synonyms:
            lines.append(
                f"  {syn['canonical_field']:<15} '{syn['variant_text']}' "
                f"used {syn['usage_count']}x (weight {syn['weight']:.2f})"
            )
        return '\n'.join(lines)


class HistoryDB:
    """
    Synonym table + learned-mapping store on one SQLite connection.

    Args:
        path: database file, or ':memory:' for a throwaway store
        seed: insert the default synonym dictionary if missing
    """

    def __init__(self, path: str = MEMORY_DB, seed: bool = True):
        self.path = path
        if path != MEMORY_DB:
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self.init_db()
            if seed:
                self.seed_synonyms(default_synonyms())
        except sqlite3.Error as e:
            raise LearningPersistenceFailure(f"Cannot open learning store {path}: {e}") from e

    def close(self):
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def init_db(self):
        """Create tables if they don't exist."""
        with self._lock, self._conn:
            self._conn.execute('''
                CREATE TABLE IF NOT EXISTS field_synonyms (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    canonical_field TEXT NOT NULL,
                    variant_text TEXT NOT NULL,
                    organization_id TEXT NOT NULL DEFAULT '',
                    weight REAL NOT NULL DEFAULT 1.0,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    UNIQUE (canonical_field, variant_text, organization_id)
                )
            ''')
            self._conn.execute('''
                CREATE TABLE IF NOT EXISTS mapping_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_key TEXT NOT NULL,
                    organization_id TEXT NOT NULL DEFAULT '',
                    distributor_id TEXT,
                    mapping TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    success_count INTEGER NOT NULL DEFAULT 1,
                    detection_method TEXT,
                    filename_pattern TEXT,
                    created_at TEXT NOT NULL,
                    last_success_at TEXT NOT NULL,
                    superseded_at TEXT
                )
            ''')
            self._conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_mapping_history_key
                ON mapping_history (source_key, organization_id, superseded_at)
            ''')
            self._conn.execute('''
                CREATE TABLE IF NOT EXISTS mapping_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    source_key TEXT NOT NULL,
                    organization_id TEXT NOT NULL DEFAULT '',
                    mapping TEXT,
                    detection_method TEXT,
                    rows_processed INTEGER DEFAULT 0,
                    success_rate REAL DEFAULT 0,
                    learned INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            ''')
            self._conn.execute('''
                CREATE TABLE IF NOT EXISTS applied_runs (
                    run_id TEXT PRIMARY KEY,
                    source_key TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
            ''')

    # ═══════════════════════════════════════════════════════════════
    #  SYNONYMS
    # ═══════════════════════════════════════════════════════════════

    def seed_synonyms(self, synonyms: Iterable[FieldSynonym]) -> int:
        """INSERT OR IGNORE the given synonyms. Returns rows inserted."""
        now = datetime.now().isoformat()
        inserted = 0
        with self._lock, self._conn:
            for syn in synonyms:
                cur = self._conn.execute('''
                    INSERT OR IGNORE INTO field_synonyms
                    (canonical_field, variant_text, organization_id, weight, usage_count, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                ''', (
                    syn.canonical_field.value, syn.variant_text, _org(syn.organization_id),
                    syn.weight, syn.usage_count, int(syn.is_active), now,
                ))
                inserted += cur.rowcount
        return inserted

    @staticmethod
    def _row_to_synonym(row) -> FieldSynonym:
        return FieldSynonym(
            canonical_field=row['canonical_field'],
            variant_text=row['variant_text'],
            organization_id=row['organization_id'] or None,
            weight=row['weight'],
            usage_count=row['usage_count'],
            is_active=bool(row['is_active']),
        )

    def load_synonyms(self, organization_id: Optional[str] = None,
                      include_inactive: bool = False) -> list:
        """Global synonyms plus those scoped to organization_id."""
        sql = 'SELECT * FROM field_synonyms WHERE organization_id IN (?, ?)'
        if not include_inactive:
            sql += ' AND is_active = 1'
        sql += ' ORDER BY canonical_field, variant_text'
        with self._lock:
            rows = self._conn.execute(sql, ('', _org(organization_id))).fetchall()
        return [self._row_to_synonym(r) for r in rows]

    def get_synonym(self, canonical_field, variant_text: str,
                    organization_id: Optional[str] = None) -> Optional[FieldSynonym]:
        parsed = CanonicalField.parse(canonical_field)
        if parsed is None:
            return None
        with self._lock:
            row = self._conn.execute('''
                SELECT * FROM field_synonyms
                WHERE canonical_field = ? AND variant_text = ? AND organization_id = ?
            ''', (parsed.value, normalize_header(variant_text), _org(organization_id))).fetchone()
        return self._row_to_synonym(row) if row else None

    def insert_synonym(self, synonym: FieldSynonym) -> bool:
        """Insert one synonym. False when the (field, variant, scope) triple exists."""
        try:
            with self._lock, self._conn:
                self._conn.execute('''
                    INSERT INTO field_synonyms
                    (canonical_field, variant_text, organization_id, weight, usage_count, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                ''', (
                    synonym.canonical_field.value, synonym.variant_text,
                    _org(synonym.organization_id), synonym.weight, synonym.usage_count,
                    int(synonym.is_active), datetime.now().isoformat(),
                ))
        except sqlite3.IntegrityError:
            return False
        except sqlite3.Error as e:
            raise LearningPersistenceFailure(f"Cannot add synonym '{synonym.variant_text}': {e}") from e
        return True

    def set_synonym_active(self, canonical_field, variant_text: str,
                           organization_id: Optional[str] = None, active: bool = True) -> bool:
        """Toggle a synonym. Returns False when it does not exist."""
        parsed = CanonicalField.parse(canonical_field)
        if parsed is None:
            return False
        try:
            with self._lock, self._conn:
                cur = self._conn.execute('''
                    UPDATE field_synonyms SET is_active = ?
                    WHERE canonical_field = ? AND variant_text = ? AND organization_id = ?
                ''', (int(active), parsed.value, normalize_header(variant_text), _org(organization_id)))
        except sqlite3.Error as e:
            raise LearningPersistenceFailure(f"Cannot update synonym '{variant_text}': {e}") from e
        return cur.rowcount > 0

    def top_synonyms(self, organization_id: Optional[str] = None, limit: int = 10) -> list:
        with self._lock:
            rows = self._conn.execute('''
                SELECT canonical_field, variant_text, organization_id, weight, usage_count
                FROM field_synonyms
                WHERE organization_id IN (?, ?) AND usage_count > 0
                ORDER BY usage_count DESC, weight DESC, variant_text
                LIMIT ?
            ''', ('', _org(organization_id), limit)).fetchall()
        return [dict(r) for r in rows]

    # ═══════════════════════════════════════════════════════════════
    #  MAPPING HISTORY
    # ═══════════════════════════════════════════════════════════════

    @staticmethod
    def _row_to_record(row) -> MappingHistoryRecord:
        return MappingHistoryRecord(
            id=row['id'],
            source_key=row['source_key'],
            organization_id=row['organization_id'] or None,
            distributor_id=row['distributor_id'],
            mapping=ColumnMapping.from_dict(json.loads(row['mapping'])),
            confidence=row['confidence'],
            success_count=row['success_count'],
            detection_method=row['detection_method'] or '',
            filename_pattern=row['filename_pattern'] or '',
            created_at=row['created_at'],
            last_success_at=row['last_success_at'],
            superseded_at=row['superseded_at'],
        )

    def _active_row(self, source_key: str, organization_id: Optional[str]):
        return self._conn.execute('''
            SELECT * FROM mapping_history
            WHERE source_key = ? AND organization_id = ? AND superseded_at IS NULL
            ORDER BY id DESC LIMIT 1
        ''', (source_key, _org(organization_id))).fetchone()

    def get_active_record(self, source_key: str,
                          organization_id: Optional[str] = None) -> Optional[MappingHistoryRecord]:
        """The current (non-superseded) learned mapping for a source key."""
        with self._lock:
            row = self._active_row(source_key, organization_id)
        return self._row_to_record(row) if row else None

    def find_distributor_records(self, distributor_id: str,
                                 organization_id: Optional[str] = None,
                                 limit: int = 10) -> list:
        """Most recently used active mappings for a distributor."""
        with self._lock:
            rows = self._conn.execute('''
                SELECT * FROM mapping_history
                WHERE distributor_id = ? AND organization_id = ? AND superseded_at IS NULL
                ORDER BY last_success_at DESC, id DESC LIMIT ?
            ''', (distributor_id, _org(organization_id), limit)).fetchall()
        return [self._row_to_record(r) for r in rows]

    def list_records(self, organization_id: Optional[str] = None,
                     distributor_id: Optional[str] = None,
                     include_superseded: bool = False, limit: int = 50) -> list:
        sql = 'SELECT * FROM mapping_history WHERE organization_id = ?'
        params: list = [_org(organization_id)]
        if distributor_id is not None:
            sql += ' AND distributor_id = ?'
            params.append(distributor_id)
        if not include_superseded:
            sql += ' AND superseded_at IS NULL'
        sql += ' ORDER BY last_success_at DESC, id DESC LIMIT ?'
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def record_attempt(self, source_key: str, mapping: ColumnMapping, rows_processed: int,
                       success_rate: float, detection_method: str = '',
                       organization_id: Optional[str] = None,
                       run_id: Optional[str] = None, learned: bool = False):
        """Log a transform outcome for observability (learned or not)."""
        try:
            with self._lock, self._conn:
                self._insert_attempt(source_key, mapping, rows_processed, success_rate,
                                     detection_method, organization_id, run_id, learned)
        except sqlite3.Error as e:
            raise LearningPersistenceFailure(f"Cannot record attempt for {source_key}: {e}") from e

    def _insert_attempt(self, source_key, mapping, rows_processed, success_rate,
                        detection_method, organization_id, run_id, learned):
        self._conn.execute('''
            INSERT INTO mapping_attempts
            (run_id, source_key, organization_id, mapping, detection_method,
             rows_processed, success_rate, learned, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            run_id, source_key, _org(organization_id),
            json.dumps(mapping.as_simple(), sort_keys=True), detection_method,
            rows_processed, success_rate, int(learned), datetime.now().isoformat(),
        ))

    def is_run_applied(self, run_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                'SELECT 1 FROM applied_runs WHERE run_id = ?', (run_id,)
            ).fetchone()
        return row is not None

    def apply_outcome(self, run_id: str, source_key: str, mapping: ColumnMapping,
                      confidence: float, rows_processed: int, success_rate: float,
                      detection_method: str = '', synonym_keys: Iterable[tuple] = (),
                      organization_id: Optional[str] = None,
                      distributor_id: Optional[str] = None,
                      filename_pattern: str = '',
                      weight_step: float = 0.02, success_bonus: float = 0.05) -> AppliedOutcome:
        """
        Persist one successful run atomically.

        Same mapping as the active record: success_count += 1 and confidence
        rises by success_bonus (capped at 1.0). Different mapping: the active
        record is superseded and a new one inserted. Every contributing synonym
        gets usage_count += 1 and weight += weight_step (capped at 1.0).

        Re-applying a run_id that was already applied changes nothing.

        Raises:
            LearningPersistenceFailure: any SQLite error; the transaction is rolled back.
        """
        now = datetime.now().isoformat()
        org = _org(organization_id)
        simple = mapping.as_simple()
        stored = json.dumps(
            {f.value: FieldMapping(e.source_column, e.confidence, e.method).to_dict()
             for f, e in mapping.items()},
            sort_keys=True,
        )
        outcome = AppliedOutcome()

        try:
            with self._lock, self._conn:
                if self._conn.execute(
                    'SELECT 1 FROM applied_runs WHERE run_id = ?', (run_id,)
                ).fetchone():
                    outcome.duplicate = True
                    return outcome

                row = self._active_row(source_key, organization_id)
                current = self._row_to_record(row) if row else None

                if current is not None and current.mapping.as_simple() == simple:
                    new_conf = min(1.0, max(current.confidence, confidence) + success_bonus)
                    self._conn.execute('''
                        UPDATE mapping_history
                        SET success_count = success_count + 1, confidence = ?,
                            last_success_at = ?, detection_method = ?,
                            filename_pattern = COALESCE(NULLIF(?, ''), filename_pattern)
                        WHERE id = ?
                    ''', (new_conf, now, detection_method, filename_pattern, current.id))
                    record_id = current.id
                else:
                    if current is not None:
                        self._conn.execute(
                            'UPDATE mapping_history SET superseded_at = ? WHERE id = ?',
                            (now, current.id),
                        )
                        outcome.superseded_id = current.id
                    cur = self._conn.execute('''
                        INSERT INTO mapping_history
                        (source_key, organization_id, distributor_id, mapping, confidence,
                         success_count, detection_method, filename_pattern, created_at, last_success_at)
                        VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
                    ''', (
                        source_key, org, distributor_id, stored, min(1.0, confidence),
                        detection_method, filename_pattern, now, now,
                    ))
                    record_id = cur.lastrowid
                    outcome.created = True

                for key in dict.fromkeys(synonym_keys):
                    f, variant, syn_org = key
                    cur = self._conn.execute('''
                        UPDATE field_synonyms
                        SET usage_count = usage_count + 1, weight = MIN(1.0, weight + ?)
                        WHERE canonical_field = ? AND variant_text = ? AND organization_id = ?
                    ''', (weight_step, f, variant, syn_org))
                    outcome.synonyms_bumped += cur.rowcount

                self._conn.execute(
                    'INSERT INTO applied_runs (run_id, source_key, applied_at) VALUES (?, ?, ?)',
                    (run_id, source_key, now),
                )
                self._insert_attempt(source_key, mapping, rows_processed, success_rate,
                                     detection_method, organization_id, run_id, True)

                row = self._conn.execute(
                    'SELECT * FROM mapping_history WHERE id = ?', (record_id,)
                ).fetchone()
                outcome.record = self._row_to_record(row)
        except sqlite3.Error as e:
            raise LearningPersistenceFailure(f"Cannot persist mapping for {source_key}: {e}") from e

        return outcome

    # ═══════════════════════════════════════════════════════════════
    #  STATISTICS
    # ═══════════════════════════════════════════════════════════════

    def statistics(self, organization_id: Optional[str] = None, top: int = 10) -> StoreStatistics:
        org = _org(organization_id)
        stats = StoreStatistics()
        with self._lock:
            row = self._conn.execute('''
                SELECT COUNT(*) AS n, AVG(confidence) AS avg_conf FROM mapping_history
                WHERE organization_id = ? AND superseded_at IS NULL
            ''', (org,)).fetchone()
            stats.total_mappings = row['n']
            stats.average_confidence = row['avg_conf'] or 0.0

            row = self._conn.execute('''
                SELECT COUNT(*) AS n, SUM(1 - learned) AS failed, AVG(success_rate) AS avg_rate
                FROM mapping_attempts WHERE organization_id = ?
            ''', (org,)).fetchone()
            stats.total_attempts = row['n']
            stats.failed_attempts = row['failed'] or 0
            stats.average_success_rate = row['avg_rate'] or 0.0

            for r in self._conn.execute('''
                SELECT detection_method, COUNT(*) AS n FROM mapping_history
                WHERE organization_id = ? AND superseded_at IS NULL
                GROUP BY detection_method
            ''', (org,)).fetchall():
                stats.detection_methods[r['detection_method'] or 'unknown'] = r['n']

        stats.top_synonyms = self.top_synonyms(organization_id, top)
        return stats


def learned_mapping(record: MappingHistoryRecord, confidence: Optional[float] = None) -> ColumnMapping:
    """A stored mapping re-tagged as Learned with the record's confidence."""
    conf = record.confidence if confidence is None else confidence
    mapping = ColumnMapping()
    for f, entry in record.mapping.items():
        mapping.set(f, FieldMapping(
            source_column=entry.source_column,
            confidence=round(conf, 4),
            method=DetectionMethod.LEARNED,
            contributors=(DetectionMethod.LEARNED,),
        ))
    return mapping
