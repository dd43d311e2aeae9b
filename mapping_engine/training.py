"""
training.py — Feedback writer and learning administration.

Closes the learning loop: after a transform, a successful run persists the
accepted mapping for its source key and bumps the synonyms that produced it.
Failed runs only leave an attempt record. Learning is best-effort; a store
failure is reported, never raised past the caller's transform result.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from .config import EngineConfig
from .errors import LEARNING_PERSISTENCE_FAILURE, LearningPersistenceFailure, warning_line
from .fields import CanonicalField, DetectionResult, FieldSynonym, normalize_header
from .history_db import HistoryDB, MappingHistoryRecord, StoreStatistics
from .row_transformer import TransformResult


# ═══════════════════════════════════════════════════════════════
#  FEEDBACK
# ═══════════════════════════════════════════════════════════════

@dataclass
class FeedbackOutcome:
    run_id: str
    source_key: str
    success_rate: float
    accepted: bool = False       # success rate reached the acceptance threshold
    persisted: bool = False      # mapping written (or already written for this run)
    duplicate: bool = False      # run_id had been applied before; nothing changed
    record: Optional[MappingHistoryRecord] = None
    synonyms_bumped: int = 0
    error: Optional[str] = None

    def summary(self) -> str:
        if self.error:
            return f"Learning skipped for {self.source_key}: {self.error}"
        if not self.accepted:
            return (
                f"Not learned: success rate {self.success_rate:.0%} below threshold "
                f"({self.source_key})"
            )
        if self.duplicate:
            return f"Run {self.run_id} already applied ({self.source_key})"
        rec = self.record
        return (
            f"Learned mapping for {self.source_key}: confidence {rec.confidence:.0%}, "
            f"{rec.success_count} successful run(s), {self.synonyms_bumped} synonym(s) reinforced"
        )


def _distributor_from_key(source_key: str) -> Optional[str]:
    prefix, _, _ = source_key.partition(':')
    return None if prefix in ('', 'any') else prefix


class FeedbackWriter:
    """
    Persists transform outcomes into the learning store.

    Args:
        store: shared HistoryDB
        config: acceptance threshold and reinforcement steps
    """

    def __init__(self, store: HistoryDB, config: Optional[EngineConfig] = None):
        self.store = store
        self.config = config or EngineConfig()

    def record_outcome(self, detection: DetectionResult, transform: TransformResult,
                       run_id: Optional[str] = None,
                       organization_id: Optional[str] = None,
                       distributor_id: Optional[str] = None,
                       filename_pattern: str = '') -> FeedbackOutcome:
        """
        Learn from one completed transform.

        Re-sending the same run_id is a no-op, so retries cannot double-count.
        """
        run_id = run_id or uuid.uuid4().hex
        source_key = detection.source_key
        outcome = FeedbackOutcome(
            run_id=run_id,
            source_key=source_key,
            success_rate=transform.success_rate,
        )
        outcome.accepted = (
            transform.total_rows > 0
            and transform.success_rate >= self.config.acceptance_threshold
        )

        try:
            if not outcome.accepted:
                self.store.record_attempt(
                    source_key, detection.mapping, transform.total_rows, transform.success_rate,
                    detection.method.value, organization_id, run_id, learned=False,
                )
                return outcome

            synonym_keys = [
                key for _, entry in detection.mapping.items() for key in entry.synonyms
            ]
            applied = self.store.apply_outcome(
                run_id=run_id,
                source_key=source_key,
                mapping=detection.mapping,
                confidence=detection.overall_confidence,
                rows_processed=transform.total_rows,
                success_rate=transform.success_rate,
                detection_method=detection.method.value,
                synonym_keys=synonym_keys,
                organization_id=organization_id,
                distributor_id=distributor_id or _distributor_from_key(source_key),
                filename_pattern=filename_pattern,
                weight_step=self.config.synonym_weight_step,
                success_bonus=self.config.learned_success_bonus,
            )
        except LearningPersistenceFailure as e:
            print(f"Warning: {warning_line(LEARNING_PERSISTENCE_FAILURE, str(e))}")
            outcome.error = str(e)
            return outcome

        outcome.persisted = True
        outcome.duplicate = applied.duplicate
        outcome.record = applied.record
        outcome.synonyms_bumped = applied.synonyms_bumped
        return outcome


def record_outcome(store: HistoryDB, detection: DetectionResult, transform: TransformResult,
                   config: Optional[EngineConfig] = None, **kwargs) -> FeedbackOutcome:
    """One-shot FeedbackWriter.record_outcome()."""
    return FeedbackWriter(store, config).record_outcome(detection, transform, **kwargs)


# ═══════════════════════════════════════════════════════════════
#  SYNONYM ADMINISTRATION
# ═══════════════════════════════════════════════════════════════

def add_custom_synonym(store: HistoryDB, canonical_field, variant_text: str,
                       organization_id: Optional[str] = None,
                       weight: float = 1.0) -> FieldSynonym:
    """
    Register a new header variant for a field.

    Raises:
        ValueError: unknown field, empty variant, or the variant already exists
                    for this field and scope
    """
    parsed = CanonicalField.parse(canonical_field)
    if parsed is None:
        raise ValueError(f"Unknown canonical field: {canonical_field!r}")
    variant = normalize_header(variant_text)
    if not variant:
        raise ValueError("Synonym text cannot be empty")

    synonym = FieldSynonym(parsed, variant, organization_id=organization_id, weight=weight)
    if not store.insert_synonym(synonym):
        raise ValueError(f"Synonym '{variant}' already exists for {parsed.value}")
    return synonym


def deactivate_synonym(store: HistoryDB, canonical_field, variant_text: str,
                       organization_id: Optional[str] = None) -> bool:
    """Stop using a synonym without deleting it. False when it does not exist."""
    return store.set_synonym_active(canonical_field, variant_text, organization_id, active=False)


# ═══════════════════════════════════════════════════════════════
#  HISTORY & STATISTICS
# ═══════════════════════════════════════════════════════════════

def get_mapping_history(store: HistoryDB, organization_id: Optional[str] = None,
                        distributor_id: Optional[str] = None,
                        include_superseded: bool = False, limit: int = 50) -> list:
    """Learned mappings, most recently used first."""
    return store.list_records(organization_id, distributor_id, include_superseded, limit)


def get_mapping_statistics(store: HistoryDB, organization_id: Optional[str] = None,
                           top: int = 10) -> StoreStatistics:
    """Totals, averages, method counts and the most used synonyms."""
    return store.statistics(organization_id, top)
