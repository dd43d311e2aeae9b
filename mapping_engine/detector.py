"""
detector.py — Hybrid column detection pipeline.

Learned mappings are consulted first. When none is authoritative, the AI
classifier runs on a worker thread while the synonym, pattern and value
detectors run locally; the combiner then fuses whatever came back.
Only an unresolved account/product aborts detection.
"""

import hashlib
import json
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Iterable, Optional

from .ai_classifier import AIClassifierAdapter, AIOutcome, classify_in_batches
from .cell_values import to_cell_value
from .column_mapper import SynonymTable, match_patterns
from .config import EngineConfig
from .errors import DETECTOR_UNAVAILABLE, RequiredFieldUnresolved, warning_line
from .fields import (
    ColumnMapping, DetectionMethod, DetectionResult, clean_headers, missing_required,
    normalize_header,
)
from .file_profiler import infer_from_values
from .history_db import HistoryDB, learned_mapping
from .hybrid_combiner import combine


# ═══════════════════════════════════════════════════════════════
#  SOURCE IDENTITY
# ═══════════════════════════════════════════════════════════════

def header_fingerprint(headers: Iterable) -> str:
    """Order-independent 16-hex digest of the normalized header set."""
    normalized = sorted({normalize_header(h) for h in headers if normalize_header(h)})
    digest = hashlib.sha256(json.dumps(normalized).encode('utf-8')).hexdigest()
    return digest[:16]


def make_source_key(headers: Iterable, distributor_id: Optional[str] = None) -> str:
    """'<distributor or any>:<header fingerprint>'."""
    return f"{distributor_id or 'any'}:{header_fingerprint(headers)}"


def filename_pattern(filename: str) -> str:
    """'Sales_2024-01-15 v2.xlsx' → 'sales%v%.xlsx'."""
    pattern = filename.lower()
    pattern = re.sub(r'\d{4}-\d{2}-\d{2}', '%', pattern)
    pattern = re.sub(r'\d{4}_\d{2}_\d{2}', '%', pattern)
    pattern = re.sub(r'\d{2}-\d{2}-\d{4}', '%', pattern)
    pattern = re.sub(r'\d+', '%', pattern)
    pattern = re.sub(r'[_\-\s]+', '%', pattern)
    return re.sub(r'%+', '%', pattern)


# ═══════════════════════════════════════════════════════════════
#  DETECTOR
# ═══════════════════════════════════════════════════════════════

class HybridDetector:
    """
    Runs every detector for one extract and returns a DetectionResult.

    Args:
        store: learning store (synonyms + learned mappings); None uses the
               default synonym dictionary and no learned reuse
        ai: AI adapter; None (or an adapter without a classifier) skips AI
        config: policy constants
    """

    def __init__(self, store: Optional[HistoryDB] = None,
                 ai: Optional[AIClassifierAdapter] = None,
                 config: Optional[EngineConfig] = None):
        self.store = store
        self.config = config or EngineConfig()
        self.ai = ai or AIClassifierAdapter(None, self.config)

    # ── Learned reuse ──

    def _learned_fast_path(self, source_key: str, headers: list,
                           organization_id: Optional[str]) -> Optional[ColumnMapping]:
        if self.store is None:
            return None
        record = self.store.get_active_record(source_key, organization_id)
        if record is None or record.confidence < self.config.reuse_confidence_threshold:
            return None
        header_set = set(headers)
        if not all(col in header_set for col in record.mapping.columns()):
            return None
        mapping = learned_mapping(record)
        if missing_required(mapping):
            return None
        return mapping

    def _learned_proposal(self, source_key: str, headers: list,
                          distributor_id: Optional[str],
                          organization_id: Optional[str]) -> Optional[ColumnMapping]:
        """
        Partial learned reuse: the exact key below threshold or with missing
        columns, else the distributor record with the best column overlap.
        """
        if self.store is None:
            return None
        header_set = set(headers)

        def _present(record, confidence):
            mapping = learned_mapping(record, confidence)
            for f in list(mapping.fields()):
                if mapping.column_for(f) not in header_set:
                    mapping.remove(f)
            return mapping

        exact = self.store.get_active_record(source_key, organization_id)
        if exact is not None:
            return _present(exact, exact.confidence)

        if not distributor_id:
            return None
        best, best_score = None, 0.0
        for record in self.store.find_distributor_records(distributor_id, organization_id):
            columns = record.mapping.columns()
            if not columns:
                continue
            overlap = sum(1 for c in columns if c in header_set) / len(columns)
            if overlap < self.config.learned_overlap_ratio:
                continue
            score = overlap * record.confidence
            if score > best_score:
                best, best_score = record, score
        if best is None:
            return None
        return _present(best, round(best_score, 4))

    # ── Pipeline ──

    def detect(self, headers: list, sample_rows: Optional[list] = None,
               source_key: Optional[str] = None,
               organization_hints: Optional[list] = None,
               distributor_id: Optional[str] = None,
               organization_id: Optional[str] = None,
               training_instructions: Optional[str] = None) -> DetectionResult:
        """
        Detect the column mapping for one extract.

        Raises:
            RequiredFieldUnresolved: account or product could not be mapped.
        """
        config = self.config
        headers = clean_headers(headers)
        sample = [
            [to_cell_value(v) for v in row]
            for row in (sample_rows or [])[:config.max_sample_rows]
        ]
        source_key = source_key or make_source_key(headers, distributor_id)
        warnings: list = []

        learned = self._learned_fast_path(source_key, headers, organization_id)
        if learned is not None:
            return DetectionResult(
                mapping=learned,
                overall_confidence=round(learned.average_confidence(), 4),
                method=DetectionMethod.LEARNED,
                warnings=warnings,
                source_key=source_key,
                headers=headers,
                proposals={DetectionMethod.LEARNED: learned},
            )

        if self.store is not None:
            table = SynonymTable(self.store.load_synonyms(organization_id), config)
        else:
            table = SynonymTable.from_defaults(config)
        table = table.with_hints(organization_hints)

        ai_outcome = AIOutcome()
        pool = None
        future = None
        if self.ai.available:
            pool = ThreadPoolExecutor(max_workers=1)
            future = pool.submit(
                self.ai.classify, headers, sample,
                training_instructions=training_instructions,
                synonym_hints=table.as_hint_dict(),
            )

        try:
            proposals: dict = {}
            learned_partial = self._learned_proposal(source_key, headers, distributor_id, organization_id)
            if learned_partial:
                proposals[DetectionMethod.LEARNED] = learned_partial

            synonym_mapping = table.match_headers(headers)
            proposals[DetectionMethod.SYNONYM] = synonym_mapping
            proposals[DetectionMethod.PATTERN] = match_patterns(headers)
            claimed = [
                e.source_column for _, e in synonym_mapping.items()
                if e.confidence >= config.value_skip_confidence
            ]
            proposals[DetectionMethod.VALUE_INFERENCE] = infer_from_values(headers, sample, claimed, config)

            if future is not None:
                try:
                    ai_outcome = future.result(timeout=config.ai_timeout_seconds)
                except FutureTimeout:
                    warnings.append(warning_line(
                        DETECTOR_UNAVAILABLE,
                        f"AI classifier timed out after {config.ai_timeout_seconds:g}s",
                    ))
        finally:
            if pool is not None:
                pool.shutdown(wait=False)

        warnings.extend(ai_outcome.warnings)
        ai_reasoning = ''
        if ai_outcome.proposal is not None:
            proposals[DetectionMethod.AI] = ai_outcome.proposal.mapping
            ai_reasoning = ai_outcome.proposal.reasoning

        authoritative = proposals.get(DetectionMethod.LEARNED)
        has_authority = bool(authoritative) and any(
            e.confidence >= config.reuse_confidence_threshold for _, e in authoritative.items()
        )

        proposal = ai_outcome.proposal
        if (
            proposal is not None
            and not has_authority
            and proposal.confidence >= config.ai_fast_path_confidence
            and not missing_required(proposal.mapping)
        ):
            mapping = proposal.mapping
            overall = round(proposal.confidence, 4)
            method = DetectionMethod.AI
        else:
            combined = combine(proposals, headers, authoritative, config)
            mapping = combined.mapping
            overall = combined.overall_confidence
            method = combined.method
            warnings.extend(combined.warnings)

        missing = missing_required(mapping)
        if missing:
            raise RequiredFieldUnresolved(missing, headers)

        return DetectionResult(
            mapping=mapping,
            overall_confidence=overall,
            method=method,
            warnings=warnings,
            source_key=source_key,
            headers=headers,
            proposals=proposals,
            ai_reasoning=ai_reasoning,
        )

    def detect_many(self, requests: list, on_progress=None) -> list:
        """
        Detect several extracts (e.g. every sheet of a workbook) in rate-limited batches.

        Each request is a dict of detect() keyword arguments. The result list
        keeps request order; an extract whose required fields cannot be
        resolved yields its RequiredFieldUnresolved instead of a result.
        """
        def _one(request):
            try:
                return self.detect(**request)
            except RequiredFieldUnresolved as e:
                return e

        return classify_in_batches(
            requests, _one,
            batch_size=self.config.batch_size,
            delay_seconds=self.config.batch_delay_seconds if self.ai.available else 0,
            on_progress=on_progress,
        )


def detect_columns(headers: list, sample_rows: Optional[list] = None,
                   store: Optional[HistoryDB] = None,
                   ai: Optional[AIClassifierAdapter] = None,
                   config: Optional[EngineConfig] = None, **kwargs) -> DetectionResult:
    """One-shot detection without keeping a detector around."""
    return HybridDetector(store, ai, config).detect(headers, sample_rows, **kwargs)
