"""
hybrid_combiner.py — Fuse detector proposals into one column mapping.

Learned mappings at or above the reuse threshold are authoritative for their
fields. Every other field is resolved from the pooled candidates of all
detectors: agreeing detectors share one candidate scored by the highest
confidence, and competing candidates are assigned greedily so each source
column serves at most one field.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from .config import EngineConfig
from .errors import AMBIGUOUS_MAPPING, warning_line
from .fields import (
    CanonicalField, ColumnMapping, DetectionMethod, FieldMapping,
    FIELD_ORDER, METHOD_PRIORITY,
)


@dataclass
class Candidate:
    """One (field, column) pair with every detector that proposed it."""
    canonical_field: CanonicalField
    column: str
    confidence: float
    best_method: DetectionMethod
    contributors: set = field(default_factory=set)
    synonyms: list = field(default_factory=list)

    @property
    def method(self) -> DetectionMethod:
        if len(self.contributors) > 1:
            return DetectionMethod.HYBRID
        return self.best_method


@dataclass
class CombinedMapping:
    mapping: ColumnMapping
    overall_confidence: float
    method: DetectionMethod
    warnings: list = field(default_factory=list)


def _pool_candidates(proposals: dict) -> dict:
    """{(field, column): Candidate} across all detectors."""
    pooled: dict = {}
    for method, mapping in proposals.items():
        if not mapping:
            continue
        for f, entry in mapping.items():
            if entry.confidence <= 0:
                continue
            key = (f, entry.source_column)
            cand = pooled.get(key)
            if cand is None:
                cand = Candidate(f, entry.source_column, entry.confidence, method)
                pooled[key] = cand
            elif (entry.confidence, -METHOD_PRIORITY[method]) > (cand.confidence, -METHOD_PRIORITY[cand.best_method]):
                cand.confidence = entry.confidence
                cand.best_method = method
            cand.contributors.add(method)
            for key_ in entry.synonyms:
                if key_ not in cand.synonyms:
                    cand.synonyms.append(key_)
    return pooled


def overall_method(mapping: ColumnMapping) -> DetectionMethod:
    """Plurality of per-field methods; ties go to the higher-priority method."""
    if not mapping:
        return DetectionMethod.HYBRID
    counts = Counter(entry.method for _, entry in mapping.items())
    return min(counts, key=lambda m: (-counts[m], METHOD_PRIORITY[m]))


def combine(proposals: dict, headers: Optional[list] = None,
            authoritative: Optional[ColumnMapping] = None,
            config: Optional[EngineConfig] = None) -> CombinedMapping:
    """
    Fuse detector proposals.

    Args:
        proposals: {DetectionMethod: ColumnMapping} from each detector that ran
        headers: header order, used as the last tie-break
        authoritative: learned entries accepted as-is when their confidence
                       reaches reuse_confidence_threshold
        config: policy constants

    Returns:
        CombinedMapping with per-field provenance and AmbiguousMapping warnings.
    """
    config = config or EngineConfig()
    header_rank = {h: i for i, h in enumerate(headers or [])}
    warnings: list = []
    result = ColumnMapping()
    used_columns: set = set()

    if authoritative:
        for f, entry in authoritative.items():
            if entry.confidence < config.reuse_confidence_threshold:
                continue
            if entry.source_column in used_columns:
                continue
            result.set(f, FieldMapping(
                source_column=entry.source_column,
                confidence=entry.confidence,
                method=DetectionMethod.LEARNED,
                contributors=(DetectionMethod.LEARNED,),
            ))
            used_columns.add(entry.source_column)

    candidates = [
        c for c in _pool_candidates(proposals).values()
        if c.canonical_field not in result and c.column not in used_columns
    ]
    candidates.sort(key=lambda c: (
        -c.confidence,
        METHOD_PRIORITY[c.best_method],
        FIELD_ORDER.index(c.canonical_field),
        header_rank.get(c.column, len(header_rank)),
    ))

    for cand in candidates:
        if cand.canonical_field in result or cand.column in used_columns:
            continue
        rivals = [
            other.canonical_field.value for other in candidates
            if other.column == cand.column
            and other.canonical_field != cand.canonical_field
            and other.canonical_field not in result
            and other.confidence == cand.confidence
        ]
        if rivals:
            warnings.append(warning_line(
                AMBIGUOUS_MAPPING,
                f"'{cand.column}' fits {cand.canonical_field.value} and {', '.join(rivals)} "
                f"equally ({cand.confidence:.0%}); assigned to {cand.canonical_field.value}",
            ))
        result.set(cand.canonical_field, FieldMapping(
            source_column=cand.column,
            confidence=cand.confidence,
            method=cand.method,
            synonyms=tuple(cand.synonyms),
            contributors=tuple(sorted(cand.contributors, key=lambda m: METHOD_PRIORITY[m])),
        ))
        used_columns.add(cand.column)

    return CombinedMapping(
        mapping=result,
        overall_confidence=round(result.average_confidence(), 4),
        method=overall_method(result),
        warnings=warnings,
    )
