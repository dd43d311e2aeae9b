"""
pipeline.py — End-to-end run: detect → transform → learn.

Wires one shared HistoryDB, the AI adapter and the config into a single
entry point the CLI (or any caller holding decoded rows) can use.
"""

from dataclasses import dataclass
from typing import Optional

import pandas as pd

from .ai_classifier import AIClassifierAdapter, classifier_from_config
from .cell_values import is_blank, to_cell_value
from .config import EngineConfig
from .detector import HybridDetector, filename_pattern
from .fields import DetectionResult, clean_headers
from .file_profiler import is_total_row, prepare_sample, split_extract
from .history_db import HistoryDB
from .row_transformer import RowTransformer, TransformResult
from .training import FeedbackOutcome, FeedbackWriter


@dataclass
class ProcessingResult:
    """Result from processing one extract."""
    detection: DetectionResult
    transform: TransformResult
    feedback: Optional[FeedbackOutcome] = None

    def summary(self) -> str:
        parts = [self.detection.summary(), self.transform.summary()]
        if self.feedback is not None:
            parts.append(self.feedback.summary())
        return '\n\n'.join(parts)


class MappingEngine:
    """
    Long-lived engine: one store and one AI adapter shared by every run.

    Args:
        config: policy constants (EngineConfig defaults when None)
        store: learning store; opened at config.db_path when None
        ai: AI adapter; built from config.ai_endpoint when None
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 store: Optional[HistoryDB] = None,
                 ai: Optional[AIClassifierAdapter] = None):
        self.config = config or EngineConfig()
        self.store = store if store is not None else HistoryDB(self.config.db_path)
        self.ai = ai if ai is not None else AIClassifierAdapter(classifier_from_config(self.config), self.config)
        self.detector = HybridDetector(self.store, self.ai, self.config)
        self.feedback = FeedbackWriter(self.store, self.config)

    def close(self):
        self.store.close()

    def detect(self, headers: list, sample_rows: Optional[list] = None, **kwargs) -> DetectionResult:
        return self.detector.detect(headers, sample_rows, **kwargs)

    def process_rows(self, headers: list, rows: list,
                     source_key: Optional[str] = None,
                     distributor_id: Optional[str] = None,
                     organization_id: Optional[str] = None,
                     organization_hints: Optional[list] = None,
                     default_period: Optional[str] = None,
                     training_instructions: Optional[str] = None,
                     filename: Optional[str] = None,
                     run_id: Optional[str] = None,
                     learn: bool = True) -> ProcessingResult:
        """
        Detect on a bounded sample, transform every row, then learn.

        Raises:
            RequiredFieldUnresolved: from detection; nothing is transformed or learned.
            ValueError: default_period is not a recognisable period.
        """
        # Detection and transform must key rows by the same header text
        headers = clean_headers(headers)
        sample = prepare_sample(rows, self.config.max_sample_rows)
        detection = self.detector.detect(
            headers, sample,
            source_key=source_key,
            organization_hints=organization_hints,
            distributor_id=distributor_id,
            organization_id=organization_id,
            training_instructions=training_instructions,
        )
        transformer = RowTransformer(detection.mapping, default_period, self.config)
        transform = transformer.transform(rows, headers)

        feedback = None
        if learn:
            feedback = self.feedback.record_outcome(
                detection, transform,
                run_id=run_id,
                organization_id=organization_id,
                distributor_id=distributor_id,
                filename_pattern=filename_pattern(filename) if filename else '',
            )
        return ProcessingResult(detection, transform, feedback)

    def process_extract(self, raw_rows: list, **kwargs) -> ProcessingResult:
        """Raw extract with an unknown header position (title rows, notes, ...)."""
        header, _ = split_extract(raw_rows, self.config)
        body = []
        for row in raw_rows[header.index + 1:]:
            cells = [row[i] if i < len(row) else None for i in header.column_indices]
            if all(is_blank(to_cell_value(v)) for v in cells) or is_total_row(cells):
                continue
            body.append(cells)
        return self.process_rows(header.headers, body, **kwargs)

    def process_dataframe(self, df: pd.DataFrame, **kwargs) -> ProcessingResult:
        headers = [str(c) for c in df.columns]
        rows = [list(values) for values in df.itertuples(index=False, name=None)]
        return self.process_rows(headers, rows, **kwargs)
