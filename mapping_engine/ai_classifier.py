"""
ai_classifier.py — Adapter for the external column-classification service.

The service sees headers + a bounded sample (plus optional training
instructions and synonym hints) and answers with a field → column mapping,
a confidence per field and a rationale. The adapter treats the call as
unreliable: transport errors, malformed responses and low confidence all
come back as "no result", never as an exception.
"""

import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Annotated, Callable, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import EngineConfig
from .errors import DETECTOR_UNAVAILABLE, DetectorUnavailable, warning_line
from .fields import (
    CanonicalField, ColumnMapping, DetectionMethod, FieldMapping, FIELD_DESCRIPTIONS,
)


# ═══════════════════════════════════════════════════════════════
#  WIRE CONTRACT
# ═══════════════════════════════════════════════════════════════

Confidence = Annotated[float, Field(ge=0.0, le=1.0)]


class ClassifierResponse(BaseModel):
    """Response body; anything that does not fit is an adapter failure."""
    model_config = ConfigDict(populate_by_name=True)

    field_mappings: Union[Dict[str, Optional[str]], List[Dict[str, Optional[str]]]] = Field(
        alias='fieldMappings'
    )
    confidence_per_field: Dict[str, Confidence] = Field(alias='confidencePerField')
    reasoning: str

    def merged_mappings(self) -> dict:
        """fieldMappings may be one object or a list of single-field objects."""
        if isinstance(self.field_mappings, dict):
            return dict(self.field_mappings)
        merged: dict = {}
        for entry in self.field_mappings:
            merged.update(entry)
        return merged


def _json_cell(value):
    if isinstance(value, Decimal):
        return str(value)
    return value


def build_request(headers: list, sample_rows: list,
                  training_instructions: Optional[str] = None,
                  synonym_hints: Optional[dict] = None) -> dict:
    """Request body for the classification service."""
    request = {
        'headers': list(headers),
        'sampleRows': [[_json_cell(v) for v in row] for row in sample_rows],
        'fieldDescriptions': {f.value: d for f, d in FIELD_DESCRIPTIONS.items()},
    }
    if training_instructions:
        request['trainingInstructions'] = training_instructions
    if synonym_hints:
        request['synonymsByField'] = synonym_hints
    return request


# ═══════════════════════════════════════════════════════════════
#  SERVICE PORT
# ═══════════════════════════════════════════════════════════════

class ColumnClassifier(ABC):
    """Port for the external service: request dict in, raw response dict out."""

    @abstractmethod
    def classify(self, request: dict) -> dict:
        ...


class HttpColumnClassifier(ColumnClassifier):
    """
    POSTs the request as JSON to a classification endpoint.

    Args:
        endpoint: service URL
        api_key: sent as a bearer token when given
        timeout: client timeout in seconds
        transport: optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(self, endpoint: str, api_key: Optional[str] = None,
                 timeout: float = 15.0, transport: Optional[httpx.BaseTransport] = None):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def classify(self, request: dict) -> dict:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            resp = client.post(self.endpoint, json=request, headers=headers)
            resp.raise_for_status()
            try:
                return resp.json()
            except ValueError as e:
                raise DetectorUnavailable(f"Non-JSON response from {self.endpoint}") from e


def classifier_from_config(config: EngineConfig) -> Optional[ColumnClassifier]:
    """HTTP classifier when an endpoint is configured, else None."""
    if not config.ai_endpoint:
        return None
    return HttpColumnClassifier(config.ai_endpoint, config.ai_api_key, config.ai_timeout_seconds)


# ═══════════════════════════════════════════════════════════════
#  ADAPTER
# ═══════════════════════════════════════════════════════════════

@dataclass
class AIProposal:
    mapping: ColumnMapping
    confidence: float
    reasoning: str = ''


@dataclass
class AIOutcome:
    """Adapter result: a proposal or None, plus operator-facing warnings."""
    proposal: Optional[AIProposal] = None
    warnings: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.proposal is not None


class AIClassifierAdapter:
    """
    Fail-soft wrapper around a ColumnClassifier.

    Returns no result when the classifier is missing, errors, answers in the
    wrong shape, or answers with mean confidence below ai_confidence_floor.
    """

    def __init__(self, classifier: Optional[ColumnClassifier] = None,
                 config: Optional[EngineConfig] = None):
        self.classifier = classifier
        self.config = config or EngineConfig()

    @property
    def available(self) -> bool:
        return self.classifier is not None

    def classify(self, headers: list, sample_rows: list,
                 training_instructions: Optional[str] = None,
                 synonym_hints: Optional[dict] = None) -> AIOutcome:
        outcome = AIOutcome()
        if self.classifier is None:
            return outcome

        request = build_request(headers, sample_rows, training_instructions, synonym_hints)
        try:
            raw = self.classifier.classify(request)
            response = ClassifierResponse.model_validate(raw)
        except httpx.HTTPError as e:
            outcome.warnings.append(warning_line(DETECTOR_UNAVAILABLE, f"AI classifier request failed: {e}"))
            return outcome
        except DetectorUnavailable as e:
            outcome.warnings.append(warning_line(DETECTOR_UNAVAILABLE, str(e)))
            return outcome
        except ValidationError as e:
            outcome.warnings.append(warning_line(
                DETECTOR_UNAVAILABLE, f"AI classifier returned a malformed response ({e.error_count()} errors)"
            ))
            return outcome
        except Exception as e:
            outcome.warnings.append(warning_line(DETECTOR_UNAVAILABLE, f"AI classifier failed: {e}"))
            return outcome

        header_set = set(headers)
        mapping = ColumnMapping()
        used_columns = set()
        for name, column in response.merged_mappings().items():
            if not column:
                continue
            canonical = CanonicalField.parse(name)
            if canonical is None:
                outcome.warnings.append(f"AI classifier proposed unknown field '{name}' (ignored)")
                continue
            if column not in header_set:
                outcome.warnings.append(
                    f"AI classifier mapped {canonical.value} to missing column '{column}' (ignored)"
                )
                continue
            if column in used_columns:
                outcome.warnings.append(
                    f"AI classifier mapped '{column}' to more than one field; kept the first"
                )
                continue
            used_columns.add(column)
            confidence = response.confidence_per_field.get(name,
                         response.confidence_per_field.get(canonical.value, 0.0))
            mapping.set(canonical, FieldMapping(
                source_column=column,
                confidence=float(confidence),
                method=DetectionMethod.AI,
                contributors=(DetectionMethod.AI,),
            ))

        if not mapping:
            outcome.warnings.append("AI classifier returned no usable mappings")
            return outcome

        overall = mapping.average_confidence()
        if overall < self.config.ai_confidence_floor:
            outcome.warnings.append(
                f"AI classifier confidence {overall:.0%} below floor "
                f"{self.config.ai_confidence_floor:.0%} (ignored)"
            )
            return outcome

        outcome.proposal = AIProposal(mapping=mapping, confidence=overall, reasoning=response.reasoning)
        return outcome

    def propose(self, headers: list, sample_rows: list, **kwargs) -> Optional[AIProposal]:
        """The proposal alone, or None."""
        return self.classify(headers, sample_rows, **kwargs).proposal


# ═══════════════════════════════════════════════════════════════
#  BATCHED CLASSIFICATION
# ═══════════════════════════════════════════════════════════════

def classify_in_batches(items: list, classify_fn: Callable, batch_size: int = 10,
                        delay_seconds: float = 0.5,
                        on_progress: Optional[Callable] = None,
                        sleep: Callable = time.sleep) -> list:
    """
    Run classify_fn over items in fixed-size batches with a pause between batches.

    Items inside one batch run concurrently. Results keep the input order; an
    item whose call raises yields None.

    Args:
        on_progress: called as on_progress(done, total) after each batch
    """
    results: list = []
    total = len(items)
    if total == 0:
        return results

    def _safe(item):
        try:
            return classify_fn(item)
        except Exception as e:
            print(f"Warning: batch classification failed for one item: {e}")
            return None

    batch_size = max(1, batch_size)
    for start in range(0, total, batch_size):
        batch = items[start:start + batch_size]
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            results.extend(pool.map(_safe, batch))
        if on_progress:
            on_progress(len(results), total)
        if start + batch_size < total and delay_seconds > 0:
            sleep(delay_seconds)
    return results
