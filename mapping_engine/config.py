"""
config.py — Tunable policy constants for detection, transformation and learning.

Defaults come from the environment; a JSON file can override any of them so
business users can tune thresholds without touching code.
"""

import json
import os
from dataclasses import dataclass, field, fields, replace
from typing import Optional


DEFAULT_CONFIG_FILE = 'mapping_engine_config.json'


def _default_db_path() -> str:
    """Store DB in user's app data directory unless overridden."""
    env_path = os.getenv('MAPPING_ENGINE_DB')
    if env_path:
        return env_path
    app_dir = os.path.join(os.path.expanduser('~'), '.mapping_engine')
    return os.path.join(app_dir, 'mapping_history.db')


@dataclass
class EngineConfig:
    # Learned-mapping reuse and acceptance
    reuse_confidence_threshold: float = 0.70
    acceptance_threshold: float = 0.50
    learned_success_bonus: float = 0.05
    learned_overlap_ratio: float = 0.70

    # AI classifier
    ai_confidence_floor: float = 0.50
    ai_fast_path_confidence: float = 0.70
    ai_timeout_seconds: float = 15.0
    ai_endpoint: Optional[str] = field(default_factory=lambda: os.getenv('MAPPING_ENGINE_AI_ENDPOINT'))
    ai_api_key: Optional[str] = field(default_factory=lambda: os.getenv('MAPPING_ENGINE_AI_API_KEY'))

    # Synonym matching
    partial_match_penalty: float = 0.85
    min_partial_match_length: int = 3
    synonym_weight_step: float = 0.02

    # Value inference
    value_match_ratio: float = 0.70
    value_date_confidence: float = 0.70
    value_revenue_confidence: float = 0.70
    value_quantity_confidence: float = 0.60
    max_inferred_quantity: int = 10000
    value_skip_confidence: float = 0.90
    max_sample_rows: int = 15

    # Row validation
    min_text_length: int = 2
    max_text_length: int = 200
    max_quantity: int = 1000000

    # Batching / parallelism
    batch_size: int = 10
    batch_delay_seconds: float = 0.5
    transform_workers: int = 1
    transform_chunk_size: int = 500

    db_path: str = field(default_factory=_default_db_path)

    def with_overrides(self, **overrides) -> 'EngineConfig':
        return replace(self, **overrides)


def load_config(path: Optional[str] = None) -> EngineConfig:
    """
    Build an EngineConfig from environment defaults plus optional JSON overrides.

    Args:
        path: JSON file with {"name": value} overrides. When None, the file
              named by MAPPING_ENGINE_CONFIG (or DEFAULT_CONFIG_FILE in the
              working directory) is used if it exists.

    Raises:
        ValueError: the file contains keys that are not EngineConfig fields.
    """
    config = EngineConfig()
    if path is None:
        path = os.getenv('MAPPING_ENGINE_CONFIG', DEFAULT_CONFIG_FILE)
        if not os.path.exists(path):
            return config

    with open(path, 'r', encoding='utf-8') as f:
        overrides = json.load(f)

    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {', '.join(unknown)}")

    return config.with_overrides(**overrides)
