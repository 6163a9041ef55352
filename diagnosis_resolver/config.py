"""
Resolution Config - Tunable constants for the resolution pipeline

Responsibilities:
- Hold retry, confidence, length and lifecycle constants in one place
- Load overrides from a JSON file

Design principles:
- Frozen dataclass (shared read-only across concurrent resolutions)
- Unknown keys in override files are errors, not silently ignored
"""

import json
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

DEFAULT_CODE_TABLE_PATH = Path(__file__).resolve().parent.parent / "data" / "code_table.json"
DEFAULT_HEALTH_CHECK_QUERY = "test kniepijn"


@dataclass(frozen=True)
class ResolutionConfig:
    """
    Tunable constants for the orchestrator and its collaborators.

    Attributes:
        max_attempts: Generative attempts before falling back
        retry_backoff_seconds: Linear backoff unit (attempt * unit)
        fallback_confidence_multiplier: Applied to pattern-matching candidates
        validation_boost_multiplier: Applied to candidates accepted by the validator
        default_generative_confidence: Used when the service omits a confidence
        min_query_length: Minimum trimmed query length
        max_query_length: Maximum query length
        short_rationale_max_length: Character cap for short rationales
        max_clarification_rounds: Clarifying questions allowed per conversation
        conversation_ttl_seconds: Idle time before an open conversation expires
        resolved_conversation_ttl_seconds: Idle time before a resolved one expires
        max_suggestions: Maximum candidates returned to a caller
        health_check_query: Representative query for the self-test
    """
    max_attempts: int = 2
    retry_backoff_seconds: float = 1.0
    fallback_confidence_multiplier: float = 0.8
    validation_boost_multiplier: float = 1.1
    default_generative_confidence: float = 0.8
    min_query_length: int = 3
    max_query_length: int = 1000
    short_rationale_max_length: int = 150
    max_clarification_rounds: int = 2
    conversation_ttl_seconds: float = 1800.0
    resolved_conversation_ttl_seconds: float = 600.0
    max_suggestions: int = 3
    health_check_query: str = DEFAULT_HEALTH_CHECK_QUERY

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must be non-negative")
        if self.min_query_length > self.max_query_length:
            raise ValueError(
                f"min_query_length ({self.min_query_length}) exceeds "
                f"max_query_length ({self.max_query_length})"
            )
        for name in ('fallback_confidence_multiplier', 'validation_boost_multiplier',
                     'default_generative_confidence'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")


def load_config(config_path: Union[str, Path, None] = None) -> ResolutionConfig:
    """
    Load a ResolutionConfig, applying overrides from a JSON file.

    Args:
        config_path: Path to a JSON object of overrides (None = defaults)

    Returns:
        ResolutionConfig: Defaults with file overrides applied

    Raises:
        FileNotFoundError: If config_path does not exist
        ValueError: If the file is not a JSON object or has unknown keys
    """
    config = ResolutionConfig()
    if config_path is None:
        return config

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        overrides = json.load(f)

    if not isinstance(overrides, dict):
        raise ValueError(f"Config file must contain a JSON object, got {type(overrides).__name__}")

    known = {f.name for f in fields(ResolutionConfig)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown config keys: {unknown}")

    logger.info(f"Loaded config overrides from {path}: {sorted(overrides)}")
    return replace(config, **overrides)
