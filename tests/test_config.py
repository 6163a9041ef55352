"""
Unit tests for ResolutionConfig loading
"""

import json

import pytest

from diagnosis_resolver.config import DEFAULT_CODE_TABLE_PATH, ResolutionConfig, load_config


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_defaults():
    config = load_config()
    assert config.max_attempts == 2
    assert config.fallback_confidence_multiplier == 0.8
    assert config.validation_boost_multiplier == 1.1
    assert config.max_clarification_rounds == 2
    assert config.health_check_query == "test kniepijn"


def test_default_code_table_is_shipped():
    assert DEFAULT_CODE_TABLE_PATH.exists()


def test_overrides_applied(tmp_path):
    config = load_config(write_config(tmp_path, {"max_attempts": 3, "retry_backoff_seconds": 0}))
    assert config.max_attempts == 3
    assert config.retry_backoff_seconds == 0
    assert config.max_suggestions == 3


def test_unknown_keys_rejected(tmp_path):
    with pytest.raises(ValueError, match="Unknown config keys"):
        load_config(write_config(tmp_path, {"max_atempts": 3}))


def test_non_object_rejected(tmp_path):
    with pytest.raises(ValueError, match="JSON object"):
        load_config(write_config(tmp_path, [1, 2]))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.json")


@pytest.mark.parametrize("overrides", [
    {"max_attempts": 0},
    {"retry_backoff_seconds": -1},
    {"min_query_length": 10, "max_query_length": 5},
    {"fallback_confidence_multiplier": -0.1},
])
def test_invalid_values(overrides):
    with pytest.raises(ValueError):
        ResolutionConfig(**overrides)
