"""
Unit tests for HuggingFaceClient JSON handling

The model is never loaded: the client is built without __init__ and
generate() is stubbed.
"""

from unittest.mock import Mock

import pytest

pytest.importorskip("torch")
pytest.importorskip("transformers")

from diagnosis_resolver.exceptions import GenerativeServiceError  # noqa: E402
from diagnosis_resolver.utils.hf_client import HuggingFaceClient  # noqa: E402


@pytest.fixture
def client():
    client = HuggingFaceClient.__new__(HuggingFaceClient)
    client.model_name = "mistralai/Mistral-7B-Instruct-v0.2"
    client.device = "cpu"
    client.generate = Mock()
    return client


def test_not_loaded_without_model(client):
    assert not client.is_loaded()


def test_generate_json_repairs_fenced_output(client):
    client.generate.return_value = '```json\n{"suggestions": [], "needsClarification": true'
    data = client.generate_json([{"role": "user", "content": "pijn"}])

    assert data == {"suggestions": [], "needsClarification": True}
    assert client.generate.call_args.kwargs["temperature"] == 0.0


def test_generate_json_malformed_output(client):
    client.generate.return_value = "Ik weet het niet."
    with pytest.raises(GenerativeServiceError, match="malformed JSON"):
        client.generate_json([{"role": "user", "content": "pijn"}])


def test_generate_requires_loaded_model(client):
    del client.generate
    with pytest.raises(RuntimeError, match="not loaded"):
        client.generate([{"role": "user", "content": "pijn"}])
