"""
Generative Resolver - One call to the generative model, parsed into a typed payload

Responsibilities:
- Build the chat from conversation turns (prompt_builder)
- Call the model client for a JSON object
- Validate the raw object at the boundary and convert it into
  ResolutionPayload or ClarificationPayload

NOT responsible for:
- Retries, backoff or deadlines (orchestrator)
- Code existence checks or scoring (Response Validator)

Design principles:
- Duck-typed client (anything with generate_json() and is_loaded())
- Malformed payloads raise GenerativeServiceError, never pass through
- Synchronous: the orchestrator runs it in a worker thread

Expected model payload:
    {
        "suggestions": [{"code", "name", "rationale", "confidence"?}, ...],
        "needsClarification": bool,
        "clarifyingQuestion": str | null
    }
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from diagnosis_resolver.contracts import (
    CandidateCode,
    ClarificationPayload,
    GenerativePayload,
    ResolutionPayload,
    Turn,
)
from diagnosis_resolver.exceptions import GenerativeServiceError
from diagnosis_resolver.utils.prompt_builder import build_messages

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8
REQUIRED_SUGGESTION_FIELDS = ("code", "name", "rationale")


def _parse_confidence(value: Any, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise GenerativeServiceError(f"confidence must be a number, got {value!r}")
    return max(0.0, min(float(value), 1.0))


def _parse_suggestion(item: Any, index: int, default_confidence: float) -> CandidateCode:
    if not isinstance(item, dict):
        raise GenerativeServiceError(f"suggestions[{index}] must be an object, got {type(item).__name__}")

    missing = [f for f in REQUIRED_SUGGESTION_FIELDS if not isinstance(item.get(f), str) or not item.get(f).strip()]
    if missing:
        raise GenerativeServiceError(f"suggestions[{index}] missing text fields: {missing}")

    return CandidateCode(
        code=item["code"].strip(),
        name=item["name"].strip(),
        rationale=item["rationale"].strip(),
        confidence=_parse_confidence(item.get("confidence"), default_confidence),
    )


def parse_payload(data: Any, default_confidence: float = DEFAULT_CONFIDENCE) -> GenerativePayload:
    """
    Convert a raw model object into a typed payload.

    Args:
        data: Parsed JSON from the model
        default_confidence: Confidence for suggestions that omit one

    Returns:
        ResolutionPayload or ClarificationPayload

    Raises:
        GenerativeServiceError: If the object does not have the expected shape
    """
    if not isinstance(data, dict):
        raise GenerativeServiceError(f"Payload must be an object, got {type(data).__name__}")

    if "suggestions" not in data or "needsClarification" not in data:
        raise GenerativeServiceError("Payload missing 'suggestions' or 'needsClarification'")

    raw_suggestions = data["suggestions"]
    if not isinstance(raw_suggestions, list):
        raise GenerativeServiceError("'suggestions' must be a list")

    needs_clarification = data["needsClarification"]
    if not isinstance(needs_clarification, bool):
        raise GenerativeServiceError("'needsClarification' must be a boolean")

    candidates = tuple(
        _parse_suggestion(item, index, default_confidence)
        for index, item in enumerate(raw_suggestions)
    )

    if needs_clarification:
        question = data.get("clarifyingQuestion")
        if not isinstance(question, str) or not question.strip():
            raise GenerativeServiceError("Clarification payload without a clarifyingQuestion")
        return ClarificationPayload(question=question.strip(), candidates=candidates)

    return ResolutionPayload(candidates=candidates)


class GenerativeResolver:
    """Ask the generative model for candidate codes or a clarifying question"""

    def __init__(
        self,
        client,
        max_tokens: int = 512,
        temperature: float = 0.0,
        default_confidence: float = DEFAULT_CONFIDENCE
    ) -> None:
        """
        Args:
            client: Model client with generate_json(messages=..., max_tokens=..., temperature=...)
                and is_loaded()
            max_tokens: Max tokens to generate
            temperature: Sampling temperature
            default_confidence: Confidence for suggestions without one

        Raises:
            TypeError: If client is missing required methods
            RuntimeError: If client model not loaded
        """
        if not callable(getattr(client, 'generate_json', None)):
            raise TypeError("client must have callable generate_json() method")
        if not callable(getattr(client, 'is_loaded', None)):
            raise TypeError("client must have callable is_loaded() method")
        if not client.is_loaded():
            raise RuntimeError("Generative client model not loaded")

        self.client = client
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.default_confidence = default_confidence

        logger.info(
            f"Generative resolver initialized "
            f"(temp={temperature}, max_tokens={max_tokens})"
        )

    def resolve(
        self,
        history: Sequence[Turn],
        prior_context: Optional[List[Dict[str, Any]]] = None
    ) -> GenerativePayload:
        """
        Run one generative resolution.

        Args:
            history: Conversation turns so far
            prior_context: Caller-supplied earlier question/answer pairs

        Returns:
            GenerativePayload: Typed, shape-checked model answer

        Raises:
            GenerativeServiceError: Malformed payload or client failure that
                the client itself reported as such
            Exception: Client failures propagate unchanged for classification
        """
        messages = build_messages(history, prior_context)
        raw = self.client.generate_json(
            messages=messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature
        )
        payload = parse_payload(raw, self.default_confidence)

        logger.debug(
            f"Generative payload: kind={payload.kind}, "
            f"codes={[c.code for c in payload.candidates]}"
        )
        return payload
