"""
JSON Repair - Clean raw model output before parsing

Handles the common ways instruction-tuned models wrap or truncate JSON:
- Markdown code fences (```json ... ```)
- Prose before or after the object
- Missing or surplus closing braces

Only dict output is handled (the resolver always asks for an object).
"""

import json
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


def repair_json(text: str) -> str:
    """
    Attempt to repair common JSON formatting issues

    Conservative: strips fences, isolates the outermost {...} and balances
    braces. Braces inside string values are counted too.

    Args:
        text: Raw model output

    Returns:
        str: Cleaned JSON string (may still fail to parse)
    """
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]

    text = text.strip()

    first_brace = text.find('{')
    if first_brace == -1:
        logger.warning("No braces found in JSON repair")
        return text

    last_brace = text.rfind('}')
    if last_brace > first_brace:
        text = text[first_brace:last_brace + 1]
    else:
        # Truncated output: keep everything after the opening brace
        text = text[first_brace:]

    open_count = text.count('{')
    close_count = text.count('}')

    if open_count > close_count:
        missing = open_count - close_count
        text += '}' * missing
        logger.debug(f"Added {missing} closing braces")

    elif close_count > open_count:
        diff = close_count - open_count
        for _ in range(diff):
            last_close = text.rfind('}')
            if last_close != -1:
                text = text[:last_close] + text[last_close + 1:]
        logger.debug(f"Removed {diff} extra closing braces")

    return text


def parse_json_object(text: str) -> Dict[str, Any]:
    """
    Repair and parse model output into a dict.

    Raises:
        ValueError: If the repaired text is not a JSON object
    """
    repaired = repair_json(text)
    try:
        data = json.loads(repaired)
    except json.JSONDecodeError as e:
        raise ValueError(f"Model output is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Model output must be a JSON object, got {type(data).__name__}")
    return data
