"""
Prompt Builder - Construct generative resolution chats from conversation turns

Responsibilities:
- Hold the fixed DCSPH system instruction
- Convert conversation turns into chat messages
- Prepend caller-supplied prior question/answer context
- Fail fast on chats that cannot be sent (no patient text)

NOT responsible for:
- Model-specific formatting (PromptFormatter)
- Model calls or response parsing

Design principles:
- Deterministic output for the same turns
- Patient turns -> user messages, system questions -> assistant messages
- Resolution turns are never sent back to the model
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from diagnosis_resolver.contracts import Turn, TurnRole, TurnType

logger = logging.getLogger(__name__)


class PromptBuildError(ValueError):
    """Raised when a chat cannot be built from the given turns"""
    pass


DCSPH_SYSTEM_PROMPT = """Je bent een deskundige fysiotherapeut en expert in DCSPH-codering (Diagnose Codering Systeem Paramedische Hulpverlening).

## JE TAAK
Analyseer patiëntklachten en suggereer maximaal 3 waarschijnlijke DCSPH codes op basis van:
- Lichaamslocatie (Tabel A: 2-cijferige codes)
- Pathologie (Tabel B: 2-cijferige codes)
- Combinatie tot 4-cijferige DCSPH code (locatie + pathologie)

## WERKWIJZE
1. Identificeer hoofdsymptomen, locatie en ontstaanswijze
2. Kies de best passende locatiecode uit Tabel A
3. Kies de best passende pathologiecode uit Tabel B
4. Combineer tot een 4-cijferige code
5. Geef een korte, professionele onderbouwing in het Nederlands

## OUTPUT FORMAT
Antwoord ALLEEN met JSON in dit formaat:
{
  "suggestions": [
    {
      "code": "7920",
      "name": "Epicondylitis / tendinitis / tendovaginitis - Knie",
      "rationale": "Overbelasting van de patellapees past bij anterieure kniepijn; code 79 is de knie en code 20 de tendinitis.",
      "confidence": 0.85
    }
  ],
  "needsClarification": false,
  "clarifyingQuestion": null
}

## WANNEER VERDUIDELIJKING NODIG
Als de klacht te vaag is, stel 1 korte, gerichte vraag:
{
  "suggestions": [],
  "needsClarification": true,
  "clarifyingQuestion": "In welke lichaamsregio bevinden de klachten zich precies?"
}

## REGELS
- Gebruik ALLEEN codes uit de officiële DCSPH tabellen
- Maximaal 3 suggesties
- Spreek de gebruiker niet direct aan
- Bij twijfel: vraag om verduidelijking
- Gebruik Nederlandse medische terminologie"""


ROLE_FOR_TURN = {
    TurnRole.PATIENT: "user",
    TurnRole.SYSTEM: "assistant",
}


def _prior_context_messages(prior_context: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    Convert [{'question': ..., 'answer': ...}, ...] into assistant/user pairs.

    Raises:
        PromptBuildError: If an entry is not a dict with string fields
    """
    messages = []
    for index, item in enumerate(prior_context):
        if not isinstance(item, dict):
            raise PromptBuildError(f"prior_context[{index}] must be dict, got {type(item).__name__}")
        question = item.get("question")
        answer = item.get("answer")
        if not isinstance(question, str) or not isinstance(answer, str):
            raise PromptBuildError(f"prior_context[{index}] needs string 'question' and 'answer'")
        messages.append({"role": "assistant", "content": question})
        messages.append({"role": "user", "content": answer})
    return messages


def build_messages(
    history: Sequence[Turn],
    prior_context: Optional[Sequence[Dict[str, Any]]] = None,
    system_prompt: str = DCSPH_SYSTEM_PROMPT
) -> List[Dict[str, str]]:
    """
    Build the chat sent to the generative model.

    Args:
        history: Conversation turns in order
        prior_context: Earlier question/answer pairs supplied by the caller
        system_prompt: Fixed instruction placed first

    Returns:
        list: [{"role": ..., "content": ...}, ...] starting with the system
            message and ending with a user message

    Raises:
        PromptBuildError: If there is no patient text to resolve

    Example:
        >>> build_messages([Turn(TurnRole.PATIENT, "kniepijn", TurnType.QUERY, now)])[-1]
        {'role': 'user', 'content': 'kniepijn'}
    """
    messages = [{"role": "system", "content": system_prompt}]
    if prior_context:
        messages.extend(_prior_context_messages(prior_context))

    for turn in history:
        if turn.turn_type in (TurnType.RESOLUTION, TurnType.ABANDONMENT):
            continue
        messages.append({"role": ROLE_FOR_TURN[turn.role], "content": turn.content})

    if messages[-1]["role"] != "user":
        raise PromptBuildError("Chat must end with patient text")

    logger.debug(
        f"Built chat: {len(messages)} messages, "
        f"{sum(len(m['content']) for m in messages)} chars"
    )
    return messages
