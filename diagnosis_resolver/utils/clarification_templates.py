"""
Clarification Template Registry

Defines template IDs for clarifying questions and their question text.

Template Classification:
- Dimension templates: ask for one missing clinical dimension (location,
  complaint type, mechanism, timing, duration). Selected by the first
  missing dimension, in DIMENSION_ORDER.
- Terminal templates: generic re-prompts used when no targeted question
  applies or when the pipeline has to degrade.

Template text is shown to patients verbatim, so it is Dutch.
"""

from enum import Enum
from typing import Dict, Iterable, Optional


class ClarificationTemplateID(str, Enum):
    """
    Template identifiers for clarifying questions.

    Naming convention: CLARIFY_<TOPIC>
    """
    # Dimension templates
    CLARIFY_LOCATION = "clarify_location"
    CLARIFY_PATHOLOGY = "clarify_pathology"
    CLARIFY_MECHANISM = "clarify_mechanism"
    CLARIFY_TIMING = "clarify_timing"
    CLARIFY_DURATION = "clarify_duration"
    CLARIFY_RADIATION = "clarify_radiation"

    # Terminal templates
    CLARIFY_GENERIC = "clarify_generic"
    CLARIFY_RETRY = "clarify_retry"
    CLARIFY_AFTER_ERROR = "clarify_after_error"
    CLARIFY_TOO_MANY_ROUNDS = "clarify_too_many_rounds"


TEMPLATE_TEXT: Dict[ClarificationTemplateID, str] = {
    ClarificationTemplateID.CLARIFY_LOCATION: (
        "In welke lichaamsregio bevinden de klachten zich? "
        "(bijvoorbeeld: knie, onderrug, nek, schouder)"
    ),
    ClarificationTemplateID.CLARIFY_PATHOLOGY: (
        "Wat voor type klacht betreft het? "
        "(bijvoorbeeld: pijn, zwelling, stijfheid, bewegingsbeperking)"
    ),
    ClarificationTemplateID.CLARIFY_MECHANISM: (
        "Hoe zijn de klachten ontstaan? "
        "(bijvoorbeeld: plotseling, geleidelijk, na trauma, door overbelasting)"
    ),
    ClarificationTemplateID.CLARIFY_TIMING: (
        "Wanneer zijn de klachten het ergst? "
        "(bijvoorbeeld: bij bewegen, in rust, 's nachts, 's ochtends)"
    ),
    ClarificationTemplateID.CLARIFY_DURATION: (
        "Hoe lang bestaan de klachten al? (bijvoorbeeld: dagen, weken, maanden)"
    ),
    ClarificationTemplateID.CLARIFY_RADIATION: (
        "Straalt de pijn uit naar andere gebieden? Zo ja, waar naartoe?"
    ),
    ClarificationTemplateID.CLARIFY_GENERIC: (
        "Kunt u de klachten specifieker beschrijven? "
        "Denk aan locatie, type klacht en wanneer deze ontstaan zijn."
    ),
    ClarificationTemplateID.CLARIFY_RETRY: (
        "Kunt u uw klacht specifieker beschrijven? "
        "Geef aan waar de klachten zich bevinden en wat voor type klacht het betreft."
    ),
    ClarificationTemplateID.CLARIFY_AFTER_ERROR: (
        "Er is een fout opgetreden. Kunt u uw vraag opnieuw stellen?"
    ),
    ClarificationTemplateID.CLARIFY_TOO_MANY_ROUNDS: (
        "Te veel verduidelijkingsvragen. Probeer een meer gedetailleerde beschrijving."
    ),
}


# Missing dimension -> template, in the order dimensions are asked about
DIMENSION_ORDER = ("location", "pathology", "mechanism", "timing", "duration")

DIMENSION_TEMPLATES: Dict[str, ClarificationTemplateID] = {
    "location": ClarificationTemplateID.CLARIFY_LOCATION,
    "pathology": ClarificationTemplateID.CLARIFY_PATHOLOGY,
    "mechanism": ClarificationTemplateID.CLARIFY_MECHANISM,
    "timing": ClarificationTemplateID.CLARIFY_TIMING,
    "duration": ClarificationTemplateID.CLARIFY_DURATION,
}


def get_template_text(template_id: str) -> str:
    """
    Get question text for a template ID.

    Args:
        template_id: Template identifier string

    Returns:
        str: Question text

    Raises:
        ValueError: If template_id is not a known template
    """
    return TEMPLATE_TEXT[ClarificationTemplateID(template_id)]


def select_question(missing: Iterable[str], fallback: Optional[ClarificationTemplateID] = None) -> str:
    """
    Pick the question for the first missing dimension.

    Args:
        missing: Names of missing dimensions (any order)
        fallback: Template used when nothing in `missing` has a template
            (default CLARIFY_GENERIC)

    Returns:
        str: Question text
    """
    missing_set = set(missing)
    for dimension in DIMENSION_ORDER:
        if dimension in missing_set:
            return TEMPLATE_TEXT[DIMENSION_TEMPLATES[dimension]]
    return TEMPLATE_TEXT[fallback or ClarificationTemplateID.CLARIFY_GENERIC]
