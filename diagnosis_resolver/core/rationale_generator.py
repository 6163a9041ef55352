"""
Rationale Generator - Structured clinical explanations per code

Responsibilities:
- Build anatomical-basis and pathophysiology sentences from fixed templates
- Add clinical reasoning sentences from keywords in the query
- Compose short (<=150 chars, whole sentences) and extended (labeled sections) rationales
- List reasoning steps, confidence factors and alternative codes to consider
- Score rationale completeness for internal quality gating

Design principles:
- Template-driven and deterministic (no generative calls)
- Templates are keyed by code segment (location / pathology independently)
- Generic sentences from table descriptions when no template exists

Short rationale:
    pathophysiology sentence + anatomical sentence, truncated at the last
    sentence boundary that keeps the total within the limit. A first sentence
    that alone exceeds the limit is cut at a word boundary and closed with '.'.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, List, Sequence, Tuple

from diagnosis_resolver.contracts import CodeEntry, DetailedRationale, RationaleContext

logger = logging.getLogger(__name__)

SHORT_RATIONALE_MAX_LENGTH = 150
RANK_CONFIDENCE_DECAY = 0.1

ANATOMICAL_TEMPLATES: Dict[str, str] = {
    # Spine
    "30": "De cervicale wervelkolom is zeer mobiel en daardoor kwetsbaar voor trauma en degeneratie.",
    "34": "De lumbale wervelkolom draagt het meeste gewicht en is daarom gevoelig voor overbelasting.",
    "35": "Het lumbo-sacrale overgangsgebied is een mechanisch zwak punt in de wervelkolom.",
    # Extremities
    "79": "Het knie-onderbeen-voet complex vormt een functionele keten die vaak samen wordt aangedaan.",
    "72": "Het bovenste spronggewricht is cruciaal voor gewichtsdragen en loopfunctie.",
    # Soft tissue
    "13": "De cervicale weke delen bevatten veel spier- en fasciestructuren die gevoelig zijn voor spanning.",
    "21": "De dorsale thoracale regio bevat complexe spier- en ligamentstructuren.",
}

PATHOPHYSIOLOGY_TEMPLATES: Dict[str, str] = {
    # Inflammatory
    "20": "Tendinitis ontstaat door repetitieve microtrauma's of overbelasting van peesstructuren, "
          "resulterend in inflammatie.",
    "21": "Bursitis of capsulitis ontwikkelt zich door mechanische irritatie of inflammatoire processen "
          "in gewrichtsstructuren.",
    # Degenerative
    "22": "Chondropathie en meniscuslaesies ontstaan door mechanische slijtage of acuut trauma van "
          "kraakbeenstructuren.",
    "23": "Artrose is het resultaat van progressieve kraakbeendegeneratie en subchondrale botveranderingen.",
    "27": "HNP ontstaat door degeneratie van de annulus fibrosus met protrusie van nucleus pulposus materiaal.",
    # Traumatic
    "31": "Gewrichtsdistorsie ontstaat door acute overrekking van ligamentaire structuren.",
    "32": "Luxatie is het gevolg van complete verstoring van gewrichtsrelaties door excessieve krachten.",
    "33": "Spier-peesletsel ontstaat door acute overstretch of contractie boven weefselcapaciteit.",
    "36": "Fracturen ontstaan wanneer toegepaste krachten de mechanische weerstand van botweefsel overschrijden.",
    "38": "Whiplash injury veroorzaakt cervicaal hyperextensie-flexie trauma met betrokkenheid van "
          "meerdere structuren.",
    # Muscle and soft tissue
    "26": "Spier-, pees- en fasciestoornissen ontstaan door overbelasting, trauma of biomechanische dysfunctie.",
}

LOCATION_ALTERNATIVES: Dict[str, Tuple[str, ...]] = {
    "79": ("72 (bovenste spronggewricht)", "73 (onderste spronggewricht)"),
    "34": ("35 (lumbo-sacrale wervelkolom)", "33 (thoraco-lumbale overgang)"),
    "30": ("31 (cervico-thoracale overgang)", "13 (cervicale weke delen)"),
}

PATHOLOGY_ALTERNATIVES: Dict[str, Tuple[str, ...]] = {
    "20": ("21 (bursitis/capsulitis)", "26 (spier-pees aandoeningen)"),
    "22": ("23 (artrose)", "31 (gewrichtcontusie)"),
    "27": ("75 (HNP met radiculair syndroom)", "26 (spieraandoeningen)"),
}

# (keywords, sentence); pain-quality rules only apply when 'pijn' is present
PAIN_QUALITY_RULES: List[Tuple[Tuple[str, ...], str]] = [
    (("uitstralend", "uitstraling"), "Uitstralende pijn suggereert neurale betrokkenheid of referred pain."),
    (("stekend", "scherp"), "Stekende pijn past bij acute inflammatie of zenuwprikkeling."),
    (("dof", "chronisch"), "Doffe, chronische pijn wijst op degeneratieve of langdurige inflammatoire processen."),
]

MECHANISM_RULES: List[Tuple[Tuple[str, ...], str]] = [
    (("trauma", "val", "ongeval"), "Het traumatische mechanisme past bij acute structurele schade."),
    (("overbelasting", "herhalend", "sport"), "Overbelasting suggereert cumulatieve microtrauma en inflammatie."),
    (("geleidelijk", "sluipend"), "Geleidelijk ontstaan wijst op degeneratieve of chronische processen."),
    (("bewegen", "activiteit"), "Bewegingsbeperking of pijn bij activiteit past bij structurele betrokkenheid."),
]

DEFAULT_CLINICAL_REASONING = "De klinische presentatie is consistent met deze diagnose."

# Vocabulary that marks a short rationale as clinically phrased
RATIONALE_TERMS = ("anatomisch", "klinisch", "pathologie", "diagnose", "symptoom")
MIN_RATIONALE_QUALITY = 70

_SENTENCE_SPLIT = re.compile(r"(?<=\.)\s+")


@dataclass(frozen=True)
class RationaleQuality:
    """Result of validate_rationale()."""
    is_valid: bool
    issues: Tuple[str, ...]
    score: int


def truncate_to_sentences(text: str, max_length: int = SHORT_RATIONALE_MAX_LENGTH) -> str:
    """
    Keep whole sentences from the start of text while within max_length.

    Args:
        text: Sentences separated by '. '
        max_length: Character cap

    Returns:
        str: At most max_length characters, ending with '.'
    """
    text = text.strip()
    if len(text) <= max_length:
        return text

    sentences = _SENTENCE_SPLIT.split(text)
    result = sentences[0]
    for sentence in sentences[1:]:
        candidate = f"{result} {sentence}"
        if len(candidate) > max_length:
            break
        result = candidate

    if len(result) > max_length:
        # Single overlong sentence: cut on a word boundary
        cut = result[:max_length - 1]
        if " " in cut:
            cut = cut[:cut.rfind(" ")]
        result = cut.rstrip(" ,;:") + "."

    return result


class RationaleGenerator:
    """
    Builds DetailedRationale values for codes.

    Example:
        >>> generator = RationaleGenerator()
        >>> entry = CodeTable("data/code_table.json").lookup("7920")
        >>> rationale = generator.generate(entry, RationaleContext("kniepijn bij traplopen", 0.9))
        >>> len(rationale.short_rationale) <= 150
        True
    """

    def __init__(self, short_max_length: int = SHORT_RATIONALE_MAX_LENGTH):
        self.short_max_length = short_max_length

    def generate(self, entry: CodeEntry, context: RationaleContext) -> DetailedRationale:
        """
        Generate a structured explanation for one code.

        Args:
            entry: Code resolved against the code table
            context: Query, candidate confidence and optional signals/patient facts

        Returns:
            DetailedRationale
        """
        anatomy = self._anatomical_reasoning(entry)
        pathophysiology = self._pathophysiology_reasoning(entry)
        clinical = self._clinical_reasoning(context.query)

        short = truncate_to_sentences(f"{pathophysiology} {anatomy}", self.short_max_length)

        rationale = DetailedRationale(
            short_rationale=short,
            extended_rationale=self._extended_rationale(anatomy, pathophysiology, clinical, context),
            reasoning_steps=tuple(self._reasoning_steps(entry, context)),
            confidence_factors=tuple(self._confidence_factors(context)),
            alternative_considerations=tuple(self._alternatives(entry, context.query)),
        )
        logger.debug(f"Generated rationale for {entry.code}: {len(short)} chars short form")
        return rationale

    def generate_for_codes(
        self,
        entries: Sequence[CodeEntry],
        context: RationaleContext
    ) -> Dict[str, DetailedRationale]:
        """
        Rationales for a ranked list of codes; confidence decays 10% per rank.

        Returns:
            dict: code -> DetailedRationale (input order)
        """
        rationales = {}
        for rank, entry in enumerate(entries):
            ranked_context = replace(
                context,
                confidence=context.confidence * (1 - rank * RANK_CONFIDENCE_DECAY),
            )
            rationales[entry.code] = self.generate(entry, ranked_context)
        return rationales

    @staticmethod
    def _anatomical_reasoning(entry: CodeEntry) -> str:
        template = ANATOMICAL_TEMPLATES.get(entry.location_code)
        if template:
            return template
        return f"De {entry.location_description.lower()} is anatomisch relevant voor deze klachtenpresentatie."

    @staticmethod
    def _pathophysiology_reasoning(entry: CodeEntry) -> str:
        template = PATHOPHYSIOLOGY_TEMPLATES.get(entry.pathology_code)
        if template:
            return template
        return f"{entry.pathology_description} past bij het beschreven klinische beeld."

    @staticmethod
    def _clinical_reasoning(query: str) -> str:
        lowered = query.lower()
        sentences = []

        if "pijn" in lowered:
            for keywords, sentence in PAIN_QUALITY_RULES:
                if any(k in lowered for k in keywords):
                    sentences.append(sentence)

        for keywords, sentence in MECHANISM_RULES:
            if any(k in lowered for k in keywords):
                sentences.append(sentence)

        return " ".join(sentences) if sentences else DEFAULT_CLINICAL_REASONING

    @staticmethod
    def _extended_rationale(
        anatomy: str,
        pathophysiology: str,
        clinical: str,
        context: RationaleContext
    ) -> str:
        parts = [
            f"**Anatomische basis:** {anatomy}",
            f"**Pathofysiologie:** {pathophysiology}",
            f"**Klinische redenering:** {clinical}",
        ]

        facts = context.clinical_context
        if facts is not None:
            info = []
            if facts.age:
                info.append(f"leeftijd {facts.age} jaar")
            if facts.mechanism:
                info.append(f"mechanisme: {facts.mechanism}")
            if facts.duration:
                info.append(f"duur: {facts.duration}")
            if facts.severity:
                info.append(f"ernst: {facts.severity}")
            if info:
                parts.append(f"**Klinische context:** {', '.join(info)}")

        return "\n\n".join(parts)

    @staticmethod
    def _reasoning_steps(entry: CodeEntry, context: RationaleContext) -> List[str]:
        steps = [
            f"Locatie: {entry.location_description} geïdentificeerd op basis van klachtbeschrijving",
            f"Pathologie: {entry.pathology_description} past bij symptoompatroon",
        ]

        analysis = context.pattern_analysis
        if analysis is not None:
            location_conf = analysis.location_matches[0].confidence if analysis.location_matches else 0.0
            pathology_conf = analysis.pathology_matches[0].confidence if analysis.pathology_matches else 0.0
            steps.append(
                f"Patroonherkenning: locatie {location_conf * 100:.0f}%, "
                f"pathologie {pathology_conf * 100:.0f}% match"
            )

        steps.append(f"Klinische correlatie: symptomen consistent met DCSPH {entry.code}")
        steps.append("Differentiaaldiagnostische overwegingen afgewogen op basis van gepresenteerde informatie")
        return steps

    @staticmethod
    def _confidence_factors(context: RationaleContext) -> List[str]:
        factors = []
        if context.confidence > 0.8:
            factors.append("Hoge patroonmatch met medische terminologie")

        analysis = context.pattern_analysis
        if analysis is not None:
            if analysis.location_matches:
                factors.append(f"Duidelijke locatie-indicatoren ({len(analysis.location_matches)} matches)")
            if analysis.pathology_matches:
                factors.append(f"Specifieke pathologie markers ({len(analysis.pathology_matches)} matches)")
            if analysis.mechanism_matches:
                factors.append("Ontstaansmechanisme beschreven")

        lowered = context.query.lower()
        if "acute" in lowered or "plotseling" in lowered:
            factors.append("Acute onset gerapporteerd")
        if "chronisch" in lowered or "langdurig" in lowered:
            factors.append("Chronisch verloop beschreven")
        if len(lowered.split()) > 10:
            factors.append("Uitgebreide klachtbeschrijving")
        return factors

    @staticmethod
    def _alternatives(entry: CodeEntry, query: str) -> List[str]:
        alternatives = []
        if entry.location_code in LOCATION_ALTERNATIVES:
            alternatives.append(
                f"Alternatieve locaties: {', '.join(LOCATION_ALTERNATIVES[entry.location_code])}"
            )
        if entry.pathology_code in PATHOLOGY_ALTERNATIVES:
            alternatives.append(
                f"Alternatieve pathologieën: {', '.join(PATHOLOGY_ALTERNATIVES[entry.pathology_code])}"
            )

        lowered = query.lower()
        if "pijn" in lowered and "trauma" not in lowered:
            alternatives.append("Overweeg ook chronische/degeneratieve oorzaken")
        if "zwelling" in lowered and entry.pathology_code != "21":
            alternatives.append("Overweeg inflammatoire processen (bursitis/capsulitis)")
        if "instabiliteit" in lowered and entry.pathology_code not in ("31", "32"):
            alternatives.append("Overweeg ligamentaire letsels of gewrichtsinstabiliteit")
        return alternatives

    @staticmethod
    def validate_rationale(rationale: DetailedRationale) -> RationaleQuality:
        """
        Score rationale completeness (internal quality gate, never shown to callers).

        Starts at 100 and deducts for a too short (<20) or too long (>200)
        short form, missing clinical vocabulary, fewer than 3 reasoning steps,
        and no confidence factors. Valid when there are no issues and score >= 70.
        """
        issues = []
        score = 100
        short = rationale.short_rationale

        if len(short) < 20:
            issues.append("Short rationale te kort")
            score -= 20
        if len(short) > 200:
            issues.append("Short rationale te lang")
            score -= 15
        if not any(term in short.lower() for term in RATIONALE_TERMS):
            issues.append("Onvoldoende medische terminologie")
            score -= 10
        if len(rationale.reasoning_steps) < 3:
            issues.append("Onvoldoende redenatiestappen")
            score -= 15
        if not rationale.confidence_factors:
            issues.append("Geen confidence factors")
            score -= 10

        score = max(0, score)
        return RationaleQuality(
            is_valid=not issues and score >= MIN_RATIONALE_QUALITY,
            issues=tuple(issues),
            score=score,
        )
