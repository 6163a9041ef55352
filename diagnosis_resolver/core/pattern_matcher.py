"""
Pattern Matcher - Deterministic keyword-based code resolution

Responsibilities:
- Extract location, pathology, symptom, mechanism and timing signals from Dutch text
- Recognize common clinical presentations (anterior knee pain, low back pain, ...)
- Compose candidate codes from signals and filter them through the code table
- Ask a targeted clarifying question instead of guessing when text is too vague

Design principles:
- Deterministic: same text + same code table -> same result
- Never calls the generative service (safe terminal fallback)
- Keyword rules are data (module-level tables), matching logic is generic

Matching:
    Text is lower-cased, punctuation is replaced by spaces and whitespace is
    collapsed. A rule term matches at the start of a word, so Dutch compounds
    like 'kniepijn' match 'knie'. Presentation keywords match the same way,
    and a presentation only applies when one of its anatomical keywords is
    present. Complaint keywords match anywhere (substring).
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from diagnosis_resolver.contracts import (
    CandidateCode,
    CodeEntry,
    MatchResult,
    PatternAnalysis,
    PatternMatchResult,
)
from diagnosis_resolver.core.code_table import CodeTable
from diagnosis_resolver.utils.clarification_templates import select_question

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TermPattern:
    """
    One keyword rule.

    Attributes:
        term: Canonical term (exact matches keep full weight)
        synonyms: Alternative surface forms (x0.9 confidence)
        category: location | pathology | symptom | mechanism | timing
        weight: Base confidence for the rule
        codes: 2-digit code segments implied by the rule (location or pathology)
    """
    term: str
    synonyms: Tuple[str, ...]
    category: str
    weight: float
    codes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PresentationRule:
    """A recognizable clinical presentation with its most likely codes."""
    name: str
    keywords: Tuple[str, ...]
    anatomy: Tuple[str, ...]
    likely_codes: Tuple[str, ...]
    rationale: str


SYNONYM_PENALTY = 0.9
LONG_TERM_BOOST = 1.1
LONG_TERM_LENGTH = 6
MIN_WORDS = 3
PRESENTATION_MIN_KEYWORDS = 2

# Confidence for presentation-rule codes by rank
PRESENTATION_CONFIDENCES = (0.9, 0.85, 0.8)

# Pathology confidence when inferred from symptoms/mechanism or region defaults
HINTED_PATHOLOGY_FACTOR = 0.75
DEFAULT_PATHOLOGY_CONFIDENCE = 0.6
# Later codes in a rule's list are slightly less likely
RANK_DECAY = 0.05


MEDICAL_PATTERNS: List[TermPattern] = [
    # Locations: head and neck
    TermPattern("hoofd", ("schedel", "cranium", "hoofdpijn"), "location", 0.9, ("10",)),
    TermPattern("aangezicht", ("gezicht", "facial", "kaak", "mandibula", "maxilla"), "location", 0.8, ("11", "12")),
    TermPattern("nek", ("hals", "cervicaal", "cervicale", "nekwervels", "c-wervelkolom"), "location", 0.95, ("13", "30", "31")),
    # Locations: spine
    TermPattern("wervelkolom", ("ruggengraat", "vertebrae", "spine", "wervelzuil"), "location", 0.9, ("30", "32", "34", "35", "36")),
    TermPattern("onderrug", ("lage rug", "lumbaal", "lumbale", "lenden", "lendenwervelkolom", "l-wervelkolom", "rug"), "location", 0.95, ("34", "35")),
    TermPattern("bovenrug", ("thoracaal", "thoracale", "middenrug", "t-wervelkolom", "borstwervelkolom"), "location", 0.9, ("32", "33")),
    # Locations: upper extremity (coded on the dorsal thorax / combined regions)
    TermPattern("schouder", ("schouderblad", "scapula", "clavicula", "sleutelbeen", "humeruskop"), "location", 0.95, ("21",)),
    TermPattern("elleboog", ("elbow", "epicondyl", "olecranon"), "location", 0.95, ("79",)),
    TermPattern("pols", ("polsgewricht", "carpaal", "wrist", "radius", "ulna"), "location", 0.9, ("79",)),
    # Locations: lower extremity
    TermPattern("heup", ("heupgewricht", "coxae", "femur", "trochanter", "bekken"), "location", 0.95, ("79",)),
    TermPattern("knie", ("kniegewricht", "patella", "knieschijf", "meniscus", "kruisband"), "location", 0.98, ("79",)),
    TermPattern("enkel", ("enkelgewricht", "malleolus", "talus", "spronggewricht"), "location", 0.95, ("72", "73")),
    TermPattern("voet", ("teen", "tenen", "metatarsaal", "calcaneus", "voetwortel", "middenvoet"), "location", 0.9, ("74", "75", "76", "79")),

    # Pathologies: inflammatory
    TermPattern("tendinitis", ("peesontsteking", "tendinopathie", "tendinose", "epicondylitis"), "pathology", 0.95, ("20",)),
    TermPattern("bursitis", ("slijmbeursontsteking", "bursa", "bursaal"), "pathology", 0.9, ("21",)),
    TermPattern("capsulitis", ("kapselontsteking", "frozen shoulder", "adhesieve capsulitis"), "pathology", 0.85, ("21",)),
    # Pathologies: degenerative
    TermPattern("artrose", ("slijtage", "degeneratie", "osteoarthrose", "gewrichtsslijtage"), "pathology", 0.9, ("23",)),
    TermPattern("chondropathie", ("kraakbeenschade", "chondromalacie", "patellofemoraal syndroom"), "pathology", 0.85, ("22",)),
    TermPattern("hnp", ("hernia", "discusprolaps", "discushernia", "rughernia"), "pathology", 0.95, ("27", "75")),
    # Pathologies: traumatic
    TermPattern("fractuur", ("breuk", "botbreuk", "fractura", "gebroken"), "pathology", 0.98, ("36",)),
    TermPattern("distorsie", ("verstuiking", "verzwikking", "verzwikt", "verstuikt"), "pathology", 0.9, ("31",)),
    TermPattern("contusie", ("kneuzing", "blauwe plek", "hematoom"), "pathology", 0.85, ("31", "34")),
    TermPattern("luxatie", ("ontwrichting", "subluxatie", "uit de kom"), "pathology", 0.9, ("32",)),
    TermPattern("whiplash", ("nektrauma", "zweepslag", "cervicaal trauma"), "pathology", 0.95, ("38",)),
    # Pathologies: muscle and soft tissue
    TermPattern("spierverrekking", ("verrekking", "spierletsel", "strain", "spierscheur", "myalgie"), "pathology", 0.9, ("26", "33")),

    # Symptoms
    TermPattern("pijn", ("zeer", "klachten", "ongemak", "doloreus"), "symptom", 0.7),
    TermPattern("zwelling", ("oedeem", "verdikking", "hydrops", "gezwollen"), "symptom", 0.8),
    TermPattern("stijfheid", ("stijf", "bewegingsbeperking", "beperkte beweeglijkheid"), "symptom", 0.8),
    TermPattern("instabiliteit", ("instabiel", "wegklappen", "giving way", "onzekerheid"), "symptom", 0.85),
    TermPattern("uitstraling", ("uitstralende", "uitstraalt", "radiculair", "tintelingen"), "symptom", 0.9),

    # Mechanisms
    TermPattern("trauma", ("letsel", "ongeval", "val", "gevallen", "botsing"), "mechanism", 0.9),
    TermPattern("overbelasting", ("overuse", "herhalende bewegingen", "repetitief", "overbelast"), "mechanism", 0.85),
    TermPattern("sport", ("sporten", "atletiek", "voetbal", "tennis", "hardlopen", "fitness"), "mechanism", 0.7),

    # Timing
    TermPattern("acute", ("plotseling", "acuut", "ineens"), "timing", 0.8),
    TermPattern("chronisch", ("langdurig", "aanhoudend", "permanent"), "timing", 0.8),
    TermPattern("ochtend", ("ochtendstijfheid", "s morgens", "opstaan"), "timing", 0.7),
    TermPattern("belasting", ("bij bewegen", "activiteit", "inspanning", "traplopen"), "timing", 0.8),
]

PATTERNS_BY_TERM: Dict[str, TermPattern] = {p.term: p for p in MEDICAL_PATTERNS}

PRESENTATION_RULES: List[PresentationRule] = [
    PresentationRule(
        "anterior_knee_pain",
        ("vooraan", "knie", "traplopen", "patella", "springen"),
        ("knie", "patella"),
        ("7920", "7921", "7922"),
        "Anterieure kniepijn bij belasting wijst op patellafemoraal syndroom, "
        "patellapees tendinopathie of bursa irritatie.",
    ),
    PresentationRule(
        "lower_back_pain",
        ("onderrug", "lumbaal", "lenden", "uitstraling", "been"),
        ("onderrug", "lumbaal", "lenden"),
        ("3427", "3475", "3426"),
        "Lumbale rugpijn met mogelijk radiculaire component past bij discuspathologie of spieraandoening.",
    ),
    PresentationRule(
        "neck_pain",
        ("nek", "cervicaal", "whiplash", "hoofdpijn", "uitstraling"),
        ("nek", "cervicaal", "whiplash"),
        ("3038", "3027", "3026"),
        "Nekklachten kunnen ontstaan door whiplash trauma, HNP of spieraandoeningen.",
    ),
    PresentationRule(
        "shoulder_impingement",
        ("schouder", "opheffen", "arm", "impingement", "boven", "hoofd"),
        ("schouder",),
        ("2120", "2121", "2126"),
        "Schouderpijn bij overhead activiteiten wijst op impingement, tendinitis of bursitis.",
    ),
]

# Substrings that indicate the text describes a complaint at all
COMPLAINT_KEYWORDS = (
    "pijn", "klacht", "zeer", "zwelling", "gezwollen", "stijf", "ontsteking", "trauma",
    "breuk", "letsel", "beweeg", "beperk", "verrek", "verstuik", "verzwik", "kneuz",
    "instabiel", "uitstral", "tinteling", "slijtage", "artrose", "hernia", "hnp",
)

# Symptom/mechanism -> likely pathology segments when no pathology is named
SIGNAL_PATHOLOGY_HINTS: Dict[str, Tuple[str, ...]] = {
    "zwelling": ("21", "34"),
    "stijfheid": ("23", "22"),
    "instabiliteit": ("31", "32"),
    "uitstraling": ("27",),
    "trauma": ("31", "36"),
    "overbelasting": ("20", "26"),
    "sport": ("31", "20"),
}

# Location segment -> plausible pathologies when only a location and generic pain are known
REGION_DEFAULT_PATHOLOGIES: Dict[str, Tuple[str, ...]] = {
    "79": ("20", "21", "22"),
    "34": ("27", "26", "23"),
    "35": ("27", "26", "23"),
    "30": ("38", "27", "26"),
    "31": ("26", "27"),
    "13": ("26",),
    "32": ("26", "23"),
    "33": ("26", "23"),
    "36": ("23", "26"),
    "21": ("20", "21", "26"),
    "72": ("31", "20", "21"),
    "73": ("31", "20", "21"),
    "74": ("20", "26"),
    "75": ("20", "26"),
    "76": ("20", "23"),
    "10": ("26",),
    "11": ("26",),
    "12": ("25", "26"),
}

_PUNCTUATION = re.compile(r"[.,;:!?()\"]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lower-case, replace punctuation with spaces, collapse whitespace."""
    text = _PUNCTUATION.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def _term_confidence(pattern: TermPattern, surface: str) -> float:
    confidence = pattern.weight
    if surface != pattern.term:
        confidence *= SYNONYM_PENALTY
    if len(surface) > LONG_TERM_LENGTH:
        confidence *= LONG_TERM_BOOST
    return min(confidence, 1.0)


def _find_matches(text: str, pattern: TermPattern) -> List[MatchResult]:
    """All word-start hits for one rule, one per position (highest confidence wins)."""
    best: Dict[int, MatchResult] = {}
    for surface in (pattern.term,) + pattern.synonyms:
        for hit in re.finditer(r"\b" + re.escape(surface), text):
            confidence = _term_confidence(pattern, surface)
            current = best.get(hit.start())
            if current is None or confidence > current.confidence:
                best[hit.start()] = MatchResult(
                    term=pattern.term,
                    confidence=confidence,
                    category=pattern.category,
                    matched_text=hit.group(0),
                    position=hit.start(),
                )
    return [best[pos] for pos in sorted(best)]


def _starts_word(text: str, keyword: str) -> bool:
    return re.search(r"\b" + re.escape(keyword), text) is not None


def _sorted(matches: List[MatchResult]) -> Tuple[MatchResult, ...]:
    # Stable: equal confidences keep text order
    return tuple(sorted(matches, key=lambda m: -m.confidence))


def extract_signals(text: str) -> PatternAnalysis:
    """
    Extract categorized keyword matches from free text.

    Args:
        text: Raw complaint description

    Returns:
        PatternAnalysis: Matches per category (sorted by confidence) and
            overall confidence (mean over all matches, 0.0 if none)
    """
    normalized = normalize_text(text)
    buckets: Dict[str, List[MatchResult]] = {
        "location": [], "pathology": [], "symptom": [], "mechanism": [], "timing": [],
    }
    for pattern in MEDICAL_PATTERNS:
        buckets[pattern.category].extend(_find_matches(normalized, pattern))

    all_matches = [m for matches in buckets.values() for m in matches]
    overall = sum(m.confidence for m in all_matches) / len(all_matches) if all_matches else 0.0

    return PatternAnalysis(
        location_matches=_sorted(buckets["location"]),
        pathology_matches=_sorted(buckets["pathology"]),
        symptom_matches=_sorted(buckets["symptom"]),
        mechanism_matches=_sorted(buckets["mechanism"]),
        timing_matches=_sorted(buckets["timing"]),
        overall_confidence=overall,
    )


def category_confidence(matches: Sequence[MatchResult]) -> float:
    """Mean confidence of a category's matches (0.0 if none)."""
    return sum(m.confidence for m in matches) / len(matches) if matches else 0.0


def missing_dimensions(analysis: PatternAnalysis) -> List[str]:
    """
    Clinical dimensions absent from the text, in asking order.

    location: no location match
    pathology: no pathology and no symptom match
    mechanism: no mechanism match and no acute-onset timing
    """
    missing = []
    if not analysis.location_matches:
        missing.append("location")
    if not analysis.pathology_matches and not analysis.symptom_matches:
        missing.append("pathology")
    acute = any(m.term == "acute" for m in analysis.timing_matches)
    if not analysis.mechanism_matches and not acute:
        missing.append("mechanism")
    return missing


def fallback_rationale(entry: CodeEntry) -> str:
    """Short template rationale for a composed code."""
    location = entry.location_description.lower()
    pathology = entry.pathology_description.lower()
    rationale = f"{entry.pathology_description} in de {location}."

    if "tendinitis" in pathology and entry.location_code == "79":
        rationale += " Overbelasting van peesstructuren rond het kniegewricht past bij deze klachtenpresentatie."
    elif "artrose" in pathology and entry.region == "onderste-extremiteit":
        rationale += " Degeneratieve gewrichtsveranderingen zijn vaak zichtbaar in dragende gewrichten."
    elif "fractur" in pathology:
        rationale += " Botbreuk in deze regio past bij het traumamechanisme."
    elif "distorsie" in pathology or "contusie" in pathology:
        rationale += " Weke delen trauma in deze regio is consistent met het beschreven letsel."
    elif "hnp" in pathology and entry.region == "wervelkolom":
        rationale += " Discuspathologie in dit wervelkolomsegment past bij het uitstralingspatroon."
    return rationale


class PatternMatcher:
    """
    Deterministic fallback resolver.

    Example:
        >>> matcher = PatternMatcher(CodeTable("data/code_table.json"))
        >>> result = matcher.analyze("kniepijn bij traplopen")
        >>> result.suggestions[0].code
        '7920'
    """

    def __init__(self, code_table: CodeTable, max_suggestions: int = 3):
        """
        Args:
            code_table: Loaded code table (read-only)
            max_suggestions: Maximum candidates returned

        Raises:
            TypeError: If code_table lacks build/is_logical_combination
        """
        for method in ("build", "is_logical_combination"):
            if not callable(getattr(code_table, method, None)):
                raise TypeError(f"code_table must have callable '{method}' method")
        self.code_table = code_table
        self.max_suggestions = max_suggestions

    def analyze(self, text: str) -> PatternMatchResult:
        """
        Resolve text into candidate codes or a clarifying question.

        Args:
            text: Complaint description (complete conversation query)

        Returns:
            PatternMatchResult: Suggestions with raw engine confidence, or
                needs_clarification with a targeted question
        """
        normalized = normalize_text(text)
        signals = extract_signals(text)
        word_count = len(normalized.split()) if normalized else 0

        has_complaint = (
            any(keyword in normalized for keyword in COMPLAINT_KEYWORDS)
            or bool(signals.pathology_matches)
            or bool(signals.symptom_matches)
        )

        if word_count < MIN_WORDS or not has_complaint:
            logger.info(
                f"Pattern matcher needs clarification: words={word_count}, "
                f"complaint_keyword={has_complaint}"
            )
            return self._clarify(signals)

        suggestions = self._match_presentation(normalized)
        if suggestions:
            source = "presentation_rule"
        else:
            suggestions = self._compose_from_signals(signals)
            source = "signals"

        if not suggestions:
            logger.info("Pattern matcher found no composable codes")
            return self._clarify(signals)

        logger.info(
            f"Pattern matcher produced {len(suggestions)} suggestions via {source}: "
            f"{[s.code for s in suggestions]}"
        )
        return PatternMatchResult(
            suggestions=tuple(suggestions),
            needs_clarification=False,
            signals=signals,
        )

    def _clarify(self, signals: PatternAnalysis) -> PatternMatchResult:
        return PatternMatchResult(
            suggestions=(),
            needs_clarification=True,
            clarifying_question=select_question(missing_dimensions(signals)),
            signals=signals,
        )

    def _accept(self, code: str) -> Optional[CodeEntry]:
        entry = self.code_table.build(code[:2], code[2:])
        if entry is None:
            logger.debug(f"Dropping unknown composed code {code}")
            return None
        if not self.code_table.is_logical_combination(entry.location_code, entry.pathology_code):
            logger.debug(f"Dropping illogical combination {code}")
            return None
        return entry

    def _match_presentation(self, normalized: str) -> List[CandidateCode]:
        """First presentation rule with its anatomy and enough keyword hits wins."""
        for rule in PRESENTATION_RULES:
            if not any(_starts_word(normalized, keyword) for keyword in rule.anatomy):
                continue
            hits = sum(1 for keyword in rule.keywords if _starts_word(normalized, keyword))
            if hits < PRESENTATION_MIN_KEYWORDS:
                continue

            logger.debug(f"Presentation rule '{rule.name}' matched ({hits} keywords)")
            candidates = []
            for rank, code in enumerate(rule.likely_codes[:self.max_suggestions]):
                entry = self._accept(code)
                if entry is None:
                    continue
                confidence = PRESENTATION_CONFIDENCES[min(rank, len(PRESENTATION_CONFIDENCES) - 1)]
                candidates.append(CandidateCode(
                    code=entry.code,
                    name=entry.full_description,
                    rationale=rule.rationale,
                    confidence=confidence,
                ))
            if candidates:
                return candidates
        return []

    def _pathology_options(self, signals: PatternAnalysis, location_code: str) -> List[Tuple[str, float]]:
        """(pathology segment, confidence) pairs for one location, best first."""
        options: List[Tuple[str, float]] = []

        for match in self._distinct(signals.pathology_matches):
            for rank, code in enumerate(PATTERNS_BY_TERM[match.term].codes):
                options.append((code, match.confidence * (1 - RANK_DECAY * rank)))
        if options:
            return options

        hinted = list(signals.symptom_matches) + list(signals.mechanism_matches)
        for match in self._distinct(_sorted(hinted)):
            for rank, code in enumerate(SIGNAL_PATHOLOGY_HINTS.get(match.term, ())):
                options.append((code, match.confidence * HINTED_PATHOLOGY_FACTOR * (1 - RANK_DECAY * rank)))
        if options:
            return options

        for rank, code in enumerate(REGION_DEFAULT_PATHOLOGIES.get(location_code, ())):
            options.append((code, DEFAULT_PATHOLOGY_CONFIDENCE * (1 - RANK_DECAY * rank)))
        return options

    @staticmethod
    def _distinct(matches: Sequence[MatchResult], limit: int = 3) -> List[MatchResult]:
        """Best match per term, at most `limit` terms."""
        seen = set()
        result = []
        for match in matches:
            if match.term in seen:
                continue
            seen.add(match.term)
            result.append(match)
            if len(result) == limit:
                break
        return result

    def _compose_from_signals(self, signals: PatternAnalysis) -> List[CandidateCode]:
        scored: Dict[str, Tuple[float, CodeEntry]] = {}

        for loc_match in self._distinct(signals.location_matches):
            location_pattern = PATTERNS_BY_TERM[loc_match.term]
            for loc_rank, location_code in enumerate(location_pattern.codes):
                loc_conf = loc_match.confidence * (1 - RANK_DECAY * loc_rank)
                for pathology_code, path_conf in self._pathology_options(signals, location_code):
                    code = f"{location_code}{pathology_code}"
                    entry = self._accept(code)
                    if entry is None:
                        continue
                    confidence = round(min(1.0, loc_conf * path_conf), 4)
                    if code not in scored or confidence > scored[code][0]:
                        scored[code] = (confidence, entry)

        # Ties keep insertion (rule) order
        ranked = sorted(scored.items(), key=lambda item: -item[1][0])[:self.max_suggestions]
        return [
            CandidateCode(
                code=code,
                name=entry.full_description,
                rationale=fallback_rationale(entry),
                confidence=confidence,
            )
            for code, (confidence, entry) in ranked
        ]
