"""
Semantic contracts for the diagnosis code resolution pipeline.

This module defines immutable data structures that serve as contracts
between the pipeline components. They define shape and semantics without
enforcing rules - validation lives in the Response Validator, the Code
Table and the Error Classifier.

Design principles:
- Frozen dataclasses (immutable after creation)
- No dependencies on other pipeline modules
- Serialization helpers only where a structure crosses the transport boundary

Contents:
- CodeEntry: One 4-digit code resolved against the code table
- CandidateCode: A suggested code with rationale and confidence
- CandidateAssessment / ValidationOutcome: Response Validator output
- ResolutionPayload / ClarificationPayload: Generative service boundary (tagged union)
- Turn: One conversation turn
- DetailedRationale / RationaleContext / ClinicalContext: Rationale Generator I/O
- MatchResult / PatternAnalysis / PatternMatchResult: Pattern-Matching Engine output
- ClassifiedError: Typed failure with recoverability
- ResolutionResult: What callers receive

Usage:
    from diagnosis_resolver.contracts import CandidateCode, ResolutionResult
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


@dataclass(frozen=True)
class CodeEntry:
    """
    A diagnosis code resolved against the code table.

    Attributes:
        code: Full 4-digit code, e.g. '7920'
        location_code: First two digits (Table A)
        pathology_code: Last two digits (Table B)
        location_description: Human-readable body location
        pathology_description: Human-readable pathology
        region: Location grouping, e.g. 'onderste-extremiteit'
        category: Pathology grouping, e.g. 'degeneratief'
    """
    code: str
    location_code: str
    pathology_code: str
    location_description: str
    pathology_description: str
    region: str = ""
    category: str = ""

    @property
    def full_description(self) -> str:
        return f"{self.pathology_description} - {self.location_description}"


@dataclass(frozen=True)
class CandidateCode:
    """
    A candidate diagnosis code produced by either resolution path.

    Attributes:
        code: 4-digit code string (not yet guaranteed valid)
        name: Human-readable name
        rationale: Clinical justification text
        confidence: Estimated correctness in [0, 1]
    """
    code: str
    name: str
    rationale: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'name': self.name,
            'rationale': self.rationale,
            'confidence': self.confidence,
        }


@dataclass(frozen=True)
class CandidateAssessment:
    """
    Per-candidate verdict from the Response Validator.

    Attributes:
        candidate: The candidate that was checked
        is_valid: Whether the code exists in the code table
        score: Validation score in [0, 1] (0.0 for invalid codes)
        reason: Why the code was rejected (None when valid)
    """
    candidate: CandidateCode
    is_valid: bool
    score: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class ValidationOutcome:
    """
    Aggregate Response Validator result for one candidate set.

    Attributes:
        assessments: One entry per input candidate, input order preserved
        invalid_codes: Codes that failed existence/format checks
        warnings: Human-readable warnings
        mean_score: Mean validation score over valid candidates (0.0 if none)
        accepted: Aggregate accept/reject decision
    """
    assessments: Tuple[CandidateAssessment, ...]
    invalid_codes: Tuple[str, ...]
    warnings: Tuple[str, ...]
    mean_score: float
    accepted: bool

    @property
    def valid_candidates(self) -> List[CandidateCode]:
        return [a.candidate for a in self.assessments if a.is_valid]


@dataclass(frozen=True)
class ResolutionPayload:
    """Generative service answered with candidate codes."""
    candidates: Tuple[CandidateCode, ...]
    kind: str = "resolution"


@dataclass(frozen=True)
class ClarificationPayload:
    """
    Generative service asked a clarifying question.

    Candidates are normally empty but are kept when the service sends both.
    """
    question: str
    candidates: Tuple[CandidateCode, ...] = ()
    kind: str = "clarification"


# Discriminated on `kind`
GenerativePayload = Union[ResolutionPayload, ClarificationPayload]


class TurnRole(str, Enum):
    PATIENT = "patient"
    SYSTEM = "system"


class TurnType(str, Enum):
    QUERY = "query"
    CLARIFICATION_QUESTION = "clarification_question"
    CLARIFICATION_ANSWER = "clarification_answer"
    RESOLUTION = "resolution"
    ABANDONMENT = "abandonment"


@dataclass(frozen=True)
class Turn:
    """
    One step in a conversation.

    Attributes:
        role: patient or system
        content: Text said or shown
        turn_type: query | clarification_question | clarification_answer |
            resolution | abandonment
        timestamp: When the turn was recorded (UTC)
    """
    role: TurnRole
    content: str
    turn_type: TurnType
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'role': self.role.value,
            'content': self.content,
            'type': self.turn_type.value,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ClinicalContext:
    """Structured patient facts that may accompany a query."""
    age: Optional[int] = None
    mechanism: Optional[str] = None
    duration: Optional[str] = None
    severity: Optional[str] = None


@dataclass(frozen=True)
class MatchResult:
    """
    One keyword rule hit in free text.

    Attributes:
        term: Canonical rule term (e.g. 'knie')
        confidence: Match confidence in [0, 1]
        category: location | pathology | symptom | mechanism | timing
        matched_text: Surface text that matched
        position: Character offset in normalized text
    """
    term: str
    confidence: float
    category: str
    matched_text: str
    position: int


@dataclass(frozen=True)
class PatternAnalysis:
    """Signals extracted from free text, each list sorted by confidence."""
    location_matches: Tuple[MatchResult, ...] = ()
    pathology_matches: Tuple[MatchResult, ...] = ()
    symptom_matches: Tuple[MatchResult, ...] = ()
    mechanism_matches: Tuple[MatchResult, ...] = ()
    timing_matches: Tuple[MatchResult, ...] = ()
    overall_confidence: float = 0.0


@dataclass(frozen=True)
class RationaleContext:
    """
    Input to the Rationale Generator besides the code itself.

    Attributes:
        query: Original (complete) query text
        confidence: Confidence of the candidate being explained
        pattern_analysis: Signals extracted from the query, if available
        clinical_context: Structured patient facts, if available
    """
    query: str
    confidence: float
    pattern_analysis: Optional[PatternAnalysis] = None
    clinical_context: Optional[ClinicalContext] = None


@dataclass(frozen=True)
class DetailedRationale:
    """
    Structured clinical explanation for one code.

    Attributes:
        short_rationale: At most 150 characters, whole sentences only
        extended_rationale: Labeled multi-section narrative
        reasoning_steps: Ordered reasoning steps
        confidence_factors: Signals supporting the suggestion
        alternative_considerations: Nearby codes worth considering
    """
    short_rationale: str
    extended_rationale: str
    reasoning_steps: Tuple[str, ...]
    confidence_factors: Tuple[str, ...]
    alternative_considerations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PatternMatchResult:
    """
    Pattern-Matching Engine output.

    Attributes:
        suggestions: Candidate codes with the engine's raw confidence
        needs_clarification: True when the text is too vague to guess
        clarifying_question: Targeted follow-up question (when clarifying)
        signals: The extracted signals used to compose suggestions
    """
    suggestions: Tuple[CandidateCode, ...]
    needs_clarification: bool
    clarifying_question: Optional[str] = None
    signals: PatternAnalysis = field(default_factory=PatternAnalysis)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    GENERATIVE_SERVICE = "generative-service"
    KNOWLEDGE_BASE = "knowledge-base"
    RATE_LIMIT = "rate-limit"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    """
    A failure mapped into the error taxonomy.

    Attributes:
        kind: Error taxonomy member
        message: Description of what went wrong
        recoverable: Whether retrying or rephrasing can help
        suggestions: Suggested next actions for the caller
        timestamp: When the error was classified (UTC)
        code: Originating diagnosis code, if any
        details: Raw failure description for logs (never serialized)
    """
    kind: ErrorKind
    message: str
    recoverable: bool
    suggestions: Tuple[str, ...]
    timestamp: datetime
    code: Optional[str] = None
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'type': self.kind.value,
            'message': self.message,
            'suggestions': list(self.suggestions),
            'recoverable': self.recoverable,
            'timestamp': self.timestamp.isoformat(),
        }
        if self.code is not None:
            result['code'] = self.code
        return result


@dataclass(frozen=True)
class ResolutionResult:
    """
    What the orchestrator returns to callers. Never raised, always returned.

    Attributes:
        success: Whether a resolution path completed normally
        suggestions: Ordered candidate codes (possibly empty)
        needs_clarification: Whether the caller should answer a question
        conversation_id: Conversation this result belongs to ('' if none)
        clarifying_question: Question text when clarifying
        error: Classified failure, if any
        debug: Resolution path and diagnostics (not serialized)
    """
    success: bool
    suggestions: Tuple[CandidateCode, ...]
    needs_clarification: bool
    conversation_id: str
    clarifying_question: Optional[str] = None
    error: Optional[ClassifiedError] = None
    debug: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Transport shape: {success, suggestions[], needsClarification, clarifyingQuestion?, conversationId, error?}"""
        result = {
            'success': self.success,
            'suggestions': [s.to_dict() for s in self.suggestions],
            'needsClarification': self.needs_clarification,
            'conversationId': self.conversation_id,
        }
        if self.clarifying_question:
            result['clarifyingQuestion'] = self.clarifying_question
        if self.error is not None:
            result['error'] = self.error.to_dict()
        return result
