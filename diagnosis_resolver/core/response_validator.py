"""
Response Validator - Score and filter candidate codes

Responsibilities:
- Check every candidate code against the code table
- Compute a validation score per valid candidate
- Collect invalid codes and warnings
- Make the aggregate accept/reject decision for a candidate set

Design principles:
- Stateless and deterministic (safe to share across concurrent resolutions)
- Same checks for both resolution paths
- Invalid candidates are reported, never repaired

Validation score:
    0.5 base
    +0.1  code passes format validation
    +0.1  rationale longer than 50 characters
    +0.1  rationale longer than 100 characters
    +0.05 rationale contains the justificatory phrase ('past bij')
    +0.05 name contains the code itself
    +0.1  rationale contains at least one recognized clinical term
    capped at 1.0
"""

import logging
from typing import List, Sequence

from diagnosis_resolver.contracts import (
    CandidateAssessment,
    CandidateCode,
    ValidationOutcome,
)
from diagnosis_resolver.core.code_table import CodeTable

logger = logging.getLogger(__name__)

BASE_SCORE = 0.5
FORMAT_BONUS = 0.1
MEDIUM_RATIONALE_LENGTH = 50
LONG_RATIONALE_LENGTH = 100
LENGTH_BONUS = 0.1
JUSTIFICATION_PHRASE = "past bij"
JUSTIFICATION_BONUS = 0.05
SELF_REFERENCE_BONUS = 0.05
CLINICAL_TERM_BONUS = 0.1
ACCEPT_THRESHOLD = 0.5

CLINICAL_TERMS = ("pijn", "ontsteking", "tendinitis", "artrose", "trauma", "klacht")

NO_SUGGESTIONS_WARNING = "No valid code suggestions provided"


def score_candidate(candidate: CandidateCode) -> float:
    """
    Validation score for a candidate whose code already passed the table check.

    Args:
        candidate: Candidate with a known-valid code

    Returns:
        float: Score in [0.6, 1.0]
    """
    rationale = candidate.rationale or ""
    lowered = rationale.lower()

    score = BASE_SCORE + FORMAT_BONUS

    if len(rationale) > MEDIUM_RATIONALE_LENGTH:
        score += LENGTH_BONUS
    if len(rationale) > LONG_RATIONALE_LENGTH:
        score += LENGTH_BONUS

    if JUSTIFICATION_PHRASE in lowered:
        score += JUSTIFICATION_BONUS

    if candidate.code in (candidate.name or ""):
        score += SELF_REFERENCE_BONUS

    if any(term in lowered for term in CLINICAL_TERMS):
        score += CLINICAL_TERM_BONUS

    return min(round(score, 4), 1.0)


class ResponseValidator:
    """
    Validates candidate sets from either resolution path.

    Example:
        >>> validator = ResponseValidator(CodeTable("data/code_table.json"))
        >>> outcome = validator.validate([CandidateCode("7920", "X", "Kort.", 0.8)])
        >>> outcome.assessments[0].score, outcome.accepted
        (0.6, True)
    """

    def __init__(self, code_table: CodeTable):
        if not callable(getattr(code_table, "validate", None)):
            raise TypeError("code_table must have callable 'validate' method")
        self.code_table = code_table

    def validate(
        self,
        candidates: Sequence[CandidateCode],
        is_clarification: bool = False
    ) -> ValidationOutcome:
        """
        Score candidates and decide whether the set is acceptable.

        Args:
            candidates: Candidates to check (order preserved in the outcome)
            is_clarification: True when the producer asked a clarifying question

        Returns:
            ValidationOutcome: Accepted only if there are no invalid codes and
                the mean score over valid candidates exceeds 0.5. An empty set
                is accepted only as part of a clarification request.
        """
        assessments: List[CandidateAssessment] = []
        invalid_codes: List[str] = []
        warnings: List[str] = []

        for candidate in candidates:
            check = self.code_table.validate(candidate.code)
            if not check.is_valid:
                invalid_codes.append(str(candidate.code))
                warnings.append(f"Invalid code {candidate.code!r}: {check.message}")
                assessments.append(CandidateAssessment(
                    candidate=candidate,
                    is_valid=False,
                    score=0.0,
                    reason=check.failure.value if check.failure else check.message,
                ))
                continue

            score = score_candidate(candidate)
            logger.debug(f"Candidate {candidate.code} validation score {score:.2f}")
            assessments.append(CandidateAssessment(candidate=candidate, is_valid=True, score=score))

        valid_scores = [a.score for a in assessments if a.is_valid]
        mean_score = sum(valid_scores) / len(valid_scores) if valid_scores else 0.0

        if not valid_scores and not is_clarification:
            warnings.append(NO_SUGGESTIONS_WARNING)

        if not candidates:
            accepted = is_clarification
        else:
            accepted = not invalid_codes and mean_score > ACCEPT_THRESHOLD

        if not accepted:
            logger.warning(
                f"Candidate set rejected: {len(invalid_codes)} invalid codes "
                f"{invalid_codes}, mean score {mean_score:.2f}"
            )

        return ValidationOutcome(
            assessments=tuple(assessments),
            invalid_codes=tuple(invalid_codes),
            warnings=tuple(warnings),
            mean_score=mean_score,
            accepted=accepted,
        )
