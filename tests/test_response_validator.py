"""
Unit tests for ResponseValidator

Tests per-candidate scoring and the aggregate accept/reject decision
"""

import pytest

from diagnosis_resolver.contracts import CandidateCode
from diagnosis_resolver.core.response_validator import (
    NO_SUGGESTIONS_WARNING,
    ResponseValidator,
    score_candidate,
)


@pytest.fixture
def validator(code_table):
    return ResponseValidator(code_table)


def candidate(code="7920", name="X", rationale="Kort.", confidence=0.8):
    return CandidateCode(code=code, name=name, rationale=rationale, confidence=confidence)


class TestScoring:

    def test_minimal_valid_candidate(self, validator):
        outcome = validator.validate([candidate()])

        assert outcome.assessments[0].is_valid
        assert outcome.assessments[0].score == pytest.approx(0.6)
        assert outcome.accepted

    def test_length_bonuses_are_monotonic(self):
        short = score_candidate(candidate(rationale="a" * 50))
        medium = score_candidate(candidate(rationale="a" * 51))
        long = score_candidate(candidate(rationale="a" * 101))
        assert short == pytest.approx(0.6)
        assert medium == pytest.approx(0.7)
        assert long == pytest.approx(0.8)

    def test_justification_and_self_reference(self):
        plain = score_candidate(candidate(rationale="Dit past bij het beeld."))
        named = score_candidate(candidate(name="7920 Tendinitis", rationale="Dit past bij het beeld."))
        assert plain == pytest.approx(0.65)
        assert named == pytest.approx(0.7)

    def test_clinical_term_bonus_is_case_insensitive(self):
        assert score_candidate(candidate(rationale="Artrose.")) == pytest.approx(0.7)

    def test_score_capped_at_one(self):
        full = candidate(
            name="7920 Tendinitis knie",
            rationale="Deze pijn past bij tendinitis door overbelasting. " + "x" * 80,
        )
        assert score_candidate(full) == 1.0


class TestAcceptance:

    def test_invalid_code_rejects_set(self, validator):
        outcome = validator.validate([candidate(), candidate(code="7907")])

        assert not outcome.accepted
        assert outcome.invalid_codes == ("7907",)
        assert outcome.assessments[1].score == 0.0
        assert outcome.assessments[1].reason == "unknown_pathology"
        assert [c.code for c in outcome.valid_candidates] == ["7920"]
        assert any("7907" in w for w in outcome.warnings)

    def test_malformed_code_is_reported(self, validator):
        outcome = validator.validate([candidate(code="79-2")])
        assert not outcome.accepted
        assert outcome.assessments[0].reason == "non_numeric"
        assert NO_SUGGESTIONS_WARNING in outcome.warnings

    def test_mean_over_valid_candidates(self, validator):
        outcome = validator.validate([candidate(), candidate(code="7923", rationale="Artrose.")])
        assert outcome.mean_score == pytest.approx(0.65)
        assert outcome.accepted

    def test_empty_set_without_clarification(self, validator):
        outcome = validator.validate([])
        assert not outcome.accepted
        assert outcome.mean_score == 0.0
        assert outcome.warnings == (NO_SUGGESTIONS_WARNING,)

    def test_empty_set_with_clarification(self, validator):
        outcome = validator.validate([], is_clarification=True)
        assert outcome.accepted
        assert outcome.warnings == ()

    def test_input_order_preserved(self, validator):
        codes = ["7922", "5020", "7920"]
        outcome = validator.validate([candidate(code=c) for c in codes])
        assert [a.candidate.code for a in outcome.assessments] == codes

    def test_requires_validate_method(self):
        with pytest.raises(TypeError, match="validate"):
            ResponseValidator(object())
