"""
Unit tests for RationaleGenerator

Tests short/extended rationale composition, reasoning steps, confidence
factors, alternatives and the internal quality score
"""

import pytest

from diagnosis_resolver.contracts import ClinicalContext, DetailedRationale, RationaleContext
from diagnosis_resolver.core.pattern_matcher import extract_signals
from diagnosis_resolver.core.rationale_generator import (
    DEFAULT_CLINICAL_REASONING,
    PATHOPHYSIOLOGY_TEMPLATES,
    RationaleGenerator,
    truncate_to_sentences,
)


@pytest.fixture
def generator():
    return RationaleGenerator()


@pytest.fixture
def knee_entry(code_table):
    return code_table.lookup("7920")


class TestTruncation:

    def test_short_text_unchanged(self):
        assert truncate_to_sentences("Een zin.", 150) == "Een zin."

    def test_keeps_whole_sentences(self):
        assert truncate_to_sentences("Een. Twee. Drie.", 10) == "Een. Twee."

    def test_overlong_sentence_cut_on_word(self):
        result = truncate_to_sentences("woord " * 40, 50)
        assert len(result) <= 50
        assert result.endswith("woord.")


class TestGenerate:

    def test_short_rationale_within_limit(self, generator, knee_entry):
        rationale = generator.generate(knee_entry, RationaleContext("kniepijn bij traplopen", 0.9))

        assert len(rationale.short_rationale) <= 150
        assert rationale.short_rationale.endswith(".")
        # Pathophysiology + anatomy exceeds the limit, so only the first sentence survives
        assert rationale.short_rationale == PATHOPHYSIOLOGY_TEMPLATES["20"]

    def test_generic_sentences_without_templates(self, generator, code_table):
        entry = code_table.lookup("1036")
        rationale = generator.generate(entry, RationaleContext("val op het hoofd", 0.5))

        assert "**Anatomische basis:**" in rationale.extended_rationale
        assert "anatomisch relevant" in rationale.extended_rationale

    def test_extended_sections(self, generator, knee_entry):
        rationale = generator.generate(knee_entry, RationaleContext("stekende pijn na een val", 0.7))
        text = rationale.extended_rationale

        assert "**Anatomische basis:**" in text
        assert "**Pathofysiologie:**" in text
        assert "Stekende pijn past bij acute inflammatie" in text
        assert "traumatische mechanisme" in text
        assert "**Klinische context:**" not in text

    def test_default_clinical_reasoning(self, generator, knee_entry):
        rationale = generator.generate(knee_entry, RationaleContext("iets aan mijn been", 0.5))
        assert DEFAULT_CLINICAL_REASONING in rationale.extended_rationale

    def test_clinical_context_section(self, generator, knee_entry):
        context = RationaleContext(
            "kniepijn", 0.7,
            clinical_context=ClinicalContext(age=45, mechanism="val", severity="matig"),
        )
        text = generator.generate(knee_entry, context).extended_rationale
        assert "**Klinische context:** leeftijd 45 jaar, mechanisme: val, ernst: matig" in text

    def test_reasoning_steps_with_signals(self, generator, knee_entry):
        context = RationaleContext(
            "peesontsteking knie", 0.9, pattern_analysis=extract_signals("peesontsteking knie")
        )
        steps = generator.generate(knee_entry, context).reasoning_steps

        assert len(steps) == 5
        assert steps[2] == "Patroonherkenning: locatie 98%, pathologie 94% match"
        assert "DCSPH 7920" in steps[3]

    def test_confidence_factors(self, generator, knee_entry):
        context = RationaleContext(
            "plotseling chronisch kniepijn", 0.9, pattern_analysis=extract_signals("kniepijn")
        )
        factors = generator.generate(knee_entry, context).confidence_factors

        assert "Hoge patroonmatch met medische terminologie" in factors
        assert "Duidelijke locatie-indicatoren (1 matches)" in factors
        assert "Acute onset gerapporteerd" in factors
        assert "Chronisch verloop beschreven" in factors

    def test_alternatives(self, generator, knee_entry):
        alternatives = generator.generate(
            knee_entry, RationaleContext("pijn en zwelling", 0.5)
        ).alternative_considerations

        assert alternatives[0].startswith("Alternatieve locaties: 72")
        assert alternatives[1].startswith("Alternatieve pathologieën: 21")
        assert "Overweeg ook chronische/degeneratieve oorzaken" in alternatives
        assert "Overweeg inflammatoire processen (bursitis/capsulitis)" in alternatives

    def test_generate_for_codes_decays_confidence(self, generator, code_table):
        entries = [code_table.lookup("7920"), code_table.lookup("7921")]
        rationales = generator.generate_for_codes(entries, RationaleContext("kniepijn", 0.85))

        assert list(rationales) == ["7920", "7921"]
        assert "Hoge patroonmatch met medische terminologie" in rationales["7920"].confidence_factors
        assert "Hoge patroonmatch met medische terminologie" not in rationales["7921"].confidence_factors


class TestQuality:

    def test_generated_rationale_passes_threshold(self, generator, knee_entry):
        rationale = generator.generate(knee_entry, RationaleContext("kniepijn bij traplopen", 0.9))
        quality = generator.validate_rationale(rationale)

        assert quality.score == 90
        assert quality.issues == ("Onvoldoende medische terminologie",)
        assert not quality.is_valid

    def test_complete_rationale_is_valid(self, generator):
        rationale = DetailedRationale(
            short_rationale="Klinisch beeld past bij deze diagnose.",
            extended_rationale="",
            reasoning_steps=("a", "b", "c"),
            confidence_factors=("x",),
        )
        quality = generator.validate_rationale(rationale)
        assert quality.is_valid
        assert quality.score == 100

    def test_deductions_accumulate(self, generator):
        rationale = DetailedRationale(
            short_rationale="Kort.",
            extended_rationale="",
            reasoning_steps=("a",),
            confidence_factors=(),
        )
        quality = generator.validate_rationale(rationale)
        assert quality.score == 100 - 20 - 10 - 15 - 10
        assert len(quality.issues) == 4
