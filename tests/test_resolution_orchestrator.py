"""
Unit tests for ResolutionOrchestrator

Tests the strategy chain (generative -> pattern matching -> generic
clarification), the bounded retry loop with backoff, deadline cancellation,
rationale enrichment, conversation bookkeeping and the health check.

The generative resolver is faked; the real code table is used throughout.
"""

import asyncio
import time
from unittest.mock import Mock

import pytest

from diagnosis_resolver.config import ResolutionConfig
from diagnosis_resolver.contracts import (
    CandidateCode,
    ClarificationPayload,
    ErrorKind,
    ResolutionPayload,
    TurnType,
)
from diagnosis_resolver.core.conversation_store import ConversationStatus
from diagnosis_resolver.core.error_classifier import ErrorClassifier
from diagnosis_resolver.core.rationale_generator import PATHOPHYSIOLOGY_TEMPLATES
from diagnosis_resolver.core.resolution_orchestrator import (
    DEGRADED,
    HEALTHY,
    PATH_GENERATIVE,
    PATH_GENERIC_CLARIFICATION,
    PATH_PATTERN_MATCHING,
    PATH_VALIDATION,
    ResolutionOrchestrator,
    backoff_delay,
)
from diagnosis_resolver.exceptions import GenerativeServiceError, KnowledgeBaseError
from diagnosis_resolver.utils.clarification_templates import ClarificationTemplateID, TEMPLATE_TEXT

KNEE_QUERY = "kniepijn bij traplopen"
KNEE_CODES = ["7920", "7921", "7922"]
KNEE_RAW_CONFIDENCES = [0.9, 0.85, 0.8]


class FakeGenerative:
    """Generative resolver stand-in: replays responses, raising exceptions"""

    def __init__(self, *responses, delay=0.0):
        self.responses = list(responses)
        self.delay = delay
        self.calls = []

    def resolve(self, history, prior_context=None):
        self.calls.append((list(history), prior_context))
        if self.delay:
            time.sleep(self.delay)
        response = self.responses[min(len(self.calls), len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


class RecordingSleep:
    """Backoff sleep that returns immediately and records requested delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class NothingExistsTable:
    """Code table whose existence check rejects every code"""

    def __init__(self, table):
        self._table = table

    def __getattr__(self, name):
        return getattr(self._table, name)

    def exists(self, code):
        return False


def knee_payload(confidence=0.85, code="7920"):
    return ResolutionPayload(candidates=(CandidateCode(
        code=code,
        name="Tendinitis knie",
        rationale="Deze pijn past bij overbelasting van de patellapees bij traplopen en springen.",
        confidence=confidence,
    ),))


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def make_orchestrator(code_table, sleep):
    def factory(generative=None, config=None, table=None):
        return ResolutionOrchestrator(
            table or code_table,
            generative=generative,
            config=config,
            sleep=sleep,
        )
    return factory


def run(coro):
    return asyncio.run(coro)


class TestInitialization:

    def test_requires_code_table_methods(self):
        with pytest.raises(TypeError, match="lookup"):
            ResolutionOrchestrator(object())

    def test_requires_generative_resolve(self, code_table):
        with pytest.raises(TypeError, match="resolve"):
            ResolutionOrchestrator(code_table, generative=object())

    def test_strategy_chain(self, make_orchestrator):
        names = [s.name for s in make_orchestrator(FakeGenerative(knee_payload())).strategies]
        assert names == [PATH_GENERATIVE, PATH_PATTERN_MATCHING, PATH_GENERIC_CLARIFICATION]

        names = [s.name for s in make_orchestrator().strategies]
        assert names == [PATH_PATTERN_MATCHING, PATH_GENERIC_CLARIFICATION]

    def test_backoff_is_linear(self):
        assert [backoff_delay(n, 1.5) for n in (1, 2, 3)] == [1.5, 3.0, 4.5]


class TestPatternFallback:

    def test_knee_query_without_generative(self, make_orchestrator):
        orchestrator = make_orchestrator()
        result = run(orchestrator.resolve(KNEE_QUERY))

        assert result.success
        assert not result.needs_clarification
        assert result.error is None
        assert [s.code for s in result.suggestions] == KNEE_CODES
        assert [s.confidence for s in result.suggestions] == pytest.approx([0.72, 0.68, 0.64])
        assert result.debug["resolution_path"] == PATH_PATTERN_MATCHING
        assert orchestrator.store.get_status(result.conversation_id) == ConversationStatus.RESOLVED

    def test_rationales_replaced_by_generated_text(self, make_orchestrator):
        result = run(make_orchestrator().resolve(KNEE_QUERY))
        assert result.suggestions[0].rationale == PATHOPHYSIOLOGY_TEMPLATES["20"]
        assert all(len(s.rationale) <= 150 for s in result.suggestions)

    def test_rationale_contexts_decay_from_top_candidate(self, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.rationale_generator = Mock(wraps=orchestrator.rationale_generator)
        run(orchestrator.resolve(KNEE_QUERY))

        entries, context = orchestrator.rationale_generator.generate_for_codes.call_args.args
        assert [e.code for e in entries] == KNEE_CODES
        assert context.confidence == pytest.approx(0.72)
        assert context.query == KNEE_QUERY

    def test_vague_query_asks_for_location(self, make_orchestrator):
        orchestrator = make_orchestrator()
        result = run(orchestrator.resolve("pijn"))

        assert result.success
        assert result.needs_clarification
        assert result.suggestions == ()
        assert result.clarifying_question == TEMPLATE_TEXT[ClarificationTemplateID.CLARIFY_LOCATION]
        assert orchestrator.store.get_status(result.conversation_id) == ConversationStatus.AWAITING_CLARIFICATION

    def test_generic_clarification_when_nothing_survives(self, make_orchestrator, code_table):
        result = run(make_orchestrator(table=NothingExistsTable(code_table)).resolve(KNEE_QUERY))

        assert not result.success
        assert result.needs_clarification
        assert result.clarifying_question == TEMPLATE_TEXT[ClarificationTemplateID.CLARIFY_RETRY]
        assert result.error.kind == ErrorKind.UNKNOWN
        assert result.debug["resolution_path"] == PATH_GENERIC_CLARIFICATION


class TestGenerativePath:

    def test_accepted_candidates_are_boosted(self, make_orchestrator, sleep):
        generative = FakeGenerative(knee_payload(confidence=0.85))
        result = run(make_orchestrator(generative).resolve(KNEE_QUERY))

        assert result.success
        assert result.debug["resolution_path"] == PATH_GENERATIVE
        assert result.debug["generative_attempts"] == 1
        assert [s.code for s in result.suggestions] == ["7920"]
        assert result.suggestions[0].confidence == pytest.approx(0.935)
        assert sleep.delays == []

    def test_boost_capped_at_one(self, make_orchestrator):
        result = run(make_orchestrator(FakeGenerative(knee_payload(confidence=0.95))).resolve(KNEE_QUERY))
        assert result.suggestions[0].confidence == 1.0

    def test_history_and_prior_context_forwarded(self, make_orchestrator):
        generative = FakeGenerative(knee_payload())
        prior = [{"question": "Leeftijd?", "answer": "45"}]
        run(make_orchestrator(generative).resolve(KNEE_QUERY, prior_context=prior))

        history, prior_context = generative.calls[0]
        assert history[0].content == KNEE_QUERY
        assert prior_context == prior

    def test_generative_clarification(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeGenerative(ClarificationPayload(question="Welke knie?")))
        result = run(orchestrator.resolve(KNEE_QUERY))

        assert result.success
        assert result.needs_clarification
        assert result.clarifying_question == "Welke knie?"
        assert result.debug["resolution_path"] == PATH_GENERATIVE
        assert orchestrator.store.get_status(result.conversation_id) == ConversationStatus.AWAITING_CLARIFICATION

    def test_invalid_codes_never_returned(self, make_orchestrator, sleep):
        payload = ResolutionPayload(candidates=(
            CandidateCode("5020", "Onbekend", "Pijn past bij deze code.", 0.9),
            CandidateCode("7920", "Tendinitis knie", "Pijn past bij deze code.", 0.9),
        ))
        generative = FakeGenerative(payload)
        result = run(make_orchestrator(generative).resolve(KNEE_QUERY))

        assert "5020" not in [s.code for s in result.suggestions]
        assert result.debug["resolution_path"] == PATH_PATTERN_MATCHING
        assert result.debug["generative_rejections"] == 2
        assert len(generative.calls) == 2
        assert any("5020" in w for w in result.debug["warnings"])
        # Rejections retry immediately; only raised failures back off
        assert sleep.delays == []


class TestRetryAndFallback:

    def test_forced_failure_falls_back(self, make_orchestrator, sleep):
        generative = FakeGenerative(GenerativeServiceError("model crashed", status=503))
        result = run(make_orchestrator(generative).resolve(KNEE_QUERY))

        assert result.success
        assert result.error is None
        assert result.debug["resolution_path"] == PATH_PATTERN_MATCHING
        assert result.debug["generative_attempts"] == 2
        for suggestion, raw in zip(result.suggestions, KNEE_RAW_CONFIDENCES):
            assert suggestion.confidence <= 0.8 * raw + 1e-9
        assert sleep.delays == [1.0]

    def test_timeouts_are_retryable_generative_errors(self, make_orchestrator, sleep):
        generative = FakeGenerative(TimeoutError("read timeout"), TimeoutError("read timeout"))
        result = run(make_orchestrator(generative).resolve(KNEE_QUERY))

        errors = result.debug["errors"]
        assert len(errors) == 2
        classifier = ErrorClassifier()
        for error in errors:
            assert error.kind == ErrorKind.GENERATIVE_SERVICE
            assert classifier.should_retry(error)
        assert result.success
        assert [s.code for s in result.suggestions] == KNEE_CODES
        assert sleep.delays == [1.0]

    def test_recovers_on_second_attempt(self, make_orchestrator, sleep):
        generative = FakeGenerative(ConnectionError("reset"), knee_payload())
        result = run(make_orchestrator(generative).resolve(KNEE_QUERY))

        assert result.debug["resolution_path"] == PATH_GENERATIVE
        assert result.debug["generative_attempts"] == 2
        assert [e.kind for e in result.debug["errors"]] == [ErrorKind.NETWORK]
        assert sleep.delays == [1.0]

    def test_backoff_schedule_follows_config(self, make_orchestrator, sleep):
        generative = FakeGenerative(TimeoutError("slow"))
        config = ResolutionConfig(max_attempts=3, retry_backoff_seconds=0.5)
        run(make_orchestrator(generative, config=config).resolve(KNEE_QUERY))

        assert len(generative.calls) == 3
        assert sleep.delays == [0.5, 1.0]

    def test_unrecoverable_error_stops_retrying(self, make_orchestrator, sleep):
        generative = FakeGenerative(KnowledgeBaseError("table gone"))
        result = run(make_orchestrator(generative).resolve(KNEE_QUERY))

        assert len(generative.calls) == 1
        assert sleep.delays == []
        assert result.debug["errors"][0].kind == ErrorKind.KNOWLEDGE_BASE
        assert result.debug["resolution_path"] == PATH_PATTERN_MATCHING

    def test_deadline_cancels_generative_stage(self, make_orchestrator):
        generative = FakeGenerative(knee_payload(), delay=0.3)
        result = run(make_orchestrator(generative).resolve(KNEE_QUERY, deadline_seconds=0.05))

        assert result.success
        assert result.debug["resolution_path"] == PATH_PATTERN_MATCHING
        last_error = result.debug["errors"][-1]
        assert last_error.kind == ErrorKind.GENERATIVE_SERVICE
        assert not last_error.recoverable

    def test_strategy_exception_falls_through(self, make_orchestrator):
        # A payload without .kind breaks the strategy itself, not the model call
        result = run(make_orchestrator(FakeGenerative(object())).resolve(KNEE_QUERY))

        assert result.success
        assert result.debug["resolution_path"] == PATH_PATTERN_MATCHING
        assert result.debug["errors"][-1].kind == ErrorKind.UNKNOWN


class TestValidation:

    @pytest.mark.parametrize("text", ["ab", "a" * 1001, "", None, "<script>x</script> knie"])
    def test_rejected_queries(self, make_orchestrator, text):
        orchestrator = make_orchestrator()
        result = run(orchestrator.resolve(text))

        assert not result.success
        assert not result.needs_clarification
        assert result.suggestions == ()
        assert result.error.kind == ErrorKind.VALIDATION
        assert result.conversation_id == ""
        assert result.debug["resolution_path"] == PATH_VALIDATION
        assert orchestrator.store.get_stats()["total_conversations"] == 0

    def test_generative_not_called_for_invalid_query(self, make_orchestrator):
        generative = FakeGenerative(knee_payload())
        run(make_orchestrator(generative).resolve("ab"))
        assert generative.calls == []

    def test_to_dict_shape(self, make_orchestrator):
        data = run(make_orchestrator().resolve("ab")).to_dict()
        assert data["success"] is False
        assert data["error"]["type"] == "validation"
        assert "clarifyingQuestion" not in data


class TestConversations:

    def test_clarification_answer_resolves(self, make_orchestrator):
        orchestrator = make_orchestrator()
        first = run(orchestrator.resolve("pijn"))
        second = run(orchestrator.resolve_clarification_answer(first.conversation_id, "in de knie bij traplopen"))

        assert second.conversation_id == first.conversation_id
        assert second.success
        assert not second.needs_clarification
        assert [s.code for s in second.suggestions] == KNEE_CODES
        assert orchestrator.store.build_complete_query(first.conversation_id) == "pijn in de knie bij traplopen"

    def test_answer_for_unknown_conversation(self, make_orchestrator):
        result = run(make_orchestrator().resolve_clarification_answer("missing", "in de knie"))
        assert result.error.kind == ErrorKind.VALIDATION
        assert result.debug["resolution_path"] == PATH_VALIDATION

    def test_answer_when_not_awaiting(self, make_orchestrator):
        orchestrator = make_orchestrator()
        resolved = run(orchestrator.resolve(KNEE_QUERY))
        result = run(orchestrator.resolve_clarification_answer(resolved.conversation_id, "links"))
        assert result.error.kind == ErrorKind.VALIDATION

    def test_answer_text_is_validated(self, make_orchestrator):
        orchestrator = make_orchestrator()
        first = run(orchestrator.resolve("pijn"))
        result = run(orchestrator.resolve_clarification_answer(first.conversation_id, "a"))

        assert result.error.kind == ErrorKind.VALIDATION
        status = orchestrator.store.get_status(first.conversation_id)
        assert status == ConversationStatus.AWAITING_CLARIFICATION

    def test_clarification_cap_abandons_conversation(self, make_orchestrator):
        orchestrator = make_orchestrator()
        cid = run(orchestrator.resolve("pijn")).conversation_id
        second = run(orchestrator.resolve_clarification_answer(cid, "nog steeds"))
        assert second.needs_clarification
        assert not second.debug["conversation_abandoned"]

        third = run(orchestrator.resolve_clarification_answer(cid, "ja echt"))
        assert third.needs_clarification
        assert third.debug["conversation_abandoned"]
        assert third.clarifying_question == TEMPLATE_TEXT[ClarificationTemplateID.CLARIFY_TOO_MANY_ROUNDS]
        assert orchestrator.store.get_status(cid) == ConversationStatus.ABANDONED

    def test_concurrent_answers_are_serialized(self, make_orchestrator):
        generative = FakeGenerative(ClarificationPayload(question="Waar?"), knee_payload(), delay=0.05)
        orchestrator = make_orchestrator(generative)
        cid = run(orchestrator.resolve("pijn")).conversation_id

        async def answer_twice():
            return await asyncio.gather(
                orchestrator.resolve_clarification_answer(cid, "in de knie"),
                orchestrator.resolve_clarification_answer(cid, "in de linker knie"),
            )

        first, second = run(answer_twice())

        assert first.success and not first.needs_clarification
        assert second.error.kind == ErrorKind.VALIDATION
        assert orchestrator.store.get_status(cid) == ConversationStatus.RESOLVED
        snapshot = orchestrator.store.get(cid)
        assert snapshot.clarification_rounds == 1
        assert [t.content for t in snapshot.turns if t.turn_type == TurnType.CLARIFICATION_ANSWER] == ["in de knie"]

    def test_query_on_conversation_in_flight(self, make_orchestrator):
        orchestrator = make_orchestrator()
        cid = run(orchestrator.resolve("pijn")).conversation_id
        orchestrator.store.begin_run(cid)

        result = run(orchestrator.resolve(KNEE_QUERY, conversation_id=cid))

        assert result.error.kind == ErrorKind.VALIDATION
        assert result.conversation_id == cid
        assert orchestrator.store.build_complete_query(cid) == "pijn"

    def test_run_claim_released(self, make_orchestrator):
        orchestrator = make_orchestrator()
        cid = run(orchestrator.resolve("pijn")).conversation_id
        result = run(orchestrator.resolve_clarification_answer(cid, "in de knie bij traplopen"))
        assert result.success
        # Raises ConversationBusyError if a claim leaked
        orchestrator.store.begin_run(cid)

    def test_follow_up_query_continues_open_conversation(self, make_orchestrator):
        orchestrator = make_orchestrator()
        cid = run(orchestrator.resolve("pijn")).conversation_id
        result = run(orchestrator.resolve("in de knie bij traplopen", conversation_id=cid))

        assert result.conversation_id == cid
        assert [s.code for s in result.suggestions] == KNEE_CODES

    def test_closed_conversation_starts_new_one(self, make_orchestrator):
        orchestrator = make_orchestrator()
        cid = run(orchestrator.resolve(KNEE_QUERY)).conversation_id
        result = run(orchestrator.resolve(KNEE_QUERY, conversation_id=cid))
        assert result.conversation_id != cid

    def test_conversation_analysis(self, make_orchestrator):
        orchestrator = make_orchestrator()
        cid = run(orchestrator.resolve("pijn")).conversation_id
        analysis = orchestrator.get_conversation_analysis(cid)

        assert analysis["conversation"]["id"] == cid
        assert "location" in analysis["missing_info"]
        assert "Specificeer de exacte lichaamsregio" in analysis["suggestions"]

    def test_conversation_analysis_unknown(self, make_orchestrator):
        analysis = make_orchestrator().get_conversation_analysis("missing")
        assert analysis == {
            "conversation": None,
            "missing_info": ["conversation"],
            "suggestions": ["Start een nieuwe conversatie"],
        }


class TestValidateCode:

    def test_valid_code(self, make_orchestrator):
        outcome = make_orchestrator().validate_code("7920")
        assert outcome["valid"]
        assert outcome["location"] == "Gecombineerd ** Knie/ Onderbeen/ Voet"
        assert outcome["pathology"] == "Epicondylitis / tendinitis / tendovaginitis"

    def test_invalid_code(self, make_orchestrator):
        outcome = make_orchestrator().validate_code("79a0")
        assert not outcome["valid"]
        assert outcome["error"]["type"] == "validation"
        assert "Gebruik alleen cijfers (0-9)" in outcome["error"]["suggestions"]


class TestSearchCodes:

    def test_search_reports_entries(self, make_orchestrator, code_table):
        outcome = make_orchestrator().search_codes("  Artrose ", limit=1000)

        assert outcome["term"] == "Artrose"
        assert outcome["total"] == len(code_table.search_by_description("Artrose"))
        knee = next(r for r in outcome["results"] if r["code"] == "7923")
        assert knee["location"] == "Gecombineerd ** Knie/ Onderbeen/ Voet"

    def test_search_limit(self, make_orchestrator):
        outcome = make_orchestrator().search_codes("Artrose", limit=2)
        assert len(outcome["results"]) == 2
        assert outcome["total"] > 2

    @pytest.mark.parametrize("term", ["", "   ", None])
    def test_blank_term(self, make_orchestrator, term):
        assert make_orchestrator().search_codes(term) == {"term": "", "total": 0, "results": []}


class TestHealthCheck:

    def test_pattern_only_is_degraded(self, make_orchestrator):
        orchestrator = make_orchestrator()
        report = run(orchestrator.health_check())

        assert report["status"] == DEGRADED
        assert report["details"]["generative_enabled"] is False
        assert report["details"]["needs_clarification"] is True
        assert report["details"]["code_table_version"] == "2024.1"

    def test_generative_is_healthy(self, make_orchestrator):
        report = run(make_orchestrator(FakeGenerative(knee_payload())).health_check())

        assert report["status"] == HEALTHY
        assert report["details"]["resolution_path"] == PATH_GENERATIVE
        assert report["details"]["suggestion_count"] == 1
        assert report["details"]["error"] is None

    def test_health_check_does_not_touch_store(self, make_orchestrator):
        orchestrator = make_orchestrator()
        run(orchestrator.health_check())
        assert orchestrator.store.get_stats()["total_conversations"] == 0
