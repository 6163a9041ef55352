"""
Unit tests for ErrorClassifier

Tests taxonomy mapping, retry eligibility, query validation and suggestions
"""

import asyncio

import pytest

from diagnosis_resolver.contracts import ErrorKind
from diagnosis_resolver.core.code_table import CodeCheckFailure
from diagnosis_resolver.core.error_classifier import ErrorClassifier
from diagnosis_resolver.exceptions import (
    GenerationCancelledError,
    GenerativeServiceError,
    KnowledgeBaseError,
    QueryValidationError,
)


class StatusError(Exception):
    """Transport failure carrying an HTTP-like status"""

    def __init__(self, message, status):
        super().__init__(message)
        self.status = status


@pytest.fixture
def classifier(clock):
    return ErrorClassifier(clock=clock)


class TestClassify:

    def test_rate_limit(self, classifier):
        error = classifier.classify(StatusError("too many", 429))
        assert error.kind == ErrorKind.RATE_LIMIT
        assert error.recoverable
        assert classifier.should_retry(error)

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_are_generative_service(self, classifier, status):
        error = classifier.classify(GenerativeServiceError("boom", status=status))
        assert error.kind == ErrorKind.GENERATIVE_SERVICE
        assert error.recoverable

    def test_status_zero_is_network(self, classifier):
        assert classifier.classify(StatusError("offline", 0)).kind == ErrorKind.NETWORK

    def test_timeout_exception(self, classifier):
        error = classifier.classify(TimeoutError("read timed out"))
        assert error.kind == ErrorKind.GENERATIVE_SERVICE
        assert classifier.should_retry(error)

    def test_asyncio_timeout(self, classifier):
        assert classifier.classify(asyncio.TimeoutError()).kind == ErrorKind.GENERATIVE_SERVICE

    def test_timeout_text(self, classifier):
        error = classifier.classify(RuntimeError("Request Timeout after 30s"))
        assert error.kind == ErrorKind.GENERATIVE_SERVICE
        assert error.recoverable

    def test_connection_error(self, classifier):
        error = classifier.classify(ConnectionError("refused"))
        assert error.kind == ErrorKind.NETWORK
        assert classifier.should_retry(error)

    def test_knowledge_base_not_recoverable(self, classifier):
        for failure in (KnowledgeBaseError("bad table"), FileNotFoundError("gone")):
            error = classifier.classify(failure)
            assert error.kind == ErrorKind.KNOWLEDGE_BASE
            assert not error.recoverable
            assert not classifier.should_retry(error)

    def test_knowledge_base_hint(self, classifier):
        assert classifier.classify(KeyError("x"), context_hint="knowledge-base").kind == ErrorKind.KNOWLEDGE_BASE

    def test_cancellation_is_unrecoverable_generative_error(self, classifier):
        error = classifier.classify(GenerationCancelledError("deadline"))
        assert error.kind == ErrorKind.GENERATIVE_SERVICE
        assert not error.recoverable
        assert not classifier.should_retry(error)

    def test_generative_hint(self, classifier):
        error = classifier.classify(ValueError("weird"), context_hint="generative-service")
        assert error.kind == ErrorKind.GENERATIVE_SERVICE

    def test_unmatched_is_unknown(self, classifier):
        error = classifier.classify(ValueError("weird"))
        assert error.kind == ErrorKind.UNKNOWN
        assert not error.recoverable
        assert not classifier.should_retry(error)
        assert "ValueError" in error.details

    def test_classified_error_passes_through(self, classifier):
        original = classifier.classify(ConnectionError("x"))
        assert classifier.classify(original) is original

    def test_query_validation_error_carries_classification(self, classifier):
        classified = classifier.validate_query("a")
        error = classifier.classify(QueryValidationError("short", classified=classified))
        assert error is classified

    def test_validation_hint(self, classifier):
        error = classifier.classify(ValueError("bad"), context_hint="validation")
        assert error.kind == ErrorKind.VALIDATION
        assert error.recoverable
        assert not classifier.should_retry(error)

    def test_timestamp_from_clock(self, classifier, clock):
        assert classifier.classify(ValueError("x")).timestamp == clock.now

    def test_unknown_error(self, classifier):
        error = classifier.unknown_error("nothing worked", details="trace")
        assert error.kind == ErrorKind.UNKNOWN
        assert not error.recoverable
        assert error.details == "trace"


class TestValidationErrors:

    def test_wrong_length_suggests_four_digits(self, classifier):
        error = classifier.validation_error("792", "te kort", CodeCheckFailure.WRONG_LENGTH)
        assert error.kind == ErrorKind.VALIDATION
        assert error.code == "792"
        assert any("4 cijfers" in s for s in error.suggestions)

    def test_every_failure_has_suggestions(self, classifier):
        for failure in CodeCheckFailure:
            assert classifier.validation_error("x", "r", failure).suggestions

    def test_to_dict_shape(self, classifier, clock):
        data = classifier.validation_error(1234, "reden", CodeCheckFailure.NOT_A_STRING).to_dict()
        assert data["type"] == "validation"
        assert data["code"] == "1234"
        assert data["recoverable"] is True
        assert data["timestamp"] == clock.now.isoformat()
        assert isinstance(data["suggestions"], list)

    def test_to_dict_omits_missing_code(self, classifier):
        assert "code" not in classifier.classify(ValueError("x")).to_dict()


class TestValidateQuery:

    @pytest.mark.parametrize("query", [None, 42, "", "   ", "ab", " ab "])
    def test_rejects_empty_or_short(self, classifier, query):
        error = classifier.validate_query(query)
        assert error is not None
        assert error.kind == ErrorKind.VALIDATION

    def test_rejects_too_long(self, classifier):
        error = classifier.validate_query("a" * 1001)
        assert error is not None
        assert "te lang" in error.message

    def test_accepts_boundaries(self, classifier):
        assert classifier.validate_query("abc") is None
        assert classifier.validate_query("a" * 1000) is None
        assert classifier.validate_query("  " + "a" * 1000 + "  ") is None

    @pytest.mark.parametrize("query", [
        "<script>alert(1)</script> knie",
        "knie javascript:void(0)",
        "pijn <iframe src=x></iframe>",
    ])
    def test_rejects_injection(self, classifier, query):
        error = classifier.validate_query(query)
        assert error is not None
        assert error.message == "Ongeldige karakters in vraag"

    def test_configurable_limits(self, clock):
        classifier = ErrorClassifier(min_query_length=5, max_query_length=10, clock=clock)
        assert classifier.validate_query("knie") is not None
        assert classifier.validate_query("kniepijn") is None
        assert classifier.validate_query("kniepijn links") is not None


class TestMessages:

    def test_user_message_per_kind(self, classifier):
        assert "Wacht" in classifier.user_message(classifier.classify(StatusError("x", 429)))
        assert classifier.user_message(
            classifier.validation_error("x", "fout", CodeCheckFailure.NON_NUMERIC)
        ).startswith("Code validatie fout")

    def test_log_error_levels(self, classifier, caplog):
        with caplog.at_level("WARNING"):
            classifier.log_error(classifier.classify(ConnectionError("x")), {"attempt": 1})
            classifier.log_error(classifier.classify(ValueError("y")))
        levels = [r.levelname for r in caplog.records]
        assert levels == ["WARNING", "ERROR"]
