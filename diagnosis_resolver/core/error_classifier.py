"""
Error Classifier - Map raw failures into the pipeline's error taxonomy

Responsibilities:
- Classify exceptions and status codes into ClassifiedError values
- Decide recoverability and retry eligibility
- Derive remediation suggestions (format-specific for code validation)
- Validate incoming query text before any processing
- Produce caller-facing Dutch messages per error kind

Design principles:
- Pure mapping (no retries or side effects beyond logging)
- Never raises while classifying: unmatched failures become UNKNOWN
- Injected clock so timestamps are testable

Classification order:
    1. Already-classified errors pass through unchanged
    2. Query validation failures -> VALIDATION (recoverable)
    3. Caller deadline -> GENERATIVE_SERVICE (not recoverable)
    4. status 429 -> RATE_LIMIT, status >= 500 -> GENERATIVE_SERVICE, status 0 -> NETWORK
    5. Code table failures -> KNOWLEDGE_BASE (not recoverable)
    6. Timeout-like failures -> GENERATIVE_SERVICE (recoverable)
    7. Connection failures -> NETWORK (recoverable)
    8. Other generative failures -> GENERATIVE_SERVICE (recoverable)
    9. Anything else -> UNKNOWN (not recoverable)
"""

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from diagnosis_resolver.contracts import ClassifiedError, ErrorKind
from diagnosis_resolver.core.code_table import CodeCheckFailure
from diagnosis_resolver.exceptions import (
    GenerationCancelledError,
    GenerativeServiceError,
    KnowledgeBaseError,
    QueryValidationError,
)
from diagnosis_resolver.utils.helpers import utc_now

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 3
MAX_QUERY_LENGTH = 1000

# Script/markup injection signatures
SUSPICIOUS_PATTERNS = [
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"<iframe", re.IGNORECASE),
    re.compile(r"eval\(", re.IGNORECASE),
]

RETRYABLE_KINDS = {ErrorKind.NETWORK, ErrorKind.GENERATIVE_SERVICE, ErrorKind.RATE_LIMIT}

GENERATIVE_SUGGESTIONS = [
    "Probeer uw vraag anders te formuleren",
    "Gebruik meer specifieke medische termen",
    "Geef meer details over de klacht",
]

NETWORK_SUGGESTIONS = [
    "Controleer uw internetverbinding",
    "Probeer de pagina te verversen",
    "Probeer het over enkele minuten opnieuw",
]

KNOWLEDGE_BASE_SUGGESTIONS = [
    "Contacteer de systeembeheerder",
    "Probeer handmatig zoeken in DCSPH tabellen",
]

VALIDATION_SUGGESTIONS = {
    CodeCheckFailure.NOT_A_STRING: [
        "DCSPH codes bestaan uit exact 4 cijfers",
        "Voorbeeld: 7920 (79=locatie, 20=pathologie)",
    ],
    CodeCheckFailure.WRONG_LENGTH: [
        "DCSPH codes bestaan uit exact 4 cijfers",
        "Voorbeeld: 7920 (79=locatie, 20=pathologie)",
    ],
    CodeCheckFailure.NON_NUMERIC: [
        "Gebruik alleen cijfers (0-9)",
        "Geen letters, spaties of speciale tekens",
    ],
    CodeCheckFailure.UNKNOWN_LOCATION: [
        "Controleer de eerste 2 cijfers (locatiecode)",
        "Raadpleeg DCSPH Tabel A voor geldige locatiecodes",
    ],
    CodeCheckFailure.UNKNOWN_PATHOLOGY: [
        "Controleer de laatste 2 cijfers (pathologiecode)",
        "Raadpleeg DCSPH Tabel B voor geldige pathologiecodes",
    ],
}

GENERIC_VALIDATION_SUGGESTIONS = [
    "Controleer de DCSPH code format",
    "Gebruik de zoekfunctie voor hulp",
]

USER_MESSAGES = {
    ErrorKind.NETWORK: "Verbindingsprobleem. Controleer uw internet en probeer opnieuw.",
    ErrorKind.GENERATIVE_SERVICE: "Er ging iets mis bij het verwerken. Probeer uw vraag anders te stellen.",
    ErrorKind.RATE_LIMIT: "Te veel verzoeken. Wacht even en probeer opnieuw.",
    ErrorKind.KNOWLEDGE_BASE: "Systeemfout. Contacteer support als dit blijft gebeuren.",
    ErrorKind.UNKNOWN: "Er is een onbekende fout opgetreden. Probeer opnieuw.",
}


class ErrorClassifier:
    """
    Maps raw failures into ClassifiedError values.

    Example:
        >>> classifier = ErrorClassifier()
        >>> err = classifier.classify(TimeoutError("request timeout"))
        >>> err.kind, classifier.should_retry(err)
        (<ErrorKind.GENERATIVE_SERVICE: 'generative-service'>, True)
    """

    def __init__(
        self,
        min_query_length: int = MIN_QUERY_LENGTH,
        max_query_length: int = MAX_QUERY_LENGTH,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.min_query_length = min_query_length
        self.max_query_length = max_query_length
        self._clock = clock or utc_now

    def _make(
        self,
        kind: ErrorKind,
        message: str,
        recoverable: bool,
        suggestions: List[str],
        code: Optional[str] = None,
        details: Optional[str] = None
    ) -> ClassifiedError:
        return ClassifiedError(
            kind=kind,
            message=message,
            recoverable=recoverable,
            suggestions=tuple(suggestions),
            timestamp=self._clock(),
            code=code,
            details=details,
        )

    def classify(
        self,
        failure: Any,
        context_hint: Optional[str] = None,
        code: Optional[str] = None
    ) -> ClassifiedError:
        """
        Map a raw failure into the taxonomy.

        Args:
            failure: Exception, ClassifiedError, or any object with an optional
                `status` attribute
            context_hint: Where the failure happened ('validation',
                'knowledge-base', 'generative-service', 'network')
            code: Originating diagnosis code, if any

        Returns:
            ClassifiedError: Never raises
        """
        if isinstance(failure, ClassifiedError):
            return failure

        if isinstance(failure, QueryValidationError):
            if failure.classified is not None:
                return failure.classified
            return self._make(ErrorKind.VALIDATION, str(failure), True,
                              ["Beschrijf de klacht in meer detail"], code=code)

        text = str(failure)
        details = f"{type(failure).__name__}: {text}"

        if context_hint == "validation":
            return self._make(ErrorKind.VALIDATION, text, True,
                              list(GENERIC_VALIDATION_SUGGESTIONS), code=code, details=details)

        if isinstance(failure, GenerationCancelledError):
            return self._make(
                ErrorKind.GENERATIVE_SERVICE,
                "Verzoek geannuleerd: de maximale wachttijd is verstreken.",
                False,
                ["Maak uw vraag korter en specifieker"],
                code=code, details=details,
            )

        status = getattr(failure, "status", None)
        if status == 429:
            return self._make(
                ErrorKind.RATE_LIMIT,
                "Te veel verzoeken. Probeer het over een moment opnieuw.",
                True,
                ["Wacht 1 minuut en probeer opnieuw"],
                code=code, details=details,
            )

        if isinstance(status, int) and status >= 500:
            return self._make(
                ErrorKind.GENERATIVE_SERVICE,
                "Tijdelijke serverfout. Probeer het over een moment opnieuw.",
                True,
                list(GENERATIVE_SUGGESTIONS),
                code=code, details=details,
            )

        if status == 0:
            return self._make(
                ErrorKind.NETWORK,
                "Server niet bereikbaar. Probeer het later opnieuw.",
                True,
                list(NETWORK_SUGGESTIONS),
                code=code, details=details,
            )

        if isinstance(failure, (KnowledgeBaseError, FileNotFoundError)) or context_hint == "knowledge-base":
            return self._make(
                ErrorKind.KNOWLEDGE_BASE,
                f"Fout in kennis database: {text}",
                False,
                list(KNOWLEDGE_BASE_SUGGESTIONS),
                code=code, details=details,
            )

        if isinstance(failure, (TimeoutError, asyncio.TimeoutError)) or "timeout" in text.lower():
            return self._make(
                ErrorKind.GENERATIVE_SERVICE,
                "Verzoek duurde te lang. Probeer een kortere vraag.",
                True,
                ["Maak uw vraag korter en specifieker"] + GENERATIVE_SUGGESTIONS,
                code=code, details=details,
            )

        if isinstance(failure, ConnectionError) or context_hint == "network":
            return self._make(
                ErrorKind.NETWORK,
                "Netwerkfout. Controleer uw internetverbinding.",
                True,
                list(NETWORK_SUGGESTIONS),
                code=code, details=details,
            )

        if isinstance(failure, GenerativeServiceError) or context_hint == "generative-service":
            return self._make(
                ErrorKind.GENERATIVE_SERVICE,
                "Er is een fout opgetreden bij het verwerken van uw vraag.",
                True,
                list(GENERATIVE_SUGGESTIONS),
                code=code, details=details,
            )

        return self._make(
            ErrorKind.UNKNOWN,
            "Er is een onbekende fout opgetreden.",
            False,
            [],
            code=code, details=details,
        )

    def unknown_error(self, message: str, details: Optional[str] = None) -> ClassifiedError:
        """UNKNOWN error for a pipeline that ran out of resolution paths."""
        return self._make(ErrorKind.UNKNOWN, message, False, [], details=details)

    def validation_error(
        self,
        code: Any,
        reason: str,
        failure: Optional[CodeCheckFailure] = None
    ) -> ClassifiedError:
        """
        Build a VALIDATION error for a rejected code.

        Args:
            code: The rejected code (stringified for the error record)
            reason: Why it was rejected
            failure: Typed reason from CodeTable.validate()

        Returns:
            ClassifiedError: Recoverable, with format-specific suggestions
        """
        suggestions = VALIDATION_SUGGESTIONS.get(failure, GENERIC_VALIDATION_SUGGESTIONS)
        return self._make(
            ErrorKind.VALIDATION,
            f"Ongeldige DCSPH code: {reason}",
            True,
            list(suggestions),
            code=None if code is None else str(code),
        )

    def validate_query(self, query: Any) -> Optional[ClassifiedError]:
        """
        Check query text before any processing.

        Args:
            query: Raw query (any type)

        Returns:
            ClassifiedError if the query is rejected, None if acceptable
        """
        if not isinstance(query, str) or not query.strip():
            return self._make(ErrorKind.VALIDATION, "Vraag is vereist en moet tekst bevatten",
                              True, ["Typ uw vraag in het tekstveld"])

        if len(query.strip()) < self.min_query_length:
            return self._make(
                ErrorKind.VALIDATION,
                f"Vraag is te kort. Gebruik minimaal {self.min_query_length} karakters",
                True,
                ["Beschrijf de klacht in meer detail", "Geef aan waar de klachten zich bevinden"],
            )

        if len(query.strip()) > self.max_query_length:
            return self._make(
                ErrorKind.VALIDATION,
                f"Vraag is te lang. Gebruik maximaal {self.max_query_length} karakters",
                True,
                ["Maak uw vraag korter en bondiger", "Focus op de hoofdklacht"],
            )

        for pattern in SUSPICIOUS_PATTERNS:
            if pattern.search(query):
                return self._make(ErrorKind.VALIDATION, "Ongeldige karakters in vraag",
                                  True, ["Gebruik alleen normale tekst zonder code"])

        return None

    @staticmethod
    def should_retry(error: ClassifiedError) -> bool:
        """True only for recoverable network, generative-service and rate-limit errors."""
        return error.recoverable and error.kind in RETRYABLE_KINDS

    @staticmethod
    def user_message(error: ClassifiedError) -> str:
        """Caller-facing Dutch message for an error."""
        if error.kind == ErrorKind.VALIDATION:
            return f"Code validatie fout: {error.message}"
        return USER_MESSAGES.get(error.kind, USER_MESSAGES[ErrorKind.UNKNOWN])

    @staticmethod
    def log_error(error: ClassifiedError, context: Optional[Dict[str, Any]] = None) -> None:
        """Log a classified error at a level matching its severity."""
        level = logging.WARNING if error.recoverable else logging.ERROR
        logger.log(
            level,
            f"{error.kind.value} error: {error.message} "
            f"(recoverable={error.recoverable}, code={error.code}, context={context or {}}, "
            f"details={error.details})"
        )
