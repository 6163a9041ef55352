"""
Resolution Orchestrator - Query-to-codes coordination

Responsibilities:
- Validate query text before any processing
- Obtain or create the conversation for a query
- Run resolution strategies in order (generative -> pattern matching ->
  generic clarification) until one produces a result
- Enrich surviving candidates with generated rationales
- Record the outcome in the conversation (clarifying question or resolution)
- Convert every failure into a ResolutionResult

Design principles:
- Explicit strategy chain: each strategy returns a result or None ("try next")
- Bounded generative retry loop with linear backoff (attempt * unit)
- Injected sleep so the backoff schedule is testable without waiting
- Injected conversation store (no module-level registry)
- Callers never receive a raw exception

Suspension points:
    Only the generative call (run in a worker thread) and the backoff sleep
    suspend. Everything else is synchronous and fast.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from diagnosis_resolver.config import ResolutionConfig
from diagnosis_resolver.contracts import (
    CandidateCode,
    ClassifiedError,
    ClinicalContext,
    PatternAnalysis,
    RationaleContext,
    ResolutionResult,
    Turn,
    TurnType,
)
from diagnosis_resolver.core.code_table import CodeTable
from diagnosis_resolver.core.conversation_store import TERMINAL_STATUSES, ConversationStore
from diagnosis_resolver.core.error_classifier import ErrorClassifier
from diagnosis_resolver.core.pattern_matcher import PatternMatcher, extract_signals
from diagnosis_resolver.core.rationale_generator import MIN_RATIONALE_QUALITY, RationaleGenerator
from diagnosis_resolver.core.response_validator import ResponseValidator
from diagnosis_resolver.exceptions import (
    ConversationBusyError,
    GenerationCancelledError,
    InvalidTransitionError,
    QueryValidationError,
    UnknownConversationError,
)
from diagnosis_resolver.utils.clarification_templates import ClarificationTemplateID, TEMPLATE_TEXT

logger = logging.getLogger(__name__)

PATH_GENERATIVE = "generative"
PATH_PATTERN_MATCHING = "pattern_matching"
PATH_GENERIC_CLARIFICATION = "generic_clarification"
PATH_ERROR = "error"
PATH_VALIDATION = "validation"

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

SEARCH_RESULT_LIMIT = 20

MISSING_INFO_SUGGESTIONS = {
    "location": "Specificeer de exacte lichaamsregio",
    "pathology": "Beschrijf het type klacht in meer detail",
    "mechanism": "Leg uit hoe de klachten zijn ontstaan",
}

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class ResolutionRequest:
    """
    Working state of one resolution run, shared by the strategies.

    Attributes:
        conversation_id: Conversation the run belongs to
        query: Complete query text (all patient queries and answers)
        history: Conversation turns at the start of the run
        prior_context: Caller-supplied earlier question/answer pairs
        clinical_context: Structured patient facts, if supplied
        deadline_seconds: Caller budget for the generative stage
        errors: Classified failures absorbed along the way
        attempts: Generative attempts made
        rejections: Generative answers rejected by the validator
        warnings: Validator warnings collected along the way
    """
    conversation_id: str
    query: str
    history: Sequence[Turn]
    prior_context: Optional[List[Dict[str, Any]]] = None
    clinical_context: Optional[ClinicalContext] = None
    deadline_seconds: Optional[float] = None
    errors: List[ClassifiedError] = field(default_factory=list)
    attempts: int = 0
    rejections: int = 0
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class StrategyResult:
    """
    What a strategy hands back to the orchestrator.

    Attributes:
        path: Which strategy produced it
        success: Whether the path completed normally
        candidates: Candidates before enrichment
        needs_clarification: Whether a question should be asked
        clarifying_question: Question text
        validated: True when the Response Validator accepted the candidates
        signals: Extracted text signals, when the strategy computed them
        error: Error to surface to the caller
    """
    path: str
    success: bool
    candidates: Tuple[CandidateCode, ...] = ()
    needs_clarification: bool = False
    clarifying_question: Optional[str] = None
    validated: bool = False
    signals: Optional[PatternAnalysis] = None
    error: Optional[ClassifiedError] = None


def backoff_delay(attempt: int, unit_seconds: float) -> float:
    """Linear backoff: attempt 1 -> 1 unit, attempt 2 -> 2 units."""
    return attempt * unit_seconds


class GenerativeStrategy:
    """
    Bounded generative attempt loop.

    Each attempt calls the generative resolver with the conversation turns
    and validates the answer. Accepted -> result. Rejected -> next attempt.
    Raised -> classify, wait attempt * backoff, next attempt. Exhausted or
    cancelled by the caller deadline -> None (fall through).
    """

    name = PATH_GENERATIVE

    def __init__(
        self,
        resolver,
        validator: ResponseValidator,
        classifier: ErrorClassifier,
        max_attempts: int,
        backoff_seconds: float,
        sleep: SleepFn
    ):
        self.resolver = resolver
        self.validator = validator
        self.classifier = classifier
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def attempt(self, request: ResolutionRequest) -> Optional[StrategyResult]:
        loop = asyncio.get_running_loop()
        deadline_at = None
        if request.deadline_seconds is not None:
            deadline_at = loop.time() + request.deadline_seconds

        def remaining() -> Optional[float]:
            if deadline_at is None:
                return None
            left = deadline_at - loop.time()
            if left <= 0:
                raise GenerationCancelledError("Caller deadline elapsed")
            return left

        try:
            for attempt in range(1, self.max_attempts + 1):
                request.attempts = attempt
                try:
                    payload = await self._call(request, remaining(), loop, deadline_at)
                except GenerationCancelledError:
                    raise
                except Exception as e:
                    classified = self.classifier.classify(e, context_hint="generative-service")
                    self.classifier.log_error(classified, {
                        "conversation_id": request.conversation_id,
                        "attempt": attempt,
                    })
                    request.errors.append(classified)

                    if attempt >= self.max_attempts or not self.classifier.should_retry(classified):
                        logger.warning(
                            f"Generative path failed after {attempt} attempt(s): {classified.kind.value}"
                        )
                        return None

                    delay = backoff_delay(attempt, self.backoff_seconds)
                    left = remaining()
                    if left is not None and left < delay:
                        raise GenerationCancelledError(
                            f"Caller deadline leaves {left:.2f}s, backoff needs {delay:.2f}s"
                        )
                    logger.info(f"Retrying generative call in {delay:.1f}s (attempt {attempt + 1})")
                    await self._sleep(delay)
                    continue

                is_clarification = payload.kind == "clarification"
                outcome = self.validator.validate(payload.candidates, is_clarification=is_clarification)
                request.warnings.extend(outcome.warnings)

                if outcome.accepted:
                    logger.info(
                        f"Generative attempt {attempt} accepted "
                        f"(kind={payload.kind}, mean score {outcome.mean_score:.2f})"
                    )
                    return StrategyResult(
                        path=self.name,
                        success=True,
                        candidates=tuple(outcome.valid_candidates),
                        needs_clarification=is_clarification,
                        clarifying_question=payload.question if is_clarification else None,
                        validated=True,
                    )

                request.rejections += 1
                logger.warning(
                    f"Generative attempt {attempt}/{self.max_attempts} rejected: "
                    f"invalid={list(outcome.invalid_codes)}, mean score {outcome.mean_score:.2f}"
                )

        except GenerationCancelledError as e:
            classified = self.classifier.classify(e)
            self.classifier.log_error(classified, {"conversation_id": request.conversation_id})
            request.errors.append(classified)
            return None

        logger.warning(f"All {self.max_attempts} generative attempts rejected by validation")
        return None

    async def _call(self, request: ResolutionRequest, timeout: Optional[float], loop, deadline_at):
        call = asyncio.to_thread(self.resolver.resolve, request.history, request.prior_context)
        if timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            # The resolver may raise its own TimeoutError before the deadline
            if loop.time() < deadline_at:
                raise
            raise GenerationCancelledError(f"Caller deadline of {request.deadline_seconds}s elapsed") from e


class PatternMatchingStrategy:
    """Deterministic fallback: pattern engine, confidence scaled down."""

    name = PATH_PATTERN_MATCHING

    def __init__(self, matcher: PatternMatcher, code_table: CodeTable, confidence_multiplier: float):
        self.matcher = matcher
        self.code_table = code_table
        self.confidence_multiplier = confidence_multiplier

    async def attempt(self, request: ResolutionRequest) -> Optional[StrategyResult]:
        logger.info(f"Conversation {request.conversation_id}: falling back to pattern matching")
        match = self.matcher.analyze(request.query)

        if match.needs_clarification:
            return StrategyResult(
                path=self.name,
                success=True,
                needs_clarification=True,
                clarifying_question=match.clarifying_question,
                signals=match.signals,
            )

        candidates = tuple(
            replace(c, confidence=min(c.confidence * self.confidence_multiplier, 1.0))
            for c in match.suggestions
            if self.code_table.exists(c.code)
        )
        if not candidates:
            logger.warning("Pattern matcher suggestions did not survive the code table check")
            return None

        return StrategyResult(
            path=self.name,
            success=True,
            candidates=candidates,
            signals=match.signals,
        )


class GenericClarificationStrategy:
    """Terminal strategy: ask for a fuller description. Never returns None."""

    name = PATH_GENERIC_CLARIFICATION

    def __init__(self, classifier: ErrorClassifier):
        self.classifier = classifier

    async def attempt(self, request: ResolutionRequest) -> Optional[StrategyResult]:
        last = request.errors[-1] if request.errors else None
        error = self.classifier.unknown_error(
            "Geen resolutiepad gaf een bruikbaar resultaat.",
            details=last.details if last else None,
        )
        return StrategyResult(
            path=self.name,
            success=False,
            needs_clarification=True,
            clarifying_question=TEMPLATE_TEXT[ClarificationTemplateID.CLARIFY_RETRY],
            error=error,
        )


class ResolutionOrchestrator:
    """
    Resolve free-text complaints into validated, explained diagnosis codes.

    Example:
        >>> orchestrator = ResolutionOrchestrator(CodeTable("data/code_table.json"))
        >>> result = asyncio.run(orchestrator.resolve("kniepijn bij traplopen"))
        >>> [s.code for s in result.suggestions]
        ['7920', '7921', '7922']
    """

    def __init__(
        self,
        code_table: CodeTable,
        generative=None,
        store: Optional[ConversationStore] = None,
        config: Optional[ResolutionConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Optional[SleepFn] = None
    ):
        """
        Args:
            code_table: Loaded code table (read-only, shared)
            generative: GenerativeResolver-like object with resolve(history, prior_context);
                None disables the generative path
            store: Conversation store (created from config if omitted)
            config: Tunable constants (defaults if omitted)
            classifier: Error classifier (created from config if omitted)
            sleep: Coroutine function used for backoff waits (asyncio.sleep)

        Raises:
            TypeError: If generative or code_table is missing required methods
        """
        for method in ("lookup", "exists", "validate"):
            if not callable(getattr(code_table, method, None)):
                raise TypeError(f"code_table must have callable '{method}' method")
        if generative is not None and not callable(getattr(generative, "resolve", None)):
            raise TypeError("generative must have callable resolve() method")

        self.config = config or ResolutionConfig()
        self.code_table = code_table
        self.generative = generative
        self.store = store or ConversationStore(
            max_clarification_rounds=self.config.max_clarification_rounds,
            ttl_seconds=self.config.conversation_ttl_seconds,
            resolved_ttl_seconds=self.config.resolved_conversation_ttl_seconds,
        )
        self.classifier = classifier or ErrorClassifier(
            min_query_length=self.config.min_query_length,
            max_query_length=self.config.max_query_length,
        )
        self.validator = ResponseValidator(code_table)
        self.matcher = PatternMatcher(code_table, max_suggestions=self.config.max_suggestions)
        self.rationale_generator = RationaleGenerator(self.config.short_rationale_max_length)

        self.strategies = []
        if generative is not None:
            self.strategies.append(GenerativeStrategy(
                generative,
                self.validator,
                self.classifier,
                max_attempts=self.config.max_attempts,
                backoff_seconds=self.config.retry_backoff_seconds,
                sleep=sleep or asyncio.sleep,
            ))
        self.strategies.append(PatternMatchingStrategy(
            self.matcher, code_table, self.config.fallback_confidence_multiplier
        ))
        self.strategies.append(GenericClarificationStrategy(self.classifier))

        logger.info(
            f"Resolution orchestrator initialized "
            f"(strategies={[s.name for s in self.strategies]}, max_attempts={self.config.max_attempts})"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def resolve(
        self,
        text: Any,
        conversation_id: Optional[str] = None,
        prior_context: Optional[List[Dict[str, Any]]] = None,
        deadline_seconds: Optional[float] = None,
        clinical_context: Optional[ClinicalContext] = None
    ) -> ResolutionResult:
        """
        Resolve a query into candidate codes or a clarifying question.

        Args:
            text: Complaint text (validated here, any type accepted)
            conversation_id: Existing open conversation to continue; unknown,
                resolved or abandoned ids start a new conversation
            prior_context: Earlier [{'question', 'answer'}] pairs for the model
            deadline_seconds: Budget for the generative stage
            clinical_context: Structured patient facts for rationales

        Returns:
            ResolutionResult: Never raises
        """
        try:
            error = self.classifier.validate_query(text)
            if error is not None:
                raise QueryValidationError(error.message, classified=error)

            conversation_id = self._open_conversation(text.strip(), conversation_id)
            try:
                return await self._run(conversation_id, prior_context, deadline_seconds, clinical_context)
            finally:
                self.store.end_run(conversation_id)

        except QueryValidationError as e:
            return self._validation_result(e, conversation_id)
        except Exception as e:
            return self._error_result(e, conversation_id)

    async def resolve_clarification_answer(
        self,
        conversation_id: str,
        answer_text: Any,
        deadline_seconds: Optional[float] = None
    ) -> ResolutionResult:
        """
        Record an answer to the pending clarifying question and resolve again.

        The complete query (original text plus all answers) is re-resolved.

        Returns:
            ResolutionResult: Never raises. Unknown conversations and
                conversations not awaiting an answer yield a validation error.
        """
        try:
            error = self.classifier.validate_query(answer_text)
            if error is not None:
                raise QueryValidationError(error.message, classified=error)

            try:
                self.store.begin_run(conversation_id, TurnType.CLARIFICATION_ANSWER, answer_text.strip())
            except (UnknownConversationError, InvalidTransitionError) as e:
                classified = self.classifier.classify(e, context_hint="validation")
                raise QueryValidationError(str(e), classified=classified) from e

            logger.info(f"Conversation {conversation_id}: clarification answer received")
            try:
                return await self._run(conversation_id, None, deadline_seconds, None)
            finally:
                self.store.end_run(conversation_id)

        except QueryValidationError as e:
            return self._validation_result(e, conversation_id)
        except Exception as e:
            return self._error_result(e, conversation_id)

    def get_conversation_analysis(self, conversation_id: str) -> Dict[str, Any]:
        """
        Export a conversation with what it still lacks.

        Returns:
            dict: {'conversation': export or None, 'missing_info': [...], 'suggestions': [...]}
        """
        if not self.store.exists(conversation_id):
            return {
                "conversation": None,
                "missing_info": ["conversation"],
                "suggestions": ["Start een nieuwe conversatie"],
            }

        analysis = self.store.analyze_missing_information(conversation_id)
        return {
            "conversation": self.store.export_conversation(conversation_id),
            "missing_info": analysis["missing_info"],
            "suggestions": [
                MISSING_INFO_SUGGESTIONS[item]
                for item in analysis["missing_info"]
                if item in MISSING_INFO_SUGGESTIONS
            ],
        }

    def validate_code(self, code: Any) -> Dict[str, Any]:
        """
        Check one code against the code table.

        Returns:
            dict: {'valid': True, 'code', 'name', 'location', 'pathology'} or
                {'valid': False, 'code', 'error': ClassifiedError dict}
        """
        check = self.code_table.validate(code)
        if check.is_valid:
            entry = check.entry
            return {
                "valid": True,
                "code": entry.code,
                "name": entry.full_description,
                "location": entry.location_description,
                "pathology": entry.pathology_description,
            }

        error = self.classifier.validation_error(code, check.message, check.failure)
        return {"valid": False, "code": code, "error": error.to_dict()}

    def search_codes(self, term: Any, limit: int = SEARCH_RESULT_LIMIT) -> Dict[str, Any]:
        """
        Look up codes whose description contains a term.

        Returns:
            dict: {'term', 'total', 'results': [{'code', 'name', 'location', 'pathology'}, ...]}
                with at most `limit` results
        """
        term = term.strip() if isinstance(term, str) else ""
        matches = self.code_table.search_by_description(term)
        logger.info(f"Code search '{term}': {len(matches)} matches")
        return {
            "term": term,
            "total": len(matches),
            "results": [
                {
                    "code": entry.code,
                    "name": entry.full_description,
                    "location": entry.location_description,
                    "pathology": entry.pathology_description,
                }
                for entry in matches[:limit]
            ],
        }

    async def health_check(self) -> Dict[str, Any]:
        """
        Run the representative query end-to-end on a private conversation store.

        Returns:
            dict: {'status': 'healthy' | 'degraded' | 'unhealthy', 'details': {...}}
        """
        checker = copy.copy(self)
        checker.store = ConversationStore(
            max_clarification_rounds=self.config.max_clarification_rounds,
            ttl_seconds=self.config.conversation_ttl_seconds,
            resolved_ttl_seconds=self.config.resolved_conversation_ttl_seconds,
        )

        try:
            result = await checker.resolve(self.config.health_check_query)
        except Exception as e:
            # resolve() never raises; this only guards the checker setup
            logger.error(f"Health check failed: {type(e).__name__}: {e}")
            return {"status": UNHEALTHY, "details": {"error": str(e)}}

        if result.success and result.suggestions:
            status = HEALTHY
        elif result.needs_clarification:
            status = DEGRADED
        else:
            status = UNHEALTHY

        logger.info(f"Health check: {status} (path={result.debug.get('resolution_path')})")
        return {
            "status": status,
            "details": {
                "resolution_path": result.debug.get("resolution_path"),
                "suggestion_count": len(result.suggestions),
                "needs_clarification": result.needs_clarification,
                "generative_enabled": self.generative is not None,
                "code_table_version": getattr(self.code_table, "version", None),
                "error": result.error.to_dict() if result.error else None,
            },
        }

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _open_conversation(self, text: str, conversation_id: Optional[str]) -> str:
        """Continue an open conversation or start a new one, claiming it for this run."""
        if conversation_id and self.store.exists(conversation_id):
            if self.store.get_status(conversation_id) not in TERMINAL_STATUSES:
                try:
                    self.store.begin_run(conversation_id, TurnType.QUERY, text)
                except ConversationBusyError as e:
                    classified = self.classifier.classify(e, context_hint="validation")
                    raise QueryValidationError(str(e), classified=classified) from e
                return conversation_id
            logger.info(f"Conversation {conversation_id} is closed; starting a new one")
        elif conversation_id:
            logger.info(f"Conversation {conversation_id} not found; starting a new one")
        conversation_id = self.store.start(text)
        self.store.begin_run(conversation_id)
        return conversation_id

    async def _run(
        self,
        conversation_id: str,
        prior_context: Optional[List[Dict[str, Any]]],
        deadline_seconds: Optional[float],
        clinical_context: Optional[ClinicalContext]
    ) -> ResolutionResult:
        request = ResolutionRequest(
            conversation_id=conversation_id,
            query=self.store.build_complete_query(conversation_id),
            history=self.store.get_history(conversation_id),
            prior_context=prior_context,
            clinical_context=clinical_context,
            deadline_seconds=deadline_seconds,
        )

        outcome = await self._run_strategies(request)
        candidates = self._enrich(outcome, request)

        question = outcome.clarifying_question
        conversation_abandoned = False
        if outcome.needs_clarification:
            if not self.store.request_clarification(conversation_id, question):
                conversation_abandoned = True
                question = TEMPLATE_TEXT[ClarificationTemplateID.CLARIFY_TOO_MANY_ROUNDS]
        else:
            self.store.mark_resolved(conversation_id, candidates)

        return ResolutionResult(
            success=outcome.success,
            suggestions=candidates,
            needs_clarification=outcome.needs_clarification,
            conversation_id=conversation_id,
            clarifying_question=question if outcome.needs_clarification else None,
            error=outcome.error,
            debug={
                "resolution_path": outcome.path,
                "generative_attempts": request.attempts,
                "generative_rejections": request.rejections,
                "errors": list(request.errors),
                "warnings": list(request.warnings),
                "conversation_abandoned": conversation_abandoned,
            },
        )

    async def _run_strategies(self, request: ResolutionRequest) -> StrategyResult:
        for strategy in self.strategies:
            try:
                result = await strategy.attempt(request)
            except Exception as e:
                classified = self.classifier.classify(e)
                self.classifier.log_error(classified, {
                    "conversation_id": request.conversation_id,
                    "strategy": strategy.name,
                })
                request.errors.append(classified)
                continue
            if result is not None:
                return result
        # GenericClarificationStrategy always answers; reaching here means it raised
        raise RuntimeError("All resolution strategies failed")

    def _enrich(self, outcome: StrategyResult, request: ResolutionRequest) -> Tuple[CandidateCode, ...]:
        """
        Replace rationales with generated ones and apply the validation boost.

        Candidates whose code is not in the code table are dropped. Rationale
        contexts start from the top candidate's confidence and decay by rank.
        """
        ranked = []
        for candidate in outcome.candidates[:self.config.max_suggestions]:
            entry = self.code_table.lookup(candidate.code)
            if entry is None:
                logger.warning(f"Dropping unknown code {candidate.code!r} before returning")
                continue
            ranked.append((candidate, entry))
        if not ranked:
            return ()

        rationales = self.rationale_generator.generate_for_codes(
            [entry for _, entry in ranked],
            RationaleContext(
                query=request.query,
                confidence=ranked[0][0].confidence,
                pattern_analysis=outcome.signals or extract_signals(request.query),
                clinical_context=request.clinical_context,
            ),
        )

        enriched = []
        for candidate, entry in ranked:
            rationale = rationales[entry.code]
            quality = self.rationale_generator.validate_rationale(rationale)
            if quality.score >= MIN_RATIONALE_QUALITY:
                text = rationale.short_rationale
            else:
                logger.debug(f"Keeping original rationale for {entry.code}: {quality.issues}")
                text = candidate.rationale

            confidence = candidate.confidence
            if outcome.validated:
                confidence = min(confidence * self.config.validation_boost_multiplier, 1.0)

            enriched.append(replace(candidate, rationale=text, confidence=confidence))

        return tuple(enriched)

    # ------------------------------------------------------------------
    # Failure results
    # ------------------------------------------------------------------

    def _validation_result(self, error: QueryValidationError, conversation_id: Optional[str]) -> ResolutionResult:
        classified = self.classifier.classify(error)
        self.classifier.log_error(classified, {"conversation_id": conversation_id})
        return ResolutionResult(
            success=False,
            suggestions=(),
            needs_clarification=False,
            conversation_id=conversation_id or "",
            error=classified,
            debug={"resolution_path": PATH_VALIDATION},
        )

    def _error_result(self, error: Exception, conversation_id: Optional[str]) -> ResolutionResult:
        classified = self.classifier.classify(error)
        self.classifier.log_error(classified, {"conversation_id": conversation_id})
        logger.exception("Resolution failed; returning clarification request")
        return ResolutionResult(
            success=False,
            suggestions=(),
            needs_clarification=True,
            conversation_id=conversation_id or "",
            clarifying_question=TEMPLATE_TEXT[ClarificationTemplateID.CLARIFY_AFTER_ERROR],
            error=classified,
            debug={"resolution_path": PATH_ERROR},
        )
