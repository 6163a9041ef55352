"""
Exceptions raised at the seams of the resolution pipeline.

None of these cross the orchestrator boundary: resolve() and
resolve_clarification_answer() convert them into ResolutionResult values.
"""

from typing import Optional


class QueryValidationError(ValueError):
    """Query text failed length or content checks before processing."""

    def __init__(self, message: str, classified=None):
        super().__init__(message)
        # ClassifiedError built by ErrorClassifier (set by the orchestrator)
        self.classified = classified


class GenerativeServiceError(RuntimeError):
    """
    Generative resolution call failed or returned an unusable payload.

    Args:
        message: What went wrong
        status: HTTP-like status code when the transport reports one
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class GenerationCancelledError(GenerativeServiceError):
    """Caller-supplied deadline elapsed during a generative attempt."""


class KnowledgeBaseError(RuntimeError):
    """Code table could not be loaded or is inconsistent."""


class UnknownConversationError(ValueError):
    """Conversation id is not present in the store."""


class InvalidTransitionError(ValueError):
    """Requested conversation status change is not allowed from the current status."""


class ConversationBusyError(InvalidTransitionError):
    """Another resolution run already holds the conversation."""
