"""
Conversation Store - Per-conversation turn history and status

Responsibilities:
- Create conversations and hand out opaque ids
- Append turns and drive the conversation state machine
- Build the complete resolvable query from patient turns
- Cap clarification rounds per conversation
- Expire idle conversations, report stats, export conversations

Design principles:
- Explicit component, created once per process and injected (no module singleton)
- Serialized per conversation: one lock per entry, a short registry lock for the map
- At most one resolution run per conversation (begin_run / end_run claim)
- Unrelated conversations never wait on each other's entry locks
- Callers receive immutable snapshots, never the live entry
- Injected clock so expiry is testable

State machine:
    NEW -> ACTIVE                       first query submitted
    ACTIVE -> AWAITING_CLARIFICATION    clarifying question asked
    AWAITING_CLARIFICATION -> ACTIVE    answer submitted
    ACTIVE -> RESOLVED                  candidates accepted (terminal)
    any non-terminal -> ABANDONED       explicit abandon or expiry (terminal)

NEW -> RESOLVED is impossible: mark_resolved() requires ACTIVE, and ACTIVE
is only reachable by recording a query turn.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from diagnosis_resolver.contracts import CandidateCode, Turn, TurnRole, TurnType
from diagnosis_resolver.exceptions import (
    ConversationBusyError,
    InvalidTransitionError,
    UnknownConversationError,
)
from diagnosis_resolver.utils.helpers import generate_conversation_id, utc_now

logger = logging.getLogger(__name__)


class ConversationStatus(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


ALLOWED_TRANSITIONS: Dict[ConversationStatus, frozenset] = {
    ConversationStatus.NEW: frozenset({ConversationStatus.ACTIVE, ConversationStatus.ABANDONED}),
    ConversationStatus.ACTIVE: frozenset({
        ConversationStatus.AWAITING_CLARIFICATION,
        ConversationStatus.RESOLVED,
        ConversationStatus.ABANDONED,
    }),
    ConversationStatus.AWAITING_CLARIFICATION: frozenset({
        ConversationStatus.ACTIVE,
        ConversationStatus.ABANDONED,
    }),
    ConversationStatus.RESOLVED: frozenset(),
    ConversationStatus.ABANDONED: frozenset(),
}

TERMINAL_STATUSES = frozenset({ConversationStatus.RESOLVED, ConversationStatus.ABANDONED})

MAX_CLARIFICATION_ROUNDS = 2
CONVERSATION_TTL_SECONDS = 30 * 60
RESOLVED_CONVERSATION_TTL_SECONDS = 10 * 60

TOO_MANY_ROUNDS_MESSAGE = "Te veel verduidelijkingsvragen. Probeer een meer gedetailleerde beschrijving."

# Patient turns that carry complaint text
QUERY_TURN_TYPES = (TurnType.QUERY, TurnType.CLARIFICATION_ANSWER)

LOCATION_KEYWORDS = (
    "knie", "rug", "nek", "schouder", "heup", "elleboog", "pols", "voet", "enkel",
    "hoofd", "kaak", "thorax", "buik", "wervelkolom", "cervicaal", "lumbaal",
    "bovenarm", "onderarm", "dijbeen", "onderbeen", "hand", "vingers",
)
PATHOLOGY_KEYWORDS = (
    "pijn", "zwelling", "stijf", "beweging", "ontsteking", "tendinitis", "artrose",
    "breuk", "fractuur", "trauma", "contusie", "distorsie", "zenuw", "radiculair",
    "bursitis", "spasm", "contractuur", "hnp", "hernia",
)
TIMING_KEYWORDS = (
    "ochtend", "avond", "nacht", "bewegen", "rust", "belasting", "zitten", "staan",
    "lopen", "dagen", "weken", "maanden", "acute", "chronisch",
)
MECHANISM_KEYWORDS = (
    "trauma", "val", "ongeval", "overbelasting", "plotseling", "geleidelijk",
    "sport", "werk", "auto", "fiets", "trap", "tillen", "draaien",
)


@dataclass
class _ConversationEntry:
    """Live, mutable conversation record (only touched under its own lock)."""
    conversation_id: str
    created_at: datetime
    last_activity: datetime
    status: ConversationStatus = ConversationStatus.NEW
    turns: List[Turn] = field(default_factory=list)
    clarification_rounds: int = 0
    final_candidates: Tuple[CandidateCode, ...] = ()
    abandon_reason: Optional[str] = None
    run_in_progress: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


@dataclass(frozen=True)
class ConversationSnapshot:
    """Immutable view of one conversation at a point in time."""
    conversation_id: str
    status: ConversationStatus
    turns: Tuple[Turn, ...]
    created_at: datetime
    last_activity: datetime
    clarification_rounds: int
    final_candidates: Tuple[CandidateCode, ...]
    abandon_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ConversationStore:
    """
    Thread-safe store of conversations keyed by opaque id.

    Example:
        >>> store = ConversationStore()
        >>> cid = store.start("kniepijn")
        >>> store.get_status(cid)
        <ConversationStatus.ACTIVE: 'active'>
    """

    def __init__(
        self,
        max_clarification_rounds: int = MAX_CLARIFICATION_ROUNDS,
        ttl_seconds: float = CONVERSATION_TTL_SECONDS,
        resolved_ttl_seconds: float = RESOLVED_CONVERSATION_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            max_clarification_rounds: Clarifying questions allowed per conversation
            ttl_seconds: Idle time before an open conversation expires
            resolved_ttl_seconds: Idle time before a resolved conversation expires
            clock: Returns the current (timezone-aware) time
        """
        self.max_clarification_rounds = max_clarification_rounds
        self.ttl_seconds = ttl_seconds
        self.resolved_ttl_seconds = resolved_ttl_seconds
        self._clock = clock or utc_now
        self._conversations: Dict[str, _ConversationEntry] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_entry(self, conversation_id: str) -> _ConversationEntry:
        with self._registry_lock:
            entry = self._conversations.get(conversation_id)
        if entry is None:
            raise UnknownConversationError(f"Conversation {conversation_id} does not exist")
        return entry

    def _transition(self, entry: _ConversationEntry, target: ConversationStatus) -> None:
        """Change status; caller holds entry.lock."""
        if target == entry.status:
            return
        if target not in ALLOWED_TRANSITIONS[entry.status]:
            raise InvalidTransitionError(
                f"Conversation {entry.conversation_id}: cannot go from "
                f"{entry.status.value} to {target.value}"
            )
        logger.debug(f"Conversation {entry.conversation_id}: {entry.status.value} -> {target.value}")
        entry.status = target

    def _make_turn(self, role: TurnRole, content: str, turn_type: TurnType) -> Turn:
        return Turn(role=role, content=content, turn_type=turn_type, timestamp=self._clock())

    @staticmethod
    def _snapshot(entry: _ConversationEntry) -> ConversationSnapshot:
        return ConversationSnapshot(
            conversation_id=entry.conversation_id,
            status=entry.status,
            turns=tuple(entry.turns),
            created_at=entry.created_at,
            last_activity=entry.last_activity,
            clarification_rounds=entry.clarification_rounds,
            final_candidates=entry.final_candidates,
            abandon_reason=entry.abandon_reason,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self) -> str:
        """Register an empty conversation in NEW status."""
        now = self._clock()
        entry = _ConversationEntry(
            conversation_id=generate_conversation_id(),
            created_at=now,
            last_activity=now,
        )
        with self._registry_lock:
            self._conversations[entry.conversation_id] = entry
        return entry.conversation_id

    def start(self, initial_query: str) -> str:
        """
        Create a conversation and record its first query (NEW -> ACTIVE).

        Returns:
            str: New conversation id
        """
        conversation_id = self.create()
        self.append_turn(
            conversation_id,
            self._make_turn(TurnRole.PATIENT, initial_query, TurnType.QUERY),
        )
        logger.info(f"Conversation {conversation_id} started")
        return conversation_id

    def append_turn(self, conversation_id: str, turn: Turn) -> None:
        """
        Append a turn and apply the status change it implies.

        query                   NEW/ACTIVE -> ACTIVE (AWAITING -> ACTIVE: treated as answer)
        clarification_question  ACTIVE -> AWAITING_CLARIFICATION (counts a round)
        clarification_answer    AWAITING_CLARIFICATION -> ACTIVE
        resolution              not allowed here, use mark_resolved()

        Raises:
            UnknownConversationError: If conversation_id is not stored
            InvalidTransitionError: If the turn is not allowed in the current status
        """
        entry = self._get_entry(conversation_id)
        with entry.lock:
            if entry.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    f"Conversation {conversation_id} is {entry.status.value}; no further turns allowed"
                )

            if turn.turn_type == TurnType.RESOLUTION:
                raise InvalidTransitionError("Resolution turns are recorded by mark_resolved()")

            if turn.turn_type == TurnType.CLARIFICATION_QUESTION:
                self._transition(entry, ConversationStatus.AWAITING_CLARIFICATION)
                entry.clarification_rounds += 1
            elif turn.turn_type == TurnType.CLARIFICATION_ANSWER:
                if entry.status != ConversationStatus.AWAITING_CLARIFICATION:
                    raise InvalidTransitionError(
                        f"Conversation {conversation_id} is not awaiting clarification "
                        f"(status={entry.status.value})"
                    )
                self._transition(entry, ConversationStatus.ACTIVE)
            else:
                self._transition(entry, ConversationStatus.ACTIVE)

            entry.turns.append(turn)
            entry.last_activity = self._clock()

    def add_turn(self, conversation_id: str, role: TurnRole, turn_type: TurnType, content: str) -> None:
        """Convenience wrapper: build a timestamped Turn and append it."""
        self.append_turn(conversation_id, self._make_turn(role, content, turn_type))

    def begin_run(
        self,
        conversation_id: str,
        turn_type: Optional[TurnType] = None,
        content: Optional[str] = None
    ) -> None:
        """
        Claim the conversation for one resolution run.

        When turn_type is given, the patient turn that starts the run is
        recorded under the same lock, so two concurrent runs can never both
        append to one conversation.

        Raises:
            UnknownConversationError: If conversation_id is not stored
            ConversationBusyError: If another run holds the conversation
            InvalidTransitionError: If the turn is not allowed in the current status
        """
        entry = self._get_entry(conversation_id)
        with entry.lock:
            if entry.run_in_progress:
                raise ConversationBusyError(f"Conversation {conversation_id} is already being resolved")
            if turn_type is not None:
                self.add_turn(conversation_id, TurnRole.PATIENT, turn_type, content)
            entry.run_in_progress = True

    def end_run(self, conversation_id: str) -> None:
        """Release the run claim (no-op if the conversation was evicted)."""
        with self._registry_lock:
            entry = self._conversations.get(conversation_id)
        if entry is None:
            return
        with entry.lock:
            entry.run_in_progress = False

    def request_clarification(self, conversation_id: str, question: str) -> bool:
        """
        Record a clarifying question unless the round cap is reached.

        Returns:
            bool: True if the question was recorded. False if the cap was
                reached; the conversation is then ABANDONED with an
                explanatory system turn.
        """
        entry = self._get_entry(conversation_id)
        with entry.lock:
            if entry.clarification_rounds >= self.max_clarification_rounds:
                logger.info(
                    f"Conversation {conversation_id} exceeded {self.max_clarification_rounds} "
                    f"clarification rounds"
                )
                self._abandon_locked(entry, TOO_MANY_ROUNDS_MESSAGE)
                return False

            self.append_turn(
                conversation_id,
                self._make_turn(TurnRole.SYSTEM, question, TurnType.CLARIFICATION_QUESTION),
            )
            return True

    def mark_resolved(self, conversation_id: str, candidates: Sequence[CandidateCode]) -> None:
        """
        Record the final candidate set and close the conversation (ACTIVE -> RESOLVED).

        Raises:
            UnknownConversationError: If conversation_id is not stored
            InvalidTransitionError: If the conversation is not ACTIVE
        """
        entry = self._get_entry(conversation_id)
        with entry.lock:
            if entry.status != ConversationStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Conversation {conversation_id} cannot be resolved from {entry.status.value}"
                )
            codes = ", ".join(c.code for c in candidates)
            entry.turns.append(self._make_turn(
                TurnRole.SYSTEM,
                f"{len(candidates)} DCSPH code suggesties gegenereerd." + (f" ({codes})" if codes else ""),
                TurnType.RESOLUTION,
            ))
            self._transition(entry, ConversationStatus.RESOLVED)
            entry.final_candidates = tuple(candidates)
            entry.last_activity = self._clock()
        logger.info(f"Conversation {conversation_id} resolved with {len(candidates)} candidates")

    def abandon(self, conversation_id: str, reason: Optional[str] = None) -> None:
        """Close a conversation without resolution (no-op if already terminal)."""
        entry = self._get_entry(conversation_id)
        with entry.lock:
            if entry.status in TERMINAL_STATUSES:
                return
            self._abandon_locked(entry, reason)

    def _abandon_locked(self, entry: _ConversationEntry, reason: Optional[str]) -> None:
        if reason:
            entry.turns.append(self._make_turn(TurnRole.SYSTEM, reason, TurnType.ABANDONMENT))
        self._transition(entry, ConversationStatus.ABANDONED)
        entry.abandon_reason = reason
        entry.last_activity = self._clock()
        logger.info(f"Conversation {entry.conversation_id} abandoned: {reason or 'no reason given'}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists(self, conversation_id: str) -> bool:
        with self._registry_lock:
            return conversation_id in self._conversations

    def get(self, conversation_id: str) -> ConversationSnapshot:
        entry = self._get_entry(conversation_id)
        with entry.lock:
            return self._snapshot(entry)

    def get_status(self, conversation_id: str) -> ConversationStatus:
        return self.get(conversation_id).status

    def get_history(self, conversation_id: str) -> List[Turn]:
        """Ordered turns of a conversation."""
        return list(self.get(conversation_id).turns)

    def build_complete_query(self, conversation_id: str) -> str:
        """Join all patient query and clarification-answer turns into one text."""
        turns = self.get(conversation_id).turns
        return " ".join(
            t.content.strip()
            for t in turns
            if t.role == TurnRole.PATIENT and t.turn_type in QUERY_TURN_TYPES and t.content.strip()
        )

    def is_expired(self, conversation_id: str) -> bool:
        """True if the conversation has been idle longer than its TTL."""
        snapshot = self.get(conversation_id)
        return self._is_expired(snapshot.status, snapshot.last_activity, self._clock())

    def _is_expired(self, status: ConversationStatus, last_activity: datetime, now: datetime) -> bool:
        idle = (now - last_activity).total_seconds()
        if status == ConversationStatus.RESOLVED:
            return idle > self.resolved_ttl_seconds
        return idle > self.ttl_seconds

    def analyze_missing_information(self, conversation_id: str) -> Dict[str, Any]:
        """
        What the conversation still lacks, and what was already asked.

        Returns:
            dict: {
                'missing_info': ['location' | 'pathology' | 'timing' | 'mechanism', ...],
                'asked_questions': [question, ...],
                'answers': {question: answer, ...}
            }
        """
        snapshot = self.get(conversation_id)
        text = self.build_complete_query(conversation_id).lower()

        missing = []
        if not any(k in text for k in LOCATION_KEYWORDS):
            missing.append("location")
        if not any(k in text for k in PATHOLOGY_KEYWORDS):
            missing.append("pathology")
        if not any(k in text for k in TIMING_KEYWORDS):
            missing.append("timing")
        if not any(k in text for k in MECHANISM_KEYWORDS):
            missing.append("mechanism")

        asked = []
        answers: Dict[str, str] = {}
        pending_question = None
        for turn in snapshot.turns:
            if turn.role == TurnRole.SYSTEM and turn.turn_type == TurnType.CLARIFICATION_QUESTION:
                asked.append(turn.content)
                pending_question = turn.content
            elif turn.role == TurnRole.PATIENT and turn.turn_type in QUERY_TURN_TYPES and pending_question:
                answers[pending_question] = turn.content
                pending_question = None

        return {"missing_info": missing, "asked_questions": asked, "answers": answers}

    # ------------------------------------------------------------------
    # Maintenance and monitoring
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """
        Evict conversations idle longer than their TTL.

        Open conversations are marked ABANDONED before removal.

        Returns:
            int: Number of evicted conversations
        """
        now = self._clock()
        with self._registry_lock:
            entries = list(self._conversations.values())

        expired = []
        for entry in entries:
            with entry.lock:
                if entry.run_in_progress:
                    continue
                if not self._is_expired(entry.status, entry.last_activity, now):
                    continue
                if entry.status not in TERMINAL_STATUSES:
                    self._transition(entry, ConversationStatus.ABANDONED)
                    entry.abandon_reason = "expired"
                expired.append(entry.conversation_id)

        with self._registry_lock:
            for conversation_id in expired:
                self._conversations.pop(conversation_id, None)

        if expired:
            logger.info(f"Evicted {len(expired)} expired conversations")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        """Counts per status and averages over stored conversations."""
        with self._registry_lock:
            entries = list(self._conversations.values())

        snapshots = []
        for entry in entries:
            with entry.lock:
                snapshots.append(self._snapshot(entry))

        total = len(snapshots)
        by_status = {status.value: 0 for status in ConversationStatus}
        for snapshot in snapshots:
            by_status[snapshot.status.value] += 1

        return {
            "total_conversations": total,
            "by_status": by_status,
            "average_turns": sum(len(s.turns) for s in snapshots) / total if total else 0.0,
            "average_clarifications": (
                sum(s.clarification_rounds for s in snapshots) / total if total else 0.0
            ),
        }

    def export_conversation(self, conversation_id: str) -> Dict[str, Any]:
        """
        Serializable view of one conversation.

        Raises:
            UnknownConversationError: If conversation_id is not stored
        """
        snapshot = self.get(conversation_id)
        patient_queries = [
            t.content for t in snapshot.turns
            if t.role == TurnRole.PATIENT and t.turn_type == TurnType.QUERY
        ]
        return {
            "id": snapshot.conversation_id,
            "original_query": patient_queries[0] if patient_queries else None,
            "status": snapshot.status.value,
            "created_at": snapshot.created_at.isoformat(),
            "last_activity": snapshot.last_activity.isoformat(),
            "duration_seconds": (snapshot.last_activity - snapshot.created_at).total_seconds(),
            "turn_count": len(snapshot.turns),
            "clarification_rounds": snapshot.clarification_rounds,
            "turns": [t.to_dict() for t in snapshot.turns],
            "final_suggestions": [c.to_dict() for c in snapshot.final_candidates],
        }
