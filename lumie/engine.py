"""Lumie chat engine: per-message orchestration of the intent-resolution stages.

Role:
    Owns the ChatTurn contract and sequences rate limiting, session loading, intent
    matching, context transitions, and answer selection through a StepRunner. Every
    defined path ends in a ChatOutcome; nothing raises past handle_message.

Turn data contract (fields passed across steps):
    - user_id, message, text: caller identity, raw message, and its stripped text.
    - session: the caller's Session, loaded after the rate check.
    - match: the MatchResult from IntentCorpus.resolve (exact, fuzzy, or fallback).
    - outcome: the final ChatOutcome, set by a terminal step.

Step contracts:
    validate:       rejects non-string or blank messages without touching any state.
    rate_check:     admits or denies the caller; denial is terminal.
    session_load:   loads or creates the session (lazy TTL expiry happens here).
    intent_match:   IntentCorpus.resolve: exact, then fuzzy, then context gating, then
                    the None intent (or an echo when the corpus has none).
    context_update: applies ContextResolver when a record was resolved.
    answer_pick:    non-repeating answer selection.
    respond:        refreshes the session, writes the intent audit line, builds the outcome.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .answer_selector import AnswerSelector
from .context_resolver import ContextResolver
from .errors import InvalidInputError, LumieError
from .intent_corpus import IntentCorpus, MatchResult
from .pipeline import Step, StepRunner
from .rate_limiter import RateLimiter
from .session_store import Session, SessionStore
from .utils import KeyedLock, format_retry_time

logger = logging.getLogger("lumie.engine")
intent_logger = logging.getLogger("lumie.intents")

NO_CONTEXT = "none"
RATE_LIMIT_CONTEXT = "rate-limit"
INVALID_INPUT_CONTEXT = "invalid-input"
ECHO_INTENT = "Echo"
INVALID_INTENT = "Invalid"
RATE_LIMIT_REPLY = "You're sending messages too fast. Please wait (until {retry_time})."


class OutcomeStatus(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"


@dataclass(frozen=True)
class ChatOutcome:
    """Well-formed result for every message, including denials and bad input."""
    status: OutcomeStatus
    reply: str
    context: str
    intent: str
    confidence: float = 0.0
    retry_at: Optional[float] = None


@dataclass
class ChatTurn:
    """Mutable state for one message as it moves through the steps."""
    user_id: str
    message: Any
    text: str = ""
    session: Optional[Session] = None
    match: Optional[MatchResult] = None
    reply: Optional[str] = None
    outcome: Optional[ChatOutcome] = None
    finished: bool = False
    trace: List[str] = field(default_factory=list)

    def finish(self, outcome: ChatOutcome) -> None:
        self.outcome = outcome
        self.finished = True


class ChatEngine:
    def __init__(
        self,
        corpus: IntentCorpus,
        rate_limiter: RateLimiter,
        sessions: SessionStore,
        selector: AnswerSelector,
        context_resolver: Optional[ContextResolver] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Purpose: Wire the engine collaborators and register the step sequence.
        Inputs/Outputs: Inputs are the corpus, stores, selector, resolver, and lock table;
            no return value.
        Side Effects / State: Constructs a StepRunner with the ordered steps.
        Dependencies: StepRunner/Step and the step methods on this class.
        Failure Modes: None at init.
        If Removed: The chat endpoint has nothing to run.
        Testing Notes: Build with a tiny corpus, a fake clock, and a seeded selector.
        """
        # Store collaborators and build the step runner in state-machine order.
        self.corpus = corpus
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.selector = selector
        self.context_resolver = context_resolver or ContextResolver()
        self._locks = locks or KeyedLock()
        self._clock = clock
        self._runner: StepRunner[ChatTurn] = StepRunner(
            steps=[
                Step("validate", self._step_validate),
                Step("rate_check", self._step_rate_check),
                Step("session_load", self._step_session_load),
                Step("intent_match", self._step_intent_match),
                Step("context_update", self._step_context_update, skip_if=lambda turn: turn.match.record is None),
                Step("answer_pick", self._step_answer_pick),
                Step("respond", self._step_respond),
            ]
        )

    def handle_message(self, message: Any, user_id: str) -> ChatOutcome:
        """Purpose: Run the full pipeline for one message and return its outcome.
        Inputs/Outputs: Inputs are the raw message value and caller id; output is a ChatOutcome.
        Side Effects / State: May update the rate limit record and session for user_id.
        Dependencies: KeyedLock serializes turns per user; StepRunner runs the steps.
        Failure Modes: Validation and throttling become outcomes; unexpected errors from
            collaborators propagate to the transport layer.
        If Removed: Chat handler cannot execute any matching logic.
        Testing Notes: Send "hi" to a greeting corpus and check intent/confidence/context.
        """
        # Serialize per user so rate counts and session state never interleave.
        turn = ChatTurn(user_id=user_id, message=message)
        with self._locks.hold(user_id):
            turn.trace = self._runner.run(turn)
        logger.debug("user=%s steps=%s", user_id, ",".join(turn.trace))
        if turn.outcome is None:
            raise LumieError(f"turn for user={user_id} ended without an outcome after steps={turn.trace}")
        return turn.outcome

    def _step_validate(self, turn: ChatTurn) -> None:
        try:
            turn.text = self._validated_text(turn.message)
        except InvalidInputError as exc:
            logger.info("user=%s invalid input: %s", turn.user_id, exc.message)
            turn.finish(
                ChatOutcome(
                    status=OutcomeStatus.INVALID,
                    reply=exc.message,
                    context=INVALID_INPUT_CONTEXT,
                    intent=INVALID_INTENT,
                )
            )

    @staticmethod
    def _validated_text(message: Any) -> str:
        if message is None:
            raise InvalidInputError("Message is required.")
        if not isinstance(message, str):
            raise InvalidInputError("Message must be a string.")
        text = message.strip()
        if not text:
            raise InvalidInputError("Message must not be empty.")
        return text

    def _step_rate_check(self, turn: ChatTurn) -> None:
        admission = self.rate_limiter.admit(turn.user_id)
        if admission.allowed:
            return
        retry_at = admission.retry_at or self._clock()
        turn.finish(
            ChatOutcome(
                status=OutcomeStatus.RATE_LIMITED,
                reply=RATE_LIMIT_REPLY.format(retry_time=format_retry_time(retry_at)),
                context=RATE_LIMIT_CONTEXT,
                intent="",
                retry_at=retry_at,
            )
        )

    def _step_session_load(self, turn: ChatTurn) -> None:
        turn.session = self.sessions.get_or_create(turn.user_id)

    def _step_intent_match(self, turn: ChatTurn) -> None:
        turn.match = self.corpus.resolve(turn.text, turn.session.current_context)

    def _step_context_update(self, turn: ChatTurn) -> None:
        session = turn.session
        previous = session.current_context
        session.current_context = self.context_resolver.next_context(turn.match.record, previous)
        if session.current_context != previous:
            logger.debug(
                "user=%s context %s -> %s",
                turn.user_id,
                previous or NO_CONTEXT,
                session.current_context or NO_CONTEXT,
            )

    def _step_answer_pick(self, turn: ChatTurn) -> None:
        record = turn.match.record
        if record is None:
            turn.reply = f'You said: "{turn.text}"'
            return
        turn.reply = self.selector.pick(turn.session, record.answers)

    def _step_respond(self, turn: ChatTurn) -> None:
        self.sessions.touch(turn.session)
        match = turn.match
        intent = match.record.intent if match.record is not None else ECHO_INTENT
        logger.info(
            "user=%s intent=%s kind=%s confidence=%.3f context=%s",
            turn.user_id,
            intent,
            match.kind.value,
            match.confidence,
            turn.session.current_context or NO_CONTEXT,
        )
        intent_logger.info(
            "%s | %s | Intent: %s | Message: %s",
            datetime.now().astimezone().isoformat(timespec="seconds"),
            json.dumps(turn.user_id, ensure_ascii=False)[1:-1],
            intent,
            json.dumps(turn.text, ensure_ascii=False),
        )
        turn.finish(
            ChatOutcome(
                status=OutcomeStatus.OK,
                reply=turn.reply,
                context=turn.session.current_context or NO_CONTEXT,
                intent=intent,
                confidence=match.confidence,
            )
        )

    def stats(self) -> Dict[str, int]:
        return {"intents": len(self.corpus), "sessions": len(self.sessions)}

    def shutdown(self) -> None:
        self.sessions.shutdown()
        self.rate_limiter.shutdown()
