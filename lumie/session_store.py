from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, List, Optional

logger = logging.getLogger("lumie.sessions")


@dataclass
class Session:
    """Per-user conversational state kept between messages."""
    user_id: str
    last_seen: float
    recent_answers: List[str] = field(default_factory=list)
    current_context: Optional[str] = None


class SessionStore:
    """In-memory session storage with lazy session and context expiry."""

    def __init__(
        self,
        session_ttl_sec: float,
        context_ttl_sec: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Purpose: Initialize the session store with its expiry policy.
        Inputs/Outputs: Inputs are the session TTL, the context TTL, and a clock; no return.
        Side Effects / State: Creates an empty session cache guarded by a lock.
        Dependencies: Injected clock (time.time in production).
        Failure Modes: ValueError when the context TTL is not shorter than the session TTL.
        If Removed: The engine forgets recent answers and active context between turns.
        Testing Notes: Drive the fake clock past each TTL and inspect returned sessions.
        """
        # Keep the policy and an empty cache; entries are created on first access.
        if context_ttl_sec >= session_ttl_sec:
            raise ValueError("context_ttl_sec must be smaller than session_ttl_sec")
        self._session_ttl = session_ttl_sec
        self._context_ttl = context_ttl_sec
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = Lock()

    def get_or_create(self, user_id: str) -> Session:
        """Purpose: Return the caller's live session, creating a fresh one when absent.
        Inputs/Outputs: Input is user_id; output is a Session (never None).
        Side Effects / State: Replaces sessions idle past the session TTL; clears
            current_context when idle past the context TTL; stamps last_seen.
        Dependencies: Uses the injected clock and the internal lock.
        Failure Modes: None; always succeeds.
        If Removed: Every message is handled as a first contact.
        Testing Notes: After context TTL only current_context resets; after session TTL
            recent_answers resets too.
        """
        # Expire lazily on access so a concurrent sweep never races an active request.
        now = self._clock()
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None and now - session.last_seen > self._session_ttl:
                logger.debug("user=%s session expired idle=%.0fs", user_id, now - session.last_seen)
                session = None
            if session is None:
                session = Session(user_id=user_id, last_seen=now)
                self._sessions[user_id] = session
                return session
            if session.current_context and now - session.last_seen > self._context_ttl:
                logger.debug("user=%s context=%s expired", user_id, session.current_context)
                session.current_context = None
            session.last_seen = now
            return session

    def touch(self, session: Session) -> None:
        """Purpose: Refresh last_seen after a turn and keep the session registered.
        Inputs/Outputs: Input is a Session returned by get_or_create; no return value.
        Side Effects / State: Updates last_seen; re-inserts the session if a sweep removed it.
        Dependencies: Uses the injected clock and the internal lock.
        Failure Modes: None.
        If Removed: Long turns could be swept mid-flight and silently lose their state.
        Testing Notes: Sweep between get_or_create and touch, then verify the session survives.
        """
        # A newer session for the same user wins over a stale reference.
        with self._lock:
            session.last_seen = self._clock()
            self._sessions.setdefault(session.user_id, session)

    def get(self, user_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(user_id)

    def sweep(self) -> int:
        """Purpose: Evict sessions idle beyond the session TTL.
        Inputs/Outputs: No inputs; returns the number of evicted sessions.
        Side Effects / State: Removes entries from the cache.
        Dependencies: Uses the injected clock and the internal lock.
        Failure Modes: None.
        If Removed: Memory grows with every user ever seen until lazy access evicts them.
        Testing Notes: Only sessions older than the TTL should disappear.
        """
        now = self._clock()
        with self._lock:
            expired = [
                user_id
                for user_id, session in self._sessions.items()
                if now - session.last_seen > self._session_ttl
            ]
            for user_id in expired:
                self._sessions.pop(user_id, None)
        if expired:
            logger.info("evicted %s idle sessions", len(expired))
        return len(expired)

    def shutdown(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
