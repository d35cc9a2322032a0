from __future__ import annotations

import random
from typing import Optional, Sequence

from .session_store import Session
from .utils import unique_in_order


class AnswerSelector:
    """Random reply selection that avoids the session's recent answers."""

    def __init__(self, max_recent_answers: int, rng: Optional[random.Random] = None) -> None:
        if max_recent_answers <= 0:
            raise ValueError("max_recent_answers must be positive")
        self.max_recent_answers = max_recent_answers
        self._rng = rng or random.Random()

    def pick(self, session: Session, answers: Sequence[str]) -> str:
        """Purpose: Choose a reply while minimizing immediate repetition.
        Inputs/Outputs: Inputs are the session and the intent's answers; returns one answer.
        Side Effects / State: Appends the choice to session.recent_answers and trims it to
            the configured window, oldest first.
        Dependencies: Injected random.Random so sequences are reproducible in tests.
        Failure Modes: ValueError when answers is empty.
        If Removed: Users see the same canned line over and over.
        Testing Notes: With a seeded Random, consecutive picks from two answers alternate.
        """
        # Prefer answers outside the window; once exhausted, still avoid the previous pick.
        choices = unique_in_order(list(answers))
        if not choices:
            raise ValueError("cannot pick from an empty answer set")
        recent = session.recent_answers
        available = [answer for answer in choices if answer not in recent]
        if not available:
            available = [answer for answer in choices if not recent or answer != recent[-1]] or choices
        selected = self._rng.choice(available)
        recent.append(selected)
        del recent[: max(0, len(recent) - self.max_recent_answers)]
        return selected
