from __future__ import annotations

from typing import FrozenSet, Iterable, Optional

from .intent_corpus import FALLBACK_INTENT, IntentRecord

DEFAULT_GENERAL_INTENTS = frozenset({"greeting", "farewell", "thanks", FALLBACK_INTENT})


class ContextResolver:
    """Decides the next active context after an intent has been matched."""

    def __init__(self, general_intents: Iterable[str] = DEFAULT_GENERAL_INTENTS) -> None:
        self._general: FrozenSet[str] = frozenset(general_intents) | {FALLBACK_INTENT}

    def next_context(self, record: IntentRecord, current_context: Optional[str]) -> Optional[str]:
        """Purpose: Apply the context transition for a matched intent.
        Inputs/Outputs: Inputs are the matched record and the active context; returns
            the context to keep for the next turn (None means unscoped).
        Side Effects / State: None; the caller stores the result on the session.
        Dependencies: IntentRecord context fields and the configured general intents.
        Failure Modes: None.
        If Removed: Menus never open and follow-up intents are unreachable.
        Testing Notes: setContext wins; neutral and general intents clear; follow-ups keep.
        """
        # An explicit setContext always wins, even for intents listed as general.
        if record.set_context:
            return record.set_context
        if not record.context or record.intent in self._general:
            return None
        return current_context
