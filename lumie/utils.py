from __future__ import annotations

import zlib
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import Any, Iterator, List


def normalize_text(text: Any) -> str:
    """Purpose: Normalize free-form text for stable utterance matching.
    Inputs/Outputs: Input is a raw value; output is a trimmed, lowercase string.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by corpus building and the engine.
    Failure Modes: Returns an empty string for None or non-string input.
    If Removed: Exact lookups miss on case or surrounding whitespace.
    Testing Notes: "  Hello " and "hello" must normalize to the same key.
    """
    # Only trim and lowercase; inner whitespace and punctuation are significant.
    if not isinstance(text, str):
        return ""
    return text.strip().lower()


def format_retry_time(timestamp: float) -> str:
    """Render an epoch timestamp as local HH:MM for user-facing throttle replies."""
    return datetime.fromtimestamp(timestamp).strftime("%H:%M")


def iso_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).astimezone().isoformat(timespec="seconds")


def unique_in_order(values: List[str]) -> List[str]:
    seen = set()
    result: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


class KeyedLock:
    """Striped lock table serializing work per key without unbounded growth."""

    def __init__(self, stripes: int = 64) -> None:
        """Purpose: Allocate a fixed number of lock stripes.
        Inputs/Outputs: Input is the stripe count; no return value.
        Side Effects / State: Creates the lock list once; keys never allocate locks.
        Dependencies: threading.Lock.
        Failure Modes: ValueError for a non-positive stripe count.
        If Removed: Concurrent requests from one user race on session and rate state.
        Testing Notes: The same key must always map to the same stripe.
        """
        # Fixed stripes keep memory bounded; unrelated keys may share a stripe.
        if stripes <= 0:
            raise ValueError("stripes must be positive")
        self._locks = [Lock() for _ in range(stripes)]

    def stripe_for(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._locks[self.stripe_for(key)]:
            yield
