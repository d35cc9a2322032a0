from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

logger = logging.getLogger("lumie.ratelimit")


@dataclass
class RateLimitRecord:
    user_id: str
    count: int
    window_start: float


@dataclass(frozen=True)
class Admission:
    """Outcome of a rate limit check; retry_at is set only when denied."""
    allowed: bool
    retry_at: Optional[float] = None


class RateLimiter:
    """Fixed-window request counter keyed by user id."""

    def __init__(
        self,
        max_requests: int,
        window_sec: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_sec <= 0:
            raise ValueError("window_sec must be positive")
        self.max_requests = max_requests
        self.window_sec = window_sec
        self._clock = clock
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = Lock()

    def admit(self, user_id: str) -> Admission:
        """Purpose: Count a request against the caller's window and decide admission.
        Inputs/Outputs: Input is the user id; returns an Admission.
        Side Effects / State: Creates, resets, or increments the caller's record.
        Dependencies: Injected clock; internal lock makes the read-modify-write atomic.
        Failure Modes: None; denial is an outcome, not an error.
        If Removed: A single caller can flood the engine.
        Testing Notes: max_requests + 1 calls inside one window deny only the last one.
        """
        now = self._clock()
        with self._lock:
            record = self._records.get(user_id)
            if record is None or now - record.window_start > self.window_sec:
                self._records[user_id] = RateLimitRecord(user_id=user_id, count=1, window_start=now)
                return Admission(allowed=True)
            if record.count >= self.max_requests:
                retry_at = record.window_start + self.window_sec
                logger.info("user=%s rate_limited count=%s retry_at=%.0f", user_id, record.count, retry_at)
                return Admission(allowed=False, retry_at=retry_at)
            record.count += 1
            return Admission(allowed=True)

    def sweep(self) -> int:
        """Drop records whose window has closed; returns the number evicted."""
        now = self._clock()
        with self._lock:
            expired = [
                user_id
                for user_id, record in self._records.items()
                if now - record.window_start > self.window_sec
            ]
            for user_id in expired:
                self._records.pop(user_id, None)
        return len(expired)

    def shutdown(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
