from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol, Sequence

logger = logging.getLogger("lumie.sweeper")


class Sweepable(Protocol):
    def sweep(self) -> int:
        ...


class MaintenanceSweeper:
    """Daemon thread that periodically evicts idle entries from in-memory stores."""

    def __init__(self, stores: Sequence[Sweepable], interval_sec: float) -> None:
        self._stores = tuple(stores)
        self._interval = interval_sec
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._interval <= 0 or self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="lumie-sweeper", daemon=True)
        self._thread.start()
        logger.info("sweeper started interval=%ss", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def sweep_once(self) -> int:
        evicted = 0
        for store in self._stores:
            evicted += store.sweep()
        return evicted

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                evicted = self.sweep_once()
                if evicted:
                    logger.info("sweep evicted=%s", evicted)
            except Exception as exc:
                logger.exception("Sweep error: %s", exc)
