from __future__ import annotations

import logging
import threading

from testhub.config import MAX_CONCURRENT_RUNS

LOGGER = logging.getLogger("testhub.admission")


class AdmissionGate:
    """Counting permit pool bounding how many runs execute at once.

    Waiting is cooperative: ``acquire`` polls the caller's cancel event so a
    queued run can be abandoned without ever holding a permit.
    """

    def __init__(self, permits: int = MAX_CONCURRENT_RUNS, poll_interval: float = 0.1) -> None:
        if permits <= 0:
            raise ValueError("Admission gate needs at least one permit.")
        self._permits = permits
        self._poll_interval = poll_interval
        self._semaphore = threading.Semaphore(permits)
        self._lock = threading.Lock()
        self._in_use = 0
        self._peak = 0

    @property
    def permits(self) -> int:
        return self._permits

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    @property
    def peak_in_use(self) -> int:
        with self._lock:
            return self._peak

    def acquire(self, cancel_event: threading.Event) -> bool:
        while not cancel_event.is_set():
            if self._semaphore.acquire(timeout=self._poll_interval):
                if cancel_event.is_set():
                    self._semaphore.release()
                    return False
                with self._lock:
                    self._in_use += 1
                    self._peak = max(self._peak, self._in_use)
                return True
        return False

    def release(self) -> None:
        with self._lock:
            if self._in_use <= 0:
                raise RuntimeError("AdmissionGate.release() called without a held permit")
            self._in_use -= 1
        self._semaphore.release()
