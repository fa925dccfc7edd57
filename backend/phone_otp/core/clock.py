"""
Injectable time sources.

Everything that reasons about expiry or rate windows takes its notion of "now"
from a Clock, so tests can move time deterministically.
"""
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Optional


class Clock(ABC):
    """Source of the current time as epoch seconds"""

    @abstractmethod
    def now(self) -> float:
        pass


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Thread-safe so concurrency tests can share one instance.
    """

    def __init__(self, start: Optional[float] = None):
        self._now = float(start if start is not None else 1_700_000_000.0)
        self._lock = Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: float):
        with self._lock:
            self._now = float(timestamp)
