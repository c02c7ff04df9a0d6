# services/locks.py - Per-instrument mutual exclusion for archive-then-insert

import threading
from contextlib import contextmanager

from domain.models import canonical_key


class InstrumentLockRegistry:
    """
    One lock per canonical instrument key. Two creation requests for the
    same instrument run one after the other; different instruments do not
    block each other.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, instrument_key: str) -> threading.RLock:
        key = canonical_key(instrument_key)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, instrument_key: str):
        lock = self.lock_for(instrument_key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide registry used by calibration_service
instrument_locks = InstrumentLockRegistry()
