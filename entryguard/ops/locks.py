# entryguard/ops/locks.py
from __future__ import annotations

import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Hashable, Iterator


class KeyedLocks:
    """
    In-process mutual exclusion per key (alert id, trade mode).
    Shared by the scheduler and the manual-cancel path.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks = defaultdict(threading.Lock)  # key -> Lock

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            return self._locks[key]

    @contextmanager
    def guard(self, key: Hashable, timeout_s: float = 0.0) -> Iterator[bool]:
        """
        Yields whether the lock was acquired. Callers that get False must
        skip the work (or rely on the store's version check).
        """
        lock = self._lock_for(key)
        if timeout_s > 0:
            acquired = lock.acquire(timeout=timeout_s)
        else:
            acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

    def is_held(self, key: Hashable) -> bool:
        return self._lock_for(key).locked()
