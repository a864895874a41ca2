from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class SyncInProgressError(RuntimeError):
    def __init__(self, connection_id: str) -> None:
        super().__init__(f"A sync is already running for connection {connection_id}")
        self.connection_id = connection_id


class ConnectionLocks:
    """Single-flight guard: at most one reconciliation per connection."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, connection_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(connection_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[connection_id] = lock
            return lock

    def is_locked(self, connection_id: str) -> bool:
        return self._lock_for(connection_id).locked()

    @contextmanager
    def hold(self, connection_id: str) -> Iterator[None]:
        lock = self._lock_for(connection_id)
        if not lock.acquire(blocking=False):
            raise SyncInProgressError(connection_id)
        try:
            yield
        finally:
            lock.release()
