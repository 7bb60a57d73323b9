import threading
from contextlib import contextmanager
from typing import Iterator

from stockledger.core.errors import StockLockTimeout


class BatchLockRegistry:
    """
    In-process mutex per batch id.

    Serialises read-modify-write of a batch between request threads of one
    process, including on databases without SELECT ... FOR UPDATE. Across
    processes the row lock taken by ``batch_service.lock_batch`` does the same job.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}

    def _checkout(self, batch_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(batch_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[batch_id] = lock
            self._holders[batch_id] = self._holders.get(batch_id, 0) + 1
            return lock

    def _checkin(self, batch_id: str) -> None:
        with self._guard:
            remaining = self._holders.get(batch_id, 1) - 1
            if remaining <= 0:
                self._holders.pop(batch_id, None)
                self._locks.pop(batch_id, None)
            else:
                self._holders[batch_id] = remaining

    @contextmanager
    def hold(self, batch_id: str, *, timeout: float) -> Iterator[None]:
        lock = self._checkout(batch_id)
        try:
            if not lock.acquire(timeout=timeout):
                raise StockLockTimeout(batch_id, timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(batch_id)

    def active_batches(self) -> int:
        with self._guard:
            return len(self._locks)


batch_locks = BatchLockRegistry()
