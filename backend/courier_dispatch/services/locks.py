"""Keyed mutual exclusion for per-order and per-partner critical sections."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Callable, Dict, Iterator, TypeVar

from courier_dispatch.core.errors import ConcurrencyConflict
from courier_dispatch.core.logging import logger


T = TypeVar("T")


def retry_conflict_once(operation: Callable[[], T], *, action: str, key: str) -> T:
    """Run ``operation``; on a concurrency conflict run it exactly one more time."""
    try:
        return operation()
    except ConcurrencyConflict as exc:
        logger.warning("Concurrency conflict, retrying once", action=action, key=key, error=str(exc))
        return operation()


class KeyedLockRegistry:
    """Hands out one re-entrant lock per key; acquisition never blocks forever."""

    def __init__(self, name: str, timeout_seconds: float) -> None:
        self.name = name
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, RLock] = {}
        self._guard = Lock()

    def _get(self, key: str) -> RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._get(key)
        if not lock.acquire(timeout=self.timeout_seconds):
            raise ConcurrencyConflict(
                f"Timed out waiting for {self.name} lock on '{key}'",
                scope=self.name,
                key=key,
            )
        try:
            yield
        finally:
            lock.release()
