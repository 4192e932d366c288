"""Cooperative cancellation and per-key locking for long-running calls."""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class OperationCancelled(Exception):
    """Raised when a caller cancels an operation between work items.

    Never caught and reinterpreted as an ordinary failure.
    """


class CancellationToken:
    """Thread-safe cancel flag checked between candidates."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")


def raise_if_cancelled(token: CancellationToken | None) -> None:
    """Raise OperationCancelled when token is set; None means not cancellable."""
    if token is not None:
        token.raise_if_cancelled()


class KeyedLocks:
    """A lease per key: at most one holder per key at a time, in this process.

    Entries are reference counted and dropped once no thread holds or waits
    on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
