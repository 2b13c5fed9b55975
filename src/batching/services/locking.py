"""Keyed in-process locks serialising work on the same driver, order or batch."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterable, Iterator


def driver_key(driver_id: str) -> str:
    return f"driver:{driver_id}"


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def batch_key(batch_id: str) -> str:
    return f"batch:{batch_id}"


class KeyedLocks:
    """Re-entrant locks created on demand and dropped once nobody holds them.

    Keys are always acquired in sorted order so two callers asking for
    overlapping key sets cannot deadlock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        held: list[tuple[str, threading.RLock]] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                lock.acquire()
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                lock.release()
                self._checkin(key)

    def active_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)
