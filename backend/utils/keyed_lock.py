"""Per-key mutual exclusion inside one process."""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, List


class KeyedLock:
    """Hands out one lock per key and forgets keys nobody holds or waits on."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._entries: Dict[str, List] = {}

    @contextmanager
    def hold(self, key: str, blocking: bool = True) -> Iterator[bool]:
        """Yield True when the key lock was acquired, False on a non-blocking miss."""
        with self._guard:
            entry = self._entries.setdefault(key, [Lock(), 0])
            entry[1] += 1

        lock: Lock = entry[0]
        acquired = lock.acquire(blocking)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0 and self._entries.get(key) is entry:
                    self._entries.pop(key, None)
