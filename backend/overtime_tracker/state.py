from __future__ import annotations

from contextlib import contextmanager
from threading import RLock
from typing import Dict, Hashable, Iterator, Tuple


ScopeKey = Tuple[str, str, Hashable]


class _ScopeLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = RLock()
        self.holders = 0


class ScopeLocks:
    """Re-entrant locks keyed by ``(owner_id, scope, key)``.

    Cache recomputation replaces rows with delete-then-insert, which is not
    safe when two requests run it for the same owner and week at once. Writers
    of one scope serialize on its lock; different owners never contend.
    A lock lives only while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._locks: Dict[ScopeKey, _ScopeLock] = {}

    def _acquire_entry(self, key: ScopeKey) -> _ScopeLock:
        with self._lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _ScopeLock()
                self._locks[key] = entry
            entry.holders += 1
            return entry

    def _release_entry(self, key: ScopeKey, entry: _ScopeLock) -> None:
        with self._lock:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, owner_id: str, scope: str, key: Hashable = None) -> Iterator[None]:
        scope_key = (owner_id, scope, key)
        entry = self._acquire_entry(scope_key)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(scope_key, entry)

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)


scope_locks = ScopeLocks()
