"""In-process locks keyed by subscription lineage.

Row locks (``SELECT ... FOR UPDATE``) serialize writers across processes on
databases that support them. These locks serialize writers inside one process,
which also covers SQLite where ``FOR UPDATE`` is a no-op.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class LineageLocks:
    """Reference-counted registry of per-lineage locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str | None) -> Iterator[None]:
        if key is None:
            yield
            return

        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


lineage_locks = LineageLocks()
