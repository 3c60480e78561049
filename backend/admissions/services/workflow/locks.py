"""
Per-Application Mutual Exclusion

Every mutation of one application (stage moves, automatic transition
sweeps, verification outcomes) runs inside hold(application_id). Locks are
re-entrant so a transition may trigger an automatic sweep on the same
thread. Different applications never contend; there is no global lock
held across a mutation.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.RLock()
        self.holders = 0


class ApplicationLockRegistry:
    """Re-entrant lock per application id, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    @contextmanager
    def hold(self, application_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(application_id)
            if entry is None:
                entry = self._entries[application_id] = _Entry()
            entry.holders += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(application_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# Shared by every engine instance in this process
application_locks = ApplicationLockRegistry()
