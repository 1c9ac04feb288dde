"""
Per-user critical sections.

Each user id maps to its own lock; different users never contend. The
registry holds locks weakly, so an entry lives only while some caller is
waiting on or holding it. In multi-process deployments the row lock taken
by ``SELECT ... FOR UPDATE`` inside the same section serializes writers
across processes; this registry keeps threads of one process from piling
onto the database lock.
"""

from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from typing import Iterator, Optional

from atelier.core.config import settings
from atelier.core.errors import LockTimeoutError


class _UserLock:
    __slots__ = ("user_id", "lock", "__weakref__")

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.lock = threading.Lock()


class UserLockRegistry:
    """Map of user id to lock, guarded by a registry-level mutex."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, _UserLock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def get(self, user_id: str) -> _UserLock:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = _UserLock(user_id)
                self._locks[user_id] = entry
            return entry

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, user_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        entry = self.get(user_id)
        wait = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        if not entry.lock.acquire(timeout=wait):
            raise LockTimeoutError(f"Timed out waiting for account lock of user {user_id}")
        try:
            yield
        finally:
            entry.lock.release()


_registry = UserLockRegistry()


def user_lock(user_id: str, timeout: Optional[float] = None):
    """Enter the critical section for ``user_id``.

    Usage:
        with user_lock(user_id), get_db_session() as session:
            ...
    """
    return _registry.hold(user_id, timeout=timeout)
