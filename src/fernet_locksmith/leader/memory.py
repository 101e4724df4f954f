"""In-process lock service.

Implements the LockService contract with a condition variable, so several
coordinators inside one process (or one test) can compete for the same key.
``revoke`` simulates a lost session.
"""
from __future__ import annotations

import itertools
import threading
import time
from typing import Optional

from fernet_locksmith.errors import LockError
from fernet_locksmith.leader.base import LockHandle, LockService

STOP_POLL_INTERVAL = 0.1


class InMemoryLockService(LockService):
    """Condition-variable backed lock service."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._holders: dict[str, LockHandle] = {}
        self._entries: set[str] = set()
        self._ids = itertools.count(1)
        self.unavailable = False

    def acquire(
        self,
        key: str,
        timeout: float | None = None,
        stop: Optional[threading.Event] = None,
    ) -> LockHandle:
        if self.unavailable:
            raise LockError(key, "lock service unreachable")
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while key in self._holders:
                if stop is not None and stop.is_set():
                    raise LockError(key, "stopped while waiting for lock")
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise LockError(key, f"timed out after {timeout}s waiting for lock")
                if stop is not None:
                    remaining = STOP_POLL_INTERVAL if remaining is None else min(remaining, STOP_POLL_INTERVAL)
                self._cond.wait(remaining)
            handle = LockHandle(key=key, holder_id=f"session-{next(self._ids)}")
            self._holders[key] = handle
            self._entries.add(key)
            return handle

    def release(self, handle: LockHandle) -> None:
        with self._cond:
            if self._holders.get(handle.key) is handle:
                del self._holders[handle.key]
                self._cond.notify_all()
            handle.released = True

    def destroy(self, handle: LockHandle) -> None:
        with self._cond:
            if handle.key in self._holders:
                return
            self._entries.discard(handle.key)

    def exists(self, key: str) -> bool:
        with self._cond:
            return key in self._entries

    def revoke(self, key: str) -> None:
        """Drop the current holder of *key* and signal its loss."""
        with self._cond:
            handle = self._holders.pop(key, None)
            if handle is not None:
                handle.lost.set()
                self._cond.notify_all()

    def holder(self, key: str) -> LockHandle | None:
        with self._cond:
            return self._holders.get(key)
