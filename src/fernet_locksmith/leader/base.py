"""Lock-service contract for leader election.

A lock service hands out named mutual-exclusion locks. Acquiring returns a
LockHandle whose ``lost`` event is set by the service when the lock is
revoked, its session expires, or another holder supersedes it.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class LockHandle:
    """A held lock.

    Parameters
    ----------
    key:
        Name of the lock.
    holder_id:
        Identifier of the holder (session ID for Consul).
    lost:
        Set by the lock service once the lock is no longer held.
    """

    key: str
    holder_id: str
    lost: threading.Event = field(default_factory=threading.Event)
    released: bool = False

    @property
    def held(self) -> bool:
        return not self.released and not self.lost.is_set()


class LockService(ABC):
    """Abstract base class for distributed lock backends."""

    @abstractmethod
    def acquire(
        self,
        key: str,
        timeout: float | None = None,
        stop: Optional[threading.Event] = None,
    ) -> LockHandle:
        """Block until the lock *key* is held.

        Parameters
        ----------
        key:
            Lock name.
        timeout:
            Maximum seconds to wait. None waits forever.
        stop:
            When set while waiting, the wait is abandoned without taking
            the lock.

        Raises
        ------
        LockError
            If the service is unreachable, *timeout* elapses or *stop* is set.
        """

    @abstractmethod
    def release(self, handle: LockHandle) -> None:
        """Release a held lock.

        Raises
        ------
        LockError
            If the service rejects the release.
        """

    @abstractmethod
    def destroy(self, handle: LockHandle) -> None:
        """Remove the lock entry if nobody holds it.

        Idempotent. A lock held by another instance is left in place and
        is not an error.

        Raises
        ------
        LockError
            If the service rejects the cleanup.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Return True if a lock entry exists for *key*."""

    def close(self) -> None:
        """Stop background work and release network resources."""
