"""LeaderCoordinator: singleton rotation across a fleet via a distributed lock.

The coordinator owns the lock handle and its loss signal. Once the lock is
acquired a watcher thread waits for the loss signal; losing the lock is
fatal, so the watcher marks the coordinator as lost and calls ``on_lost``
(the CLI terminates the process there). On graceful shutdown the lock is
released and its entry destroyed so the next instance takes over without
waiting for a session timeout.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from fernet_locksmith.errors import LockError
from fernet_locksmith.leader.base import LockHandle, LockService

logger = logging.getLogger(__name__)


class LeaderCoordinator:
    """Acquires, watches and cleans up the leader lock.

    Parameters
    ----------
    lock_service:
        Backend handing out locks.
    lock_key:
        Fixed lock name shared by every instance.
    on_lost:
        Called once, from the watcher thread, when the lock is lost.
    """

    def __init__(
        self,
        lock_service: LockService,
        lock_key: str,
        on_lost: Optional[Callable[[], None]] = None,
    ) -> None:
        self._service = lock_service
        self.lock_key = lock_key
        self._on_lost = on_lost
        self._handle: LockHandle | None = None
        self._lost = threading.Event()
        self._stopping = threading.Event()
        self._watcher: threading.Thread | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def acquire(
        self,
        timeout: float | None = None,
        stop: Optional[threading.Event] = None,
    ) -> LockHandle:
        """Block until the leader lock is held.

        Setting *stop* while waiting abandons the wait without taking the
        lock.

        Raises
        ------
        LockError
            If the lock service is unreachable, *timeout* elapses or *stop*
            is set.
        """
        with self._lock:
            if self._handle is not None:
                return self._handle
            logger.info("Attempting to acquire lock %s...", self.lock_key)
            try:
                handle = self._service.acquire(self.lock_key, timeout=timeout, stop=stop)
            except LockError:
                raise
            except Exception as exc:
                raise LockError(self.lock_key, f"Failed acquiring lock: {exc}") from exc
            self._handle = handle
            logger.info("Lock acquired")
            return handle

    def start_watch(self) -> None:
        """Start the watcher thread reacting to lock loss."""
        if self._handle is None:
            raise LockError(self.lock_key, "Cannot watch a lock that is not held")
        if self._watcher is not None:
            return
        self._watcher = threading.Thread(target=self._watch, name="leader-watch", daemon=True)
        self._watcher.start()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def handle(self) -> LockHandle | None:
        return self._handle

    @property
    def lost(self) -> threading.Event:
        """Set once the lock has been lost."""
        return self._lost

    def is_leader(self) -> bool:
        return self._handle is not None and self._handle.held and not self._lost.is_set()

    def ensure_leader(self) -> None:
        """Raise LockError unless the lock is currently held."""
        if not self.is_leader():
            raise LockError(self.lock_key, "Lock is not held; refusing to continue")

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Release the lock and destroy its entry if nobody else holds it.

        Raises
        ------
        LockError
            If the release or the cleanup fails.
        """
        self._stopping.set()
        with self._lock:
            handle, self._handle = self._handle, None
        if handle is None:
            return
        if self._watcher is not None:
            self._watcher.join(timeout=1.0)

        logger.info("Attempting to release lock")
        self._service.release(handle)
        logger.info("Lock released")
        logger.info("Cleaning lock entry")
        self._service.destroy(handle)
        logger.info("Cleanup done")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _watch(self) -> None:
        handle = self._handle
        if handle is None:
            return
        while not self._stopping.is_set():
            if handle.lost.wait(timeout=0.5):
                break
        else:
            return
        if self._stopping.is_set():
            return
        self._lost.set()
        logger.critical("Lost lock %s, exiting", self.lock_key)
        if self._on_lost is not None:
            self._on_lost()
