"""Scheduler: the rotation control loop.

Each cycle reads the credential set from every store, checks consistency
and freshness, and rotates and writes back only when rotation is due.
Cycles never overlap: a cycle requested while another is running is
skipped. Recoverable errors end the cycle and are retried on the next tick;
key-generation and lock errors propagate.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from fernet_locksmith.errors import (
    FormatError,
    InconsistencyError,
    LockError,
    StoreError,
)
from fernet_locksmith.keys.keyset import CredentialSet, rotate
from fernet_locksmith.leader.coordinator import LeaderCoordinator
from fernet_locksmith.stores.base import TrustStore
from fernet_locksmith.stores.sync import read_all, write_all

logger = logging.getLogger(__name__)

RECOVERABLE_ERRORS = (FormatError, InconsistencyError, StoreError)


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one scheduler cycle.

    Parameters
    ----------
    rotated:
        True if a new credential set was written to every store.
    skipped:
        True if the cycle did not run because another one was in progress.
    credential_set:
        The set in force at the end of the cycle, if it could be read.
    error:
        The recoverable error that ended the cycle, if any.
    """

    rotated: bool = False
    skipped: bool = False
    credential_set: Optional[CredentialSet] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class Scheduler:
    """Periodically rotates the credential set when it is due.

    Parameters
    ----------
    stores:
        Trust stores, primary first.
    path:
        Secret path of the credential-set record.
    ttl:
        Tick interval in seconds, also the readers' cache lifetime hint
        written with each record.
    leader:
        Optional coordinator. When given, cycles only run and writes only
        happen while it holds the lock.
    clock:
        Returns the current Unix time; injectable for tests.
    monotonic:
        Monotonic clock used to schedule ticks; injectable for tests.
    """

    def __init__(
        self,
        stores: Sequence[TrustStore],
        path: str,
        ttl: int,
        leader: Optional[LeaderCoordinator] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if not stores:
            raise ValueError("At least one trust store is required")
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self._stores = list(stores)
        self._path = path
        self._ttl = ttl
        self._leader = leader
        self._clock = clock
        self._monotonic = monotonic
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self.cycles = 0
        self.rotations = 0

    @property
    def ttl(self) -> int:
        return self._ttl

    # ------------------------------------------------------------------
    # Single cycle
    # ------------------------------------------------------------------

    def run_once(self) -> CycleResult:
        """Run one Evaluating cycle.

        Raises
        ------
        KeyGenerationError
            If the new staging key cannot be generated.
        LockError
            If leadership is lost before or during the cycle.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous cycle still running, skipping tick")
            return CycleResult(skipped=True)
        try:
            self.cycles += 1
            return self._evaluate()
        finally:
            self._cycle_lock.release()

    def _evaluate(self) -> CycleResult:
        if self._leader is not None:
            self._leader.ensure_leader()

        logger.debug("Getting fernet keys")
        try:
            current = read_all(self._stores, self._path)
        except RECOVERABLE_ERRORS as exc:
            logger.error("Cannot smith new keys: %s", exc)
            return CycleResult(error=exc)

        now = int(self._clock())
        if not current.is_due(self._ttl, now=now):
            logger.debug(
                "All keys are fresh, no rotation needed (next rotation at %d)",
                current.due_at(self._ttl),
            )
            return CycleResult(credential_set=current)

        logger.info("Time to rotate keys")
        rotated = rotate(current, period=0, now=now)

        guard = self._leader.ensure_leader if self._leader is not None else None
        try:
            write_all(self._stores, self._path, rotated, self._ttl, guard=guard)
        except RECOVERABLE_ERRORS as exc:
            logger.error("Rotation failed, stores may have diverged: %s", exc)
            return CycleResult(credential_set=current, error=exc)

        self.rotations += 1
        logger.info("Rotation complete")
        return CycleResult(rotated=True, credential_set=rotated)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_forever(self) -> None:
        """Run a cycle now and then every ``ttl`` seconds until stopped.

        Ticks fall on a fixed interval measured from the first one. A cycle
        that overruns its tick moves the schedule forward instead of firing
        the missed ticks.

        Returns when ``stop()`` is called or the leader loses the lock.

        Raises
        ------
        KeyGenerationError
            Propagated from a cycle; fatal.
        """
        logger.info("Starting")
        next_tick = self._monotonic()
        while not self._stop_event.is_set():
            if self._leader is not None and self._leader.lost.is_set():
                logger.error("Leadership lost, stopping scheduler")
                return
            try:
                self.run_once()
            except LockError as exc:
                logger.error("Stopping scheduler: %s", exc)
                return
            next_tick += self._ttl
            delay = next_tick - self._monotonic()
            if delay < 0:
                logger.warning("Cycle overran its tick by %.1fs", -delay)
                next_tick -= delay
                delay = 0
            if self._stop_event.wait(delay):
                break
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()
