"""Liveness probes and the registry holding their latest results.

Probes are read-only: a failing probe only changes the health status
served over HTTP, never the rotation engine's state. Each registered check
runs on its own PeriodicTask.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable

from fernet_locksmith.leader.base import LockService
from fernet_locksmith.scheduler.tasks import PeriodicTask
from fernet_locksmith.stores.base import TrustStore

logger = logging.getLogger(__name__)

Check = Callable[[], None]


def store_probe(store: TrustStore, path: str) -> Check:
    """Build a check passing when *store* is reachable and holds a record at *path*."""

    def check() -> None:
        try:
            record = store.read(path)
        except Exception as exc:
            raise RuntimeError(f"Cannot access vault: {exc}") from exc
        if record is None:
            raise RuntimeError(f"{path} is empty in {store.name}")

    return check


def lock_probe(lock_service: LockService, key: str) -> Check:
    """Build a check passing when the lock entry *key* exists."""

    def check() -> None:
        try:
            exists = lock_service.exists(key)
        except Exception as exc:
            raise RuntimeError(f"Cannot access consul lock: {exc}") from exc
        if not exists:
            raise RuntimeError("Lock does not exist")

    return check


class HealthRegistry:
    """Named checks and their latest outcome.

    A check is considered failing until it has passed once, so a freshly
    started instance does not report healthy before probing anything.

    Parameters
    ----------
    period:
        Seconds between two runs of each check.
    """

    def __init__(self, period: float = 30.0) -> None:
        self._period = period
        self._checks: dict[str, Check] = {}
        self._errors: dict[str, str] = {}
        self._tasks: list[PeriodicTask] = []
        self._lock = threading.Lock()

    def register(self, name: str, check: Check) -> None:
        with self._lock:
            if name in self._checks:
                raise ValueError(f"Check {name!r} is already registered.")
            self._checks[name] = check
            self._errors[name] = "not yet checked"

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._checks)

    def run_check(self, name: str) -> None:
        """Run one check now and record its outcome."""
        check = self._checks[name]
        try:
            check()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Health check %s failed: %s", name, exc)
            with self._lock:
                self._errors[name] = str(exc)
            return
        with self._lock:
            self._errors.pop(name, None)

    def run_all(self) -> None:
        for name in self.names():
            self.run_check(name)

    def status(self) -> dict[str, str]:
        """Return ``{check name: error}`` for every failing check."""
        with self._lock:
            return dict(self._errors)

    def healthy(self) -> bool:
        return not self.status()

    def start(self) -> None:
        for name in self.names():
            task = PeriodicTask(
                f"health-{name}",
                lambda name=name: self.run_check(name),
                interval=self._period,
                run_immediately=True,
            )
            self._tasks.append(task.start())

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        self._tasks.clear()
