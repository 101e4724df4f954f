"""PeriodicTask: a supervised background thread running a function on a timer.

Used for token renewal, health probes and lock-session renewal. Each task
owns a stop event; ``stop()`` wakes the thread immediately and joins it, so
shutdown never waits for a full interval.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs *func* every *interval* seconds on a daemon thread.

    Exceptions raised by *func* are logged and the task keeps running; the
    next run happens one interval later.

    Parameters
    ----------
    name:
        Thread name, also used in log messages.
    func:
        Zero-argument callable to run.
    interval:
        Seconds between runs. Must be positive.
    run_immediately:
        If True, run *func* once as soon as the task starts.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], None],
        interval: float,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self._func = func
        self._interval = interval
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0
        self.failures = 0

    def start(self) -> "PeriodicTask":
        if self._thread is not None:
            raise RuntimeError(f"Task {self.name!r} already started")
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> None:
        self.runs += 1
        try:
            self._func()
        except Exception as exc:  # noqa: BLE001
            self.failures += 1
            logger.warning("Task %s failed: %s", self.name, exc)

    def _loop(self) -> None:
        if self._run_immediately:
            self.run_once()
        while not self._stop_event.wait(self._interval):
            self.run_once()


class TaskGroup:
    """Owns a set of PeriodicTasks and stops them together on shutdown."""

    def __init__(self, tasks: Iterable[PeriodicTask] = ()) -> None:
        self._tasks: list[PeriodicTask] = list(tasks)

    def add(self, task: PeriodicTask) -> PeriodicTask:
        self._tasks.append(task)
        return task

    def start(self) -> None:
        for task in self._tasks:
            if not task.running:
                task.start()

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self._tasks)
