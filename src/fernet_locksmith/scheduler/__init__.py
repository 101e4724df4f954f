"""Rotation scheduling and supervised background tasks."""
from __future__ import annotations

from fernet_locksmith.scheduler.scheduler import CycleResult, Scheduler
from fernet_locksmith.scheduler.tasks import PeriodicTask, TaskGroup

__all__ = [
    "CycleResult",
    "PeriodicTask",
    "Scheduler",
    "TaskGroup",
]
