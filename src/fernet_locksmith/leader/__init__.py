"""Leader election through a distributed lock."""
from __future__ import annotations

from fernet_locksmith.leader.base import LockHandle, LockService
from fernet_locksmith.leader.coordinator import LeaderCoordinator
from fernet_locksmith.leader.memory import InMemoryLockService

__all__ = [
    "InMemoryLockService",
    "LeaderCoordinator",
    "LockHandle",
    "LockService",
]
