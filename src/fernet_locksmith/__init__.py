"""fernet-locksmith: rotate Fernet keys replicated across trust stores.

Public API
----------
The stable public surface is everything exported from this module.
Anything inside submodules not re-exported here is considered private
and may change without notice.

Example
-------
>>> import fernet_locksmith
>>> fernet_locksmith.__version__
'0.1.0'

Quick start
-----------
::

    from fernet_locksmith import (
        CredentialSet, rotate, read_all, write_all,
        InMemoryTrustStore, Scheduler, LeaderCoordinator, InMemoryLockService,
    )

    stores = [InMemoryTrustStore("primary"), InMemoryTrustStore("secondary")]
    write_all(stores, "secret/fernet-keys", CredentialSet.generate(period=3600), ttl=120)
    Scheduler(stores, "secret/fernet-keys", ttl=120).run_once()
"""
from __future__ import annotations

__version__: str = "0.1.0"

from fernet_locksmith.errors import (
    ConfigError,
    FormatError,
    InconsistencyError,
    KeyGenerationError,
    LockError,
    LocksmithError,
    StoreError,
    WriteError,
)

# ------------------------------------------------------------------
# Credential sets
# ------------------------------------------------------------------
from fernet_locksmith.keys.keyset import MIN_KEYS, CredentialSet, generate_key, rotate

# ------------------------------------------------------------------
# Trust stores
# ------------------------------------------------------------------
from fernet_locksmith.stores.base import TrustStore
from fernet_locksmith.stores.memory import InMemoryTrustStore
from fernet_locksmith.stores.sync import read_all, read_one, write_all

# ------------------------------------------------------------------
# Leader election
# ------------------------------------------------------------------
from fernet_locksmith.leader.base import LockHandle, LockService
from fernet_locksmith.leader.coordinator import LeaderCoordinator
from fernet_locksmith.leader.memory import InMemoryLockService

# ------------------------------------------------------------------
# Scheduling and liveness
# ------------------------------------------------------------------
from fernet_locksmith.scheduler.scheduler import CycleResult, Scheduler
from fernet_locksmith.scheduler.tasks import PeriodicTask, TaskGroup
from fernet_locksmith.health.checks import HealthRegistry, lock_probe, store_probe

__all__ = [
    # version
    "__version__",
    # errors
    "ConfigError",
    "FormatError",
    "InconsistencyError",
    "KeyGenerationError",
    "LockError",
    "LocksmithError",
    "StoreError",
    "WriteError",
    # credential sets
    "MIN_KEYS",
    "CredentialSet",
    "generate_key",
    "rotate",
    # trust stores
    "InMemoryTrustStore",
    "TrustStore",
    "read_all",
    "read_one",
    "write_all",
    # leader election
    "InMemoryLockService",
    "LeaderCoordinator",
    "LockHandle",
    "LockService",
    # scheduling and liveness
    "CycleResult",
    "HealthRegistry",
    "PeriodicTask",
    "Scheduler",
    "TaskGroup",
    "lock_probe",
    "store_probe",
]
