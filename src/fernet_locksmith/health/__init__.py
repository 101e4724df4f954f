"""Liveness reporting: read-only probes and the /health HTTP endpoint."""
from __future__ import annotations

from fernet_locksmith.health.checks import HealthRegistry, lock_probe, store_probe
from fernet_locksmith.health.server import HealthServer, create_server, handle_health

__all__ = [
    "HealthRegistry",
    "HealthServer",
    "create_server",
    "handle_health",
    "lock_probe",
    "store_probe",
]
