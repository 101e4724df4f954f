"""Trust stores and the multi-store synchronizer."""
from __future__ import annotations

from fernet_locksmith.stores.base import TrustStore
from fernet_locksmith.stores.memory import InMemoryTrustStore
from fernet_locksmith.stores.sync import read_all, read_one, write_all
from fernet_locksmith.stores.vault import VaultTrustStore, resolve_token

__all__ = [
    "InMemoryTrustStore",
    "TrustStore",
    "VaultTrustStore",
    "read_all",
    "read_one",
    "resolve_token",
    "write_all",
]
