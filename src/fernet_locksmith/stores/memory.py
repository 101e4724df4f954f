"""In-memory trust store.

Keeps records in a dict guarded by a lock. Used for tests and local dry
runs; records are deep-copied on the way in and out so callers can never
mutate the stored state by accident.
"""
from __future__ import annotations

import copy
import threading

from fernet_locksmith.errors import StoreError
from fernet_locksmith.stores.base import TrustStore


class InMemoryTrustStore(TrustStore):
    """Dict-backed trust store.

    Parameters
    ----------
    name:
        Identity used in logs and errors.
    records:
        Optional initial records keyed by path.
    """

    def __init__(
        self,
        name: str = "memory",
        records: dict[str, dict[str, object]] | None = None,
        renew: bool = False,
    ) -> None:
        self._name = name
        self.renew = renew
        self._records: dict[str, dict[str, object]] = copy.deepcopy(records or {})
        self._lock = threading.Lock()
        self.fail_reads = False
        self.fail_writes = False
        self.write_count = 0
        self.renew_count = 0

    @property
    def name(self) -> str:
        return self._name

    def read(self, path: str) -> dict[str, object] | None:
        if self.fail_reads:
            raise StoreError(self._name, f"read of {path} rejected")
        with self._lock:
            record = self._records.get(path)
            return copy.deepcopy(record) if record is not None else None

    def write(self, path: str, data: dict[str, object]) -> None:
        if self.fail_writes:
            raise StoreError(self._name, f"write of {path} rejected")
        with self._lock:
            self._records[path] = copy.deepcopy(data)
            self.write_count += 1

    def delete(self, path: str) -> None:
        with self._lock:
            self._records.pop(path, None)

    def renew_token(self) -> None:
        self.renew_count += 1
