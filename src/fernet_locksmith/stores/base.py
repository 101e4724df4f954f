"""Trust-store contract.

A trust store holds an opaque secret record at a path. The rotation engine
only needs read, write and delete; token renewal is optional and a no-op
unless the backend supports it.
"""
from __future__ import annotations

from abc import ABC, abstractmethod


class TrustStore(ABC):
    """Abstract base class for trust-store backends."""

    #: Whether the periodic token renewal task should run for this store.
    renew: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Identity of the store used in logs and errors (e.g. its address)."""

    @abstractmethod
    def read(self, path: str) -> dict[str, object] | None:
        """Return the record stored at *path*.

        Returns
        -------
        dict | None
            The decoded record, or None if nothing is stored at *path*.

        Raises
        ------
        StoreError
            If the store cannot be reached or rejects the request.
        """

    @abstractmethod
    def write(self, path: str, data: dict[str, object]) -> None:
        """Overwrite the record at *path* with *data*.

        Raises
        ------
        StoreError
            If the store rejects the write.
        """

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove the record at *path*.

        Raises
        ------
        StoreError
            If the store rejects the deletion.
        """

    def renew_token(self) -> None:
        """Renew the store's authentication token, if it has one."""

    def close(self) -> None:
        """Release any network resources held by the store."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
