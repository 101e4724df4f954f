"""Exception hierarchy for fernet-locksmith.

Every error raised by the rotation engine derives from :class:`LocksmithError`
so callers can separate locksmith failures from programming errors. Errors
tied to a trust store or lock carry its identity.
"""
from __future__ import annotations


class LocksmithError(Exception):
    """Base class for all fernet-locksmith errors."""


class ConfigError(LocksmithError):
    """Raised when the configuration is incomplete or inconsistent."""


class FormatError(LocksmithError):
    """Raised when a credential-set record is missing or invalid.

    Parameters
    ----------
    message:
        What is wrong with the record.
    store:
        Name of the store the record came from, if known.
    """

    def __init__(self, message: str, store: str | None = None) -> None:
        self.store = store
        if store is not None:
            message = f"{store}: {message}"
        super().__init__(message)


class InconsistencyError(LocksmithError):
    """Raised when two trust stores hold different credential sets."""

    def __init__(self, reference: str, other: str) -> None:
        self.reference = reference
        self.other = other
        super().__init__(
            f"Keys in {other!r} differ from keys in {reference!r}; "
            "refusing to rotate from divergent state."
        )


class StoreError(LocksmithError):
    """Raised when a trust store cannot be reached or rejects a request."""

    def __init__(self, store: str, message: str) -> None:
        self.store = store
        self.reason = message
        super().__init__(f"{store}: {message}")


class WriteError(StoreError):
    """Raised when a store rejects a write during a multi-store update.

    Parameters
    ----------
    store:
        The store that rejected the write.
    message:
        The underlying failure.
    written:
        Stores already updated before the failure. They are not rolled back.
    """

    def __init__(self, store: str, message: str, written: list[str] | None = None) -> None:
        self.written = list(written or [])
        super().__init__(store, message)


class KeyGenerationError(LocksmithError):
    """Raised when secure key material cannot be produced."""


class LockError(LocksmithError):
    """Raised when the leader lock cannot be acquired, is lost, or cannot be cleaned."""

    def __init__(self, lock_key: str, message: str) -> None:
        self.lock_key = lock_key
        super().__init__(f"lock {lock_key!r}: {message}")


__all__ = [
    "ConfigError",
    "FormatError",
    "InconsistencyError",
    "KeyGenerationError",
    "LockError",
    "LocksmithError",
    "StoreError",
    "WriteError",
]
