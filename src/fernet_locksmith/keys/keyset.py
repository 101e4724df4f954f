"""CredentialSet: the sliding window of Fernet keys and its rotation.

Index 0 holds the staging key (newest, not yet assumed present on every
verifier), the last index holds the primary key, and the keys in between
are retiring keys still accepted for decryption. Index 1 is the oldest key
and the next one to be evicted.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from cryptography.fernet import Fernet

from fernet_locksmith.errors import FormatError, KeyGenerationError

MIN_KEYS = 3


def _now() -> int:
    return int(time.time())


def generate_key() -> str:
    """Return a new URL-safe base64 encoded 32-byte Fernet key.

    Raises
    ------
    KeyGenerationError
        If the operating system cannot provide secure random bytes.
    """
    try:
        return Fernet.generate_key().decode("ascii")
    except (OSError, NotImplementedError, ValueError) as exc:
        raise KeyGenerationError(f"Cannot generate fernet key: {exc}") from exc


@dataclass
class CredentialSet:
    """An ordered window of Fernet keys with rotation metadata.

    Parameters
    ----------
    keys:
        Keys ordered staging first, primary last.
    creation_time:
        Unix timestamp of the last rotation.
    period:
        Seconds between mandatory rotations.
    """

    keys: list[str] = field(default_factory=list)
    creation_time: int = 0
    period: int = 0

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def generate(
        cls,
        period: int,
        num_keys: int = MIN_KEYS,
        now: Optional[int] = None,
        key_generator: Callable[[], str] = generate_key,
    ) -> "CredentialSet":
        """Create a fresh set of *num_keys* keys.

        Raises
        ------
        FormatError
            If *num_keys* or *period* would produce an invalid set.
        KeyGenerationError
            If key material cannot be produced.
        """
        if num_keys < MIN_KEYS:
            raise FormatError(f"Number of keys must be at least {MIN_KEYS}, got {num_keys}")
        if period <= 0:
            raise FormatError(f"Period must be greater than 0, got {period}")
        credential_set = cls(
            keys=[key_generator() for _ in range(num_keys)],
            creation_time=now if now is not None else _now(),
            period=period,
        )
        credential_set.validate()
        return credential_set

    @classmethod
    def from_record(cls, record: dict[str, object], store: str | None = None) -> "CredentialSet":
        """Decode and validate a trust-store record.

        Accepts both the bare record and the ``{"data": {...}}`` envelope
        Vault returns from a raw read.

        Raises
        ------
        FormatError
            If a field is missing, has the wrong type, or the set is invalid.
        """
        if not isinstance(record, dict):
            raise FormatError("Record is not a mapping", store=store)
        data = record.get("data", record)
        if not isinstance(data, dict):
            raise FormatError("Record data is not a mapping", store=store)

        keys = data.get("keys")
        if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
            raise FormatError("Keys list is missing or not a list of strings", store=store)

        creation_time = data.get("creation_time")
        period = data.get("period")
        for name, value in (("creation_time", creation_time), ("period", period)):
            # bool is an int subclass and must not be accepted as a timestamp
            if not isinstance(value, int) or isinstance(value, bool):
                raise FormatError(f"{name} is missing or not an integer", store=store)

        credential_set = cls(keys=list(keys), creation_time=creation_time, period=period)
        credential_set.validate(store=store)
        return credential_set

    # ------------------------------------------------------------------
    # Validation and comparison
    # ------------------------------------------------------------------

    def validate(self, store: str | None = None) -> None:
        """Raise FormatError if this set must not be used or written."""
        if self.keys is None:
            raise FormatError("Keys list is nil", store=store)
        if len(self.keys) < MIN_KEYS:
            raise FormatError(
                f"Not enough keys: {len(self.keys)} (minimum {MIN_KEYS})", store=store
            )
        if any(not key for key in self.keys):
            raise FormatError("Empty key in keys list", store=store)
        if self.creation_time <= 0:
            raise FormatError("Creation time must be greater than 0", store=store)
        if self.period <= 0:
            raise FormatError("Period must be greater than 0", store=store)

    def is_valid(self) -> bool:
        try:
            self.validate()
        except FormatError:
            return False
        return True

    def same_as(self, other: "CredentialSet") -> bool:
        """Field-by-field equality over the fixed schema."""
        return (
            list(self.keys) == list(other.keys)
            and self.creation_time == other.creation_time
            and self.period == other.period
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def staging(self) -> str:
        return self.keys[0]

    @property
    def primary(self) -> str:
        return self.keys[-1]

    @property
    def retiring(self) -> list[str]:
        return list(self.keys[1:-1])

    def due_at(self, ttl: int) -> int:
        """Unix time from which rotation is due, given the readers' cache *ttl*."""
        return self.creation_time + self.period - ttl

    def is_due(self, ttl: int, now: Optional[int] = None) -> bool:
        """Return True if the set must be rotated now.

        Rotation happens one TTL before the period elapses so that readers
        caching the record for up to *ttl* seconds pick up the new staging
        key in time. The boundary is inclusive.
        """
        reference = now if now is not None else _now()
        return reference >= self.due_at(ttl)

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_record(self, ttl: int | None = None) -> dict[str, object]:
        """Serialise to the trust-store record shape.

        Parameters
        ----------
        ttl:
            Advisory cache lifetime for readers, in seconds. Omitted if None.
        """
        record: dict[str, object] = {
            "keys": list(self.keys),
            "creation_time": self.creation_time,
            "period": self.period,
        }
        if ttl is not None:
            record["ttl"] = f"{ttl}s"
        return record

    def to_dict(self, include_keys: bool = False) -> dict[str, object]:
        """Serialise for display. Keys are masked unless *include_keys*."""
        return {
            "keys": list(self.keys) if include_keys else ["***"] * len(self.keys),
            "num_keys": len(self.keys),
            "creation_time": self.creation_time,
            "period": self.period,
        }


def rotate(
    credential_set: CredentialSet,
    period: int = 0,
    now: Optional[int] = None,
    key_generator: Callable[[], str] = generate_key,
) -> CredentialSet:
    """Return the next credential set; the input is left untouched.

    ``[k0, k1, k2, ..., kn-1]`` becomes ``[new, k2, ..., kn-1, k0]``: a new
    staging key is issued, the old staging key becomes primary, and the
    oldest retiring key ``k1`` is evicted.

    Parameters
    ----------
    credential_set:
        A valid set.
    period:
        New rotation period. Values <= 0 keep the current period.
    now:
        Reference time (defaults to the current Unix time).

    Raises
    ------
    FormatError
        If *credential_set* is invalid.
    KeyGenerationError
        If the new staging key cannot be generated.
    """
    credential_set.validate()
    new_staging = key_generator()
    if not new_staging:
        raise KeyGenerationError("Key generator returned an empty key")

    old_staging = credential_set.keys[0]
    keys = [new_staging] + list(credential_set.keys[2:]) + [old_staging]

    reference = now if now is not None else _now()
    # creation_time is a version marker for readers; it must always move forward
    creation_time = max(reference, credential_set.creation_time + 1)

    return CredentialSet(
        keys=keys,
        creation_time=creation_time,
        period=period if period > 0 else credential_set.period,
    )


__all__ = [
    "MIN_KEYS",
    "CredentialSet",
    "generate_key",
    "rotate",
]
