"""Store synchronizer: read and write one credential set across N stores.

Stores are always visited in list order, primary store first. Reading
refuses divergent state; writing stops at the first failing store without
rolling back the stores already written, so a partial write is caught by
the next read_all.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

from fernet_locksmith.errors import FormatError, InconsistencyError, StoreError, WriteError
from fernet_locksmith.keys.keyset import CredentialSet
from fernet_locksmith.stores.base import TrustStore

logger = logging.getLogger(__name__)


def read_one(store: TrustStore, path: str) -> CredentialSet:
    """Read and validate the credential set held by a single store.

    Raises
    ------
    FormatError
        If the record is missing or invalid.
    StoreError
        If the store cannot be read.
    """
    logger.debug("Reading %s from %s", path, store.name)
    record = store.read(path)
    if record is None:
        raise FormatError(f"No secret at path {path}", store=store.name)
    return CredentialSet.from_record(record, store=store.name)


def read_all(stores: Sequence[TrustStore], path: str) -> CredentialSet:
    """Read the credential set from every store and check they agree.

    Parameters
    ----------
    stores:
        Trust stores, primary first. Must not be empty.
    path:
        Secret path of the record.

    Returns
    -------
    CredentialSet
        The primary store's set.

    Raises
    ------
    FormatError
        If any record is missing or invalid.
    InconsistencyError
        If any store's set differs from the primary store's set.
    StoreError
        If any store cannot be read.
    """
    if not stores:
        raise ValueError("At least one trust store is required")

    reference: Optional[CredentialSet] = None
    reference_name = ""
    for store in stores:
        credential_set = read_one(store, path)
        if reference is None:
            reference = credential_set
            reference_name = store.name
        elif not reference.same_as(credential_set):
            raise InconsistencyError(reference_name, store.name)
    assert reference is not None
    return reference


def write_all(
    stores: Sequence[TrustStore],
    path: str,
    credential_set: CredentialSet,
    ttl: int,
    guard: Optional[Callable[[], None]] = None,
) -> list[str]:
    """Write *credential_set* with a *ttl* hint to every store in order.

    Parameters
    ----------
    guard:
        Optional callable invoked before each store write. It raises
        LockError to stop the update, e.g. once leadership is lost.

    Returns
    -------
    list[str]
        Names of the stores written.

    Raises
    ------
    FormatError
        If *credential_set* is invalid. Nothing is written.
    WriteError
        On the first store that rejects the write. Earlier stores keep the
        new set.
    LockError
        If *guard* refuses a write.
    """
    credential_set.validate()
    record = credential_set.to_record(ttl=ttl)
    written: list[str] = []

    for store in stores:
        if guard is not None:
            guard()
        logger.info("Writing keys to %s", store.name)
        try:
            store.write(path, record)
        except StoreError as exc:
            raise WriteError(store.name, exc.reason, written=written) from exc
        written.append(store.name)
        logger.debug("Keys written to %s", store.name)

    return written


__all__ = ["read_all", "read_one", "write_all"]
