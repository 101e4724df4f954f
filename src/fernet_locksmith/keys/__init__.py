"""Fernet credential sets and the rotation algorithm."""
from __future__ import annotations

from fernet_locksmith.keys.keyset import MIN_KEYS, CredentialSet, generate_key, rotate

__all__ = [
    "MIN_KEYS",
    "CredentialSet",
    "generate_key",
    "rotate",
]
