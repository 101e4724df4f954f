"""HashiCorp Vault trust store backed by hvac.

Records live in a generic KV (version 1) secret at a fixed path. Reads of a
missing path return None; every other failure is wrapped in StoreError
naming the Vault address.
"""
from __future__ import annotations

import logging
from pathlib import Path

import hvac
import requests
from hvac.exceptions import VaultError

from fernet_locksmith.errors import ConfigError, StoreError, WriteError
from fernet_locksmith.stores.base import TrustStore

logger = logging.getLogger(__name__)


def resolve_token(token: str = "", token_file: str = "", env_token: str = "") -> str:
    """Pick a Vault token: explicit value, then token file, then environment.

    Raises
    ------
    ConfigError
        If no source yields a token, or the token file cannot be read.
    """
    if token:
        return token.strip()
    if token_file:
        try:
            return Path(token_file).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read vault token file {token_file}: {exc}") from exc
    if env_token:
        return env_token.strip()
    raise ConfigError("No vault token provided")


class VaultTrustStore(TrustStore):
    """Trust store talking to a single Vault server.

    Parameters
    ----------
    address:
        Vault URL, e.g. ``https://vault.example.com:8200``.
    token:
        Token used to authenticate.
    proxy:
        Optional HTTP(S) proxy URL.
    timeout:
        Per-request timeout in seconds.
    verify:
        TLS verification flag or path to a CA bundle.
    renew:
        Whether the periodic token renewal task should run for this store.
    client:
        Pre-built hvac client, mostly for tests.
    """

    def __init__(
        self,
        address: str,
        token: str = "",
        proxy: str = "",
        timeout: int = 30,
        verify: bool | str = True,
        renew: bool = False,
        client: hvac.Client | None = None,
    ) -> None:
        self._address = address
        self.renew = renew
        if client is None:
            proxies = {"http": proxy, "https": proxy} if proxy else None
            client = hvac.Client(url=address, token=token or None, timeout=timeout, verify=verify, proxies=proxies)
        self._client = client

    @property
    def name(self) -> str:
        return self._address

    @property
    def client(self) -> hvac.Client:
        return self._client

    def read(self, path: str) -> dict[str, object] | None:
        try:
            response = self._client.read(path)
        except (VaultError, requests.RequestException) as exc:
            raise StoreError(self._address, f"Cannot read {path}: {exc}") from exc
        if response is None:
            return None
        if not isinstance(response, dict):
            raise StoreError(self._address, f"Unexpected response type reading {path}")
        return response

    def write(self, path: str, data: dict[str, object]) -> None:
        try:
            self._client.write_data(path, data=data)
        except (VaultError, requests.RequestException) as exc:
            raise WriteError(self._address, f"Cannot write {path}: {exc}") from exc

    def delete(self, path: str) -> None:
        try:
            self._client.delete(path)
        except (VaultError, requests.RequestException) as exc:
            raise StoreError(self._address, f"Cannot delete {path}: {exc}") from exc

    def renew_token(self) -> None:
        """Renew this client's own token.

        Raises
        ------
        StoreError
            If Vault rejects the renewal, returns no auth data, or reports
            the token as not renewable.
        """
        logger.debug("Renewing vault token for %s", self._address)
        try:
            renewal = self._client.auth.token.renew_self()
        except (VaultError, requests.RequestException) as exc:
            raise StoreError(self._address, f"Error renewing token: {exc}") from exc

        auth = renewal.get("auth") if isinstance(renewal, dict) else None
        if not auth:
            raise StoreError(self._address, "Token renewal returned empty auth data")
        if not auth.get("renewable", False):
            raise StoreError(self._address, "Token is not renewable")

    def close(self) -> None:
        adapter = getattr(self._client, "adapter", None)
        if adapter is not None:
            adapter.close()
