"""Configuration models and loading.

Configuration comes from three layers, later layers winning:

1. model defaults;
2. an optional JSON config file (keys in ``kebab-case`` or ``snake_case``);
3. explicit command-line options, which click also reads from ``VFL_*``
   environment variables.

Example config file::

    {
      "primary-vault": {"address": "https://vault-a:8200", "token-file": "/run/vault-token"},
      "secondary-vaults": [{"address": "https://vault-b:8200", "token-renew": true}],
      "secret-path": "secret/fernet-keys",
      "ttl": 120,
      "consul": {"lock": true, "address": "http://127.0.0.1:8500"}
    }
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fernet_locksmith.errors import ConfigError


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class _Section(BaseModel):
    model_config = ConfigDict(alias_generator=_kebab, populate_by_name=True, extra="forbid")


class VaultConfig(_Section):
    """Connection settings for one Vault trust store."""

    address: str = "https://127.0.0.1:8200"
    proxy: str = ""
    token: str = ""
    token_file: str = ""
    token_renew: bool = False


class ConsulConfig(_Section):
    """Connection and lock settings for Consul."""

    lock: bool = False
    lock_key: str = "locks/locksmith/.lock"
    address: str = "http://127.0.0.1:8500"
    proxy: str = ""
    token: str = ""
    token_file: str = ""
    session_ttl: int = Field(default=15, gt=0)


class BootstrapConfig(_Section):
    """Parameters of the initial credential set."""

    num_keys: int = Field(default=3, ge=3)
    period: int = Field(default=3600, gt=0)


class LocksmithConfig(_Section):
    """Top-level fernet-locksmith configuration."""

    primary_vault: VaultConfig = Field(default_factory=VaultConfig)
    secondary_vaults: list[VaultConfig] = Field(default_factory=list)
    secret_path: str = "secret/fernet-keys"
    ttl: int = Field(default=120, gt=0)
    request_timeout: int = Field(default=30, gt=0)
    health: bool = False
    health_period: int = Field(default=30, gt=0)
    health_address: str = "0.0.0.0"
    health_port: int = Field(default=8080, gt=0, lt=65536)
    consul: ConsulConfig = Field(default_factory=ConsulConfig)
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)

    @property
    def vaults(self) -> list[VaultConfig]:
        """All Vault configurations, primary first."""
        return [self.primary_vault, *self.secondary_vaults]


def _deep_merge(base: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = _deep_merge(current if isinstance(current, dict) else {}, value)
        else:
            merged[key] = value
    return merged


def load_config(
    config_file: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> LocksmithConfig:
    """Build the configuration from an optional JSON file and overrides.

    Parameters
    ----------
    config_file:
        Path to a JSON configuration file, or None.
    overrides:
        Nested mapping of snake_case keys; None values are ignored so unset
        command-line options never mask file values.

    Raises
    ------
    ConfigError
        If the file cannot be read or parsed, or validation fails.
    """
    data: dict[str, Any] = {}
    if config_file:
        path = Path(config_file)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"Error reading configuration {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Configuration {path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration {path} must contain a JSON object")
        try:
            data = LocksmithConfig.model_validate(raw).model_dump()
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc

    try:
        return LocksmithConfig.model_validate(_deep_merge(data, overrides or {}))
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
