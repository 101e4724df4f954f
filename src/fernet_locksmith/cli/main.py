"""CLI entry point for fernet-locksmith.

Invoked as::

    fernet-locksmith [OPTIONS] COMMAND [ARGS]...

or, during development::

    python -m fernet_locksmith.cli.main

Every option can also be set from the environment with the ``VFL_`` prefix
(e.g. ``VFL_TTL=60``, ``VFL_WATCH_CONSUL_LOCK=true``). The primary Vault
token falls back to ``VAULT_TOKEN``.

Commands
--------
bootstrap   Generate the first set of fernet keys in every Vault
rotate      Force a fernet keys rotation
print       Print the secret stored in every Vault
delete      Delete the fernet keys secret in every Vault
watch       Watch the keys and rotate them when needed
version     Print version and exit
"""
from __future__ import annotations

import json
import logging
import os
import platform
import signal
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import click
from rich.console import Console
from rich.markup import escape

from fernet_locksmith import __version__
from fernet_locksmith.config import LocksmithConfig, load_config
from fernet_locksmith.errors import ConfigError, KeyGenerationError, LockError, LocksmithError
from fernet_locksmith.keys.keyset import MIN_KEYS, CredentialSet, rotate
from fernet_locksmith.leader.base import LockService
from fernet_locksmith.stores.base import TrustStore
from fernet_locksmith.stores.sync import read_all, write_all

console = Console()
logger = logging.getLogger(__name__)

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


# ------------------------------------------------------------------
# Factories
# ------------------------------------------------------------------


def build_vault_stores(config: LocksmithConfig) -> list[TrustStore]:
    """Create one VaultTrustStore per configured Vault, primary first."""
    from fernet_locksmith.stores.vault import VaultTrustStore, resolve_token

    stores: list[TrustStore] = []
    for index, vault in enumerate(config.vaults):
        env_token = os.environ.get("VAULT_TOKEN", "") if index == 0 else ""
        try:
            token = resolve_token(vault.token, vault.token_file, env_token)
        except ConfigError as exc:
            raise ConfigError(f"{vault.address}: {exc}") from exc
        stores.append(
            VaultTrustStore(
                vault.address,
                token=token,
                proxy=vault.proxy,
                timeout=config.request_timeout,
                renew=vault.token_renew,
            )
        )
    return stores


def build_consul_lock_service(config: LocksmithConfig) -> LockService:
    """Create the Consul lock service and check the server answers."""
    from fernet_locksmith.leader.consul import ConsulLockService

    token = config.consul.token
    if not token and config.consul.token_file:
        try:
            token = Path(config.consul.token_file).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read consul token file: {exc}") from exc

    service = ConsulLockService(
        address=config.consul.address,
        token=token,
        timeout=config.request_timeout,
        session_ttl=config.consul.session_ttl,
        proxy=config.consul.proxy,
    )
    service.ping()
    return service


def _exit_process(code: int) -> None:
    logging.shutdown()
    os._exit(code)


@dataclass
class CliContext:
    """State shared by every command through ``click.Context.obj``.

    The factories and the process-exit hook are injectable so tests can run
    commands against in-memory stores and lock services.
    """

    overrides: dict[str, Any] = field(default_factory=dict)
    config_file: Optional[str] = None
    store_factory: Callable[[LocksmithConfig], list[TrustStore]] = build_vault_stores
    lock_factory: Callable[[LocksmithConfig], LockService] = build_consul_lock_service
    exit_process: Callable[[int], None] = _exit_process
    _config: Optional[LocksmithConfig] = None

    def config(self) -> LocksmithConfig:
        if self._config is None:
            self._config = load_config(self.config_file, self.overrides)
        return self._config

    def stores(self) -> list[TrustStore]:
        return self.store_factory(self.config())


def _fail(message: object) -> None:
    console.print(f"[red]Error:[/red] {escape(str(message))}")
    sys.exit(1)


def _context_stores(ctx: CliContext) -> tuple[LocksmithConfig, list[TrustStore]]:
    try:
        config = ctx.config()
        stores = ctx.stores()
    except LocksmithError as exc:
        _fail(exc)
    return config, stores


# ------------------------------------------------------------------
# Root group
# ------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="fernet-locksmith")
@click.option("--config-file", type=click.Path(), default=None, help="Path to a JSON configuration file.")
@click.option("--vault-address", default=None, help="Primary Vault address.")
@click.option("--vault-token", default=None, help="Token used to authenticate with the primary Vault.")
@click.option("--vault-token-file", default=None, help="File containing the primary Vault token.")
@click.option(
    "--renew-vault-token/--no-renew-vault-token",
    default=None,
    help="Periodically renew the primary Vault token.",
)
@click.option("--secret-path", default=None, help="Path to the fernet-keys secret in Vault.  [default: secret/fernet-keys]")
@click.option("--ttl", type=int, default=None, help="Interval between each Vault secret fetch, in seconds.  [default: 120]")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
@click.pass_context
def cli(
    click_ctx: click.Context,
    config_file: str | None,
    vault_address: str | None,
    vault_token: str | None,
    vault_token_file: str | None,
    renew_vault_token: bool | None,
    secret_path: str | None,
    ttl: int | None,
    log_level: str,
) -> None:
    """Rotate fernet keys stored in one or more Vaults."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx = click_ctx.ensure_object(CliContext)
    ctx.config_file = config_file
    ctx.overrides.update(
        {
            "primary_vault": {
                "address": vault_address,
                "token": vault_token,
                "token_file": vault_token_file,
                "token_renew": renew_vault_token,
            },
            "secret_path": secret_path,
            "ttl": ttl,
        }
    )


# ------------------------------------------------------------------
# version
# ------------------------------------------------------------------


@cli.command(name="version")
def version_command() -> None:
    """Print version and exit."""
    console.print(f"[bold]fernet-locksmith[/bold] version: {__version__}")
    console.print(f"python version: {platform.python_version()}")


# ------------------------------------------------------------------
# bootstrap
# ------------------------------------------------------------------


@cli.command(name="bootstrap")
@click.option("--num-keys", "-k", type=int, default=None, help="Number of fernet keys to create.  [default: 3]")
@click.option("--period", "-p", type=int, default=None, help="Period between each key rotation in seconds.  [default: 3600]")
@click.option("--force", is_flag=True, default=False, help="Force bootstrapping over existing keys.")
@click.pass_obj
def bootstrap_command(ctx: CliContext, num_keys: int | None, period: int | None, force: bool) -> None:
    """Generate the first set of fernet keys in every Vault.

    Creates NUM_KEYS keys (at least 3) stored as one secret with a creation
    time, a period and a TTL.
    """
    if num_keys is not None and num_keys < MIN_KEYS:
        _fail(f"Keys number must be at least {MIN_KEYS}")
    if period is not None and period <= 0:
        _fail("Keys period must be greater than 0")
    ctx.overrides["bootstrap"] = {"num_keys": num_keys, "period": period}

    config, stores = _context_stores(ctx)
    try:
        credential_set = CredentialSet.generate(config.bootstrap.period, config.bootstrap.num_keys)

        for store in stores:
            logger.debug("Reading secret in %s", store.name)
            if store.read(config.secret_path) is not None and not force:
                _fail(
                    f"Keys already exist in {store.name}. "
                    "Use the option --force if you want to bootstrap over it"
                )

        write_all(stores, config.secret_path, credential_set, config.ttl)
    except LocksmithError as exc:
        _fail(f"Error bootstrapping keys: {exc}")

    console.print(f"[green]Bootstrap done[/green] ({len(credential_set.keys)} keys in {len(stores)} store(s))")


# ------------------------------------------------------------------
# rotate
# ------------------------------------------------------------------


@cli.command(name="rotate")
@click.option(
    "--period",
    "-p",
    type=int,
    default=0,
    show_default=True,
    help="New period between each key rotation. 0 keeps the current period.",
)
@click.pass_obj
def rotate_command(ctx: CliContext, period: int) -> None:
    """Force a fernet keys rotation."""
    config, stores = _context_stores(ctx)
    try:
        current = read_all(stores, config.secret_path)
        rotated = rotate(current, period=period)
        write_all(stores, config.secret_path, rotated, config.ttl)
    except LocksmithError as exc:
        _fail(f"Cannot rotate keys: {exc}")

    logger.info("Rotation complete")
    console.print(f"[green]Rotation complete[/green] (period {rotated.period}s)")


# ------------------------------------------------------------------
# print
# ------------------------------------------------------------------


@cli.command(name="print")
@click.pass_obj
def print_command(ctx: CliContext) -> None:
    """Print the secret stored in every Vault."""
    config, stores = _context_stores(ctx)
    failed = False
    for store in stores:
        try:
            record = store.read(config.secret_path)
        except LocksmithError as exc:
            console.print(f"[red]Error reading secret in {store.name}:[/red] {escape(str(exc))}")
            failed = True
            continue
        console.print(f"[bold]{store.name}[/bold]:")
        if record is None:
            console.print(f"  (no secret at {config.secret_path})")
            continue
        console.print(json.dumps(record.get("data", record), indent=2, sort_keys=True), markup=False)
    if failed:
        sys.exit(1)


# ------------------------------------------------------------------
# delete
# ------------------------------------------------------------------


@cli.command(name="delete")
@click.option("--force", is_flag=True, default=False, help="Delete without asking for confirmation.")
@click.pass_obj
def delete_command(ctx: CliContext, force: bool) -> None:
    """Delete the fernet keys secret in every Vault."""
    config, stores = _context_stores(ctx)
    if not force and not click.confirm(f"Delete {config.secret_path}", default=False):
        console.print("Doing nothing")
        return

    failed = False
    for store in stores:
        try:
            store.delete(config.secret_path)
        except LocksmithError as exc:
            console.print(f"[red]Error deleting secret in {store.name}:[/red] {escape(str(exc))}")
            failed = True
            continue
        console.print(f"{config.secret_path} deleted in {store.name}")
    if failed:
        sys.exit(1)


# ------------------------------------------------------------------
# watch
# ------------------------------------------------------------------


@cli.command(name="watch")
@click.option("--health/--no-health", default=None, help="Enable the /health endpoint.")
@click.option("--health-period", type=int, default=None, help="Period between each health check in seconds.  [default: 30]")
@click.option("--health-port", type=int, default=None, help="Port of the /health endpoint.  [default: 8080]")
@click.option(
    "--consul-lock/--no-consul-lock",
    default=None,
    help="Acquire a Consul lock so only one instance rotates keys.",
)
@click.option("--consul-lock-key", default=None, help="Key used by the Consul lock.  [default: locks/locksmith/.lock]")
@click.option("--consul-address", default=None, help="Consul address.  [default: http://127.0.0.1:8500]")
@click.option("--consul-proxy", default=None, help="HTTP(S) proxy used to reach Consul.")
@click.option("--consul-token", default=None, help="Consul ACL token.")
@click.option("--consul-token-file", default=None, help="File containing the Consul ACL token.")
@click.option(
    "--lock-timeout",
    type=float,
    default=None,
    help="Give up acquiring the lock after this many seconds (default: wait forever).",
)
@click.pass_obj
def watch_command(
    ctx: CliContext,
    health: bool | None,
    health_period: int | None,
    health_port: int | None,
    consul_lock: bool | None,
    consul_lock_key: str | None,
    consul_address: str | None,
    consul_proxy: str | None,
    consul_token: str | None,
    consul_token_file: str | None,
    lock_timeout: float | None,
) -> None:
    """Watch the keys in every Vault and rotate them when needed."""
    from fernet_locksmith.health.checks import HealthRegistry, lock_probe, store_probe
    from fernet_locksmith.health.server import create_server
    from fernet_locksmith.leader.coordinator import LeaderCoordinator
    from fernet_locksmith.scheduler.scheduler import Scheduler
    from fernet_locksmith.scheduler.tasks import PeriodicTask, TaskGroup

    ctx.overrides.update(
        {
            "health": health,
            "health_period": health_period,
            "health_port": health_port,
            "consul": {
                "lock": consul_lock,
                "lock_key": consul_lock_key,
                "address": consul_address,
                "proxy": consul_proxy,
                "token": consul_token,
                "token_file": consul_token_file,
            },
        }
    )
    config, stores = _context_stores(ctx)

    tasks = TaskGroup()
    for store in stores:
        if store.renew:
            tasks.add(PeriodicTask(f"renew-{store.name}", store.renew_token, interval=config.ttl))

    registry = HealthRegistry(period=config.health_period) if config.health else None
    if registry is not None:
        for store in stores:
            registry.register(f"vaultChecker-{store.name}", store_probe(store, config.secret_path))

    coordinator: LeaderCoordinator | None = None
    lock_service: LockService | None = None
    if config.consul.lock:
        try:
            lock_service = ctx.lock_factory(config)
        except LocksmithError as exc:
            _fail(f"Failed to create consul client: {exc}")
        if registry is not None:
            registry.register("consulChecker", lock_probe(lock_service, config.consul.lock_key))

        def on_lost() -> None:
            scheduler.stop()
            ctx.exit_process(1)

        coordinator = LeaderCoordinator(lock_service, config.consul.lock_key, on_lost=on_lost)

    scheduler = Scheduler(stores, config.secret_path, config.ttl, leader=coordinator)

    stopping = threading.Event()

    def handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal: %s", signal.Signals(signum).name)
        stopping.set()
        scheduler.stop()

    previous_handlers = {
        sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    server = None
    acquired = False
    try:
        tasks.start()
        if registry is not None:
            registry.start()
            server = create_server(registry, host=config.health_address, port=config.health_port)
            server.start()

        if coordinator is not None:
            try:
                coordinator.acquire(timeout=lock_timeout, stop=stopping)
            except LockError as exc:
                if not stopping.is_set():
                    _fail(exc)
                logger.info("Stopped while waiting for lock %s", config.consul.lock_key)
            else:
                acquired = True
                coordinator.start_watch()

        if coordinator is None or acquired:
            try:
                scheduler.run_forever()
            except KeyGenerationError as exc:
                _fail(exc)
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)
        tasks.stop()
        if registry is not None:
            registry.stop()
        if server is not None:
            server.stop()

    if coordinator is not None:
        try:
            if acquired and (coordinator.lost.is_set() or not coordinator.is_leader()):
                _fail(f"Lost lock {config.consul.lock_key}")
            coordinator.shutdown()
        except LockError as exc:
            _fail(f"Error cleaning consul lock: {exc}")
        finally:
            if lock_service is not None:
                lock_service.close()


def main() -> None:
    cli(auto_envvar_prefix="VFL")


if __name__ == "__main__":
    main()
