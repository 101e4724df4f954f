"""Tests for fernet_locksmith.cli.main: CLI commands via Click test runner."""
from __future__ import annotations

import json
import signal
import socket
import threading
import time
import urllib.request
from pathlib import Path
from typing import Callable

import pytest
from click.testing import CliRunner

from fernet_locksmith import __version__
from fernet_locksmith.cli.main import CliContext, build_consul_lock_service, cli
from fernet_locksmith.config import ConsulConfig, LocksmithConfig
from fernet_locksmith.errors import LockError
from fernet_locksmith.keys.keyset import CredentialSet
from fernet_locksmith.leader.consul import ConsulLockService
from fernet_locksmith.leader.memory import InMemoryLockService
from fernet_locksmith.stores.memory import InMemoryTrustStore
from fernet_locksmith.stores.sync import read_all

PATH = "secret/fernet-keys"
LOCK_KEY = "locks/locksmith/.lock"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def stores() -> list[InMemoryTrustStore]:
    return [InMemoryTrustStore("vault-a"), InMemoryTrustStore("vault-b")]


@pytest.fixture()
def lock_service() -> InMemoryLockService:
    return InMemoryLockService()


@pytest.fixture()
def exit_calls() -> list[int]:
    return []


@pytest.fixture()
def make_ctx(
    stores: list[InMemoryTrustStore], lock_service: InMemoryLockService, exit_calls: list[int]
) -> Callable[[], CliContext]:
    def factory() -> CliContext:
        return CliContext(
            store_factory=lambda config: list(stores),
            lock_factory=lambda config: lock_service,
            exit_process=exit_calls.append,
        )

    return factory


def _seed(stores: list[InMemoryTrustStore], creation_time: int = 1000, path: str = PATH) -> CredentialSet:
    credential_set = CredentialSet(keys=["k0", "k1", "k2"], creation_time=creation_time, period=3600)
    for store in stores:
        store.write(path, credential_set.to_record(ttl=120))
    return credential_set


def _stop_watch_when(condition: Callable[[], bool]) -> threading.Thread:
    """Call the watch command's SIGTERM handler once *condition* holds."""

    def run() -> None:
        for _ in range(200):
            handler = signal.getsignal(signal.SIGTERM)
            if getattr(handler, "__name__", "") == "handle_signal" and condition():
                handler(signal.SIGTERM, None)  # type: ignore[operator]
                return
            threading.Event().wait(0.05)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


# ---------------------------------------------------------------------------
# Root CLI
# ---------------------------------------------------------------------------


class TestRootCLI:
    def test_help_exits_zero(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("bootstrap", "rotate", "print", "delete", "watch", "version"):
            assert command in result.output

    def test_version_command(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["version"])
        assert result.exit_code == 0
        assert "fernet-locksmith" in result.output
        assert __version__ in result.output

    def test_version_option(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_vault_token(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("VAULT_TOKEN", raising=False)
        result = runner.invoke(cli, ["print"], obj=CliContext())
        assert result.exit_code == 1
        assert "No vault token" in result.output

    def test_invalid_config_file(self, runner: CliRunner, tmp_path: Path, make_ctx: Callable[[], CliContext]) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text("{broken")
        result = runner.invoke(cli, ["--config-file", str(config_file), "print"], obj=make_ctx())
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_options_reach_config(self, runner: CliRunner, stores: list[InMemoryTrustStore]) -> None:
        seen: list[LocksmithConfig] = []

        def factory(config: LocksmithConfig) -> list[InMemoryTrustStore]:
            seen.append(config)
            return stores

        ctx = CliContext(store_factory=factory)
        result = runner.invoke(
            cli,
            ["--vault-address", "https://vault-a:8200", "--secret-path", "secret/custom", "--ttl", "30", "print"],
            obj=ctx,
        )
        assert result.exit_code == 0
        assert seen[0].primary_vault.address == "https://vault-a:8200"
        assert seen[0].secret_path == "secret/custom"
        assert seen[0].ttl == 30

    def test_environment_prefix(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        result = runner.invoke(
            cli,
            ["bootstrap"],
            obj=make_ctx(),
            auto_envvar_prefix="VFL",
            env={"VFL_SECRET_PATH": "secret/from-env"},
        )
        assert result.exit_code == 0
        assert stores[0].read("secret/from-env") is not None


# ---------------------------------------------------------------------------
# bootstrap
# ---------------------------------------------------------------------------


class TestBootstrapCommand:
    def test_bootstrap_writes_every_store(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        result = runner.invoke(cli, ["bootstrap"], obj=make_ctx())
        assert result.exit_code == 0
        assert "Bootstrap done" in result.output

        credential_set = read_all(stores, PATH)
        assert len(credential_set.keys) == 3
        assert credential_set.period == 3600
        assert stores[0].read(PATH)["ttl"] == "120s"  # type: ignore[index]

    def test_bootstrap_custom_keys_and_period(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        result = runner.invoke(cli, ["bootstrap", "-k", "5", "-p", "60"], obj=make_ctx())
        assert result.exit_code == 0
        credential_set = read_all(stores, PATH)
        assert len(credential_set.keys) == 5
        assert credential_set.period == 60

    def test_too_few_keys(self, runner: CliRunner, make_ctx: Callable[[], CliContext]) -> None:
        result = runner.invoke(cli, ["bootstrap", "--num-keys", "2"], obj=make_ctx())
        assert result.exit_code == 1
        assert "at least 3" in result.output

    def test_non_positive_period(self, runner: CliRunner, make_ctx: Callable[[], CliContext]) -> None:
        result = runner.invoke(cli, ["bootstrap", "--period", "0"], obj=make_ctx())
        assert result.exit_code == 1
        assert "greater than 0" in result.output

    def test_refuses_existing_keys(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores[1:])
        result = runner.invoke(cli, ["bootstrap"], obj=make_ctx())
        assert result.exit_code == 1
        assert "already exist" in result.output
        assert stores[0].read(PATH) is None

    def test_force_overwrites(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        original = _seed(stores)
        result = runner.invoke(cli, ["bootstrap", "--force"], obj=make_ctx())
        assert result.exit_code == 0
        assert not read_all(stores, PATH).same_as(original)

    def test_write_failure(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        stores[1].fail_writes = True
        result = runner.invoke(cli, ["bootstrap"], obj=make_ctx())
        assert result.exit_code == 1
        assert "Error bootstrapping keys" in result.output


# ---------------------------------------------------------------------------
# rotate
# ---------------------------------------------------------------------------


class TestRotateCommand:
    def test_forced_rotation(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores, creation_time=int(1e9))
        result = runner.invoke(cli, ["rotate"], obj=make_ctx())
        assert result.exit_code == 0
        assert "Rotation complete" in result.output

        rotated = read_all(stores, PATH)
        assert rotated.keys[1:] == ["k2", "k0"]
        assert rotated.period == 3600

    def test_period_override(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores)
        result = runner.invoke(cli, ["rotate", "--period", "60"], obj=make_ctx())
        assert result.exit_code == 0
        assert read_all(stores, PATH).period == 60

    def test_divergent_stores(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores[:1])
        _seed(stores[1:], creation_time=2000)
        result = runner.invoke(cli, ["rotate"], obj=make_ctx())
        assert result.exit_code == 1
        assert "Cannot rotate keys" in result.output
        assert all(store.write_count == 1 for store in stores)

    def test_missing_keys(self, runner: CliRunner, make_ctx: Callable[[], CliContext]) -> None:
        result = runner.invoke(cli, ["rotate"], obj=make_ctx())
        assert result.exit_code == 1
        assert "No secret" in result.output


# ---------------------------------------------------------------------------
# print
# ---------------------------------------------------------------------------


class TestPrintCommand:
    def test_prints_each_store(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores)
        result = runner.invoke(cli, ["print"], obj=make_ctx())
        assert result.exit_code == 0
        assert "vault-a" in result.output
        assert "vault-b" in result.output
        assert '"creation_time": 1000' in result.output
        assert '"k1"' in result.output

    def test_missing_secret(self, runner: CliRunner, make_ctx: Callable[[], CliContext]) -> None:
        result = runner.invoke(cli, ["print"], obj=make_ctx())
        assert result.exit_code == 0
        assert "no secret" in result.output

    def test_unreachable_store(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores)
        stores[0].fail_reads = True
        result = runner.invoke(cli, ["print"], obj=make_ctx())
        assert result.exit_code == 1
        assert "Error reading secret" in result.output
        assert '"k1"' in result.output


# ---------------------------------------------------------------------------
# delete
# ---------------------------------------------------------------------------


class TestDeleteCommand:
    def test_force_delete(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores)
        result = runner.invoke(cli, ["delete", "--force"], obj=make_ctx())
        assert result.exit_code == 0
        assert all(store.read(PATH) is None for store in stores)

    def test_confirmation_declined(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores)
        result = runner.invoke(cli, ["delete"], obj=make_ctx(), input="n\n")
        assert result.exit_code == 0
        assert "Doing nothing" in result.output
        assert all(store.read(PATH) is not None for store in stores)

    def test_confirmation_accepted(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores)
        result = runner.invoke(cli, ["delete"], obj=make_ctx(), input="y\n")
        assert result.exit_code == 0
        assert all(store.read(PATH) is None for store in stores)


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


class TestEndToEnd:
    def test_bootstrap_rotate_print(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        assert runner.invoke(cli, ["bootstrap"], obj=make_ctx()).exit_code == 0
        bootstrapped = read_all(stores, PATH)

        assert runner.invoke(cli, ["rotate"], obj=make_ctx()).exit_code == 0
        rotated = read_all(stores, PATH)
        assert rotated.primary == bootstrapped.staging
        assert rotated.creation_time > bootstrapped.creation_time

        result = runner.invoke(cli, ["print"], obj=make_ctx())
        assert result.exit_code == 0
        assert rotated.staging in result.output
        assert bootstrapped.retiring[0] not in result.output


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------


class TestWatchCommand:
    def test_rotates_due_keys_and_stops_on_signal(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores)
        stopper = _stop_watch_when(lambda: all(store.write_count == 2 for store in stores))

        result = runner.invoke(cli, ["--ttl", "1", "watch"], obj=make_ctx())
        stopper.join(5)

        assert result.exit_code == 0, result.output
        rotated = read_all(stores, PATH)
        assert rotated.keys[1:] == ["k2", "k0"]
        assert getattr(signal.getsignal(signal.SIGTERM), "__name__", "") != "handle_signal"

    def test_consul_lock_released_and_cleaned_on_shutdown(
        self,
        runner: CliRunner,
        stores: list[InMemoryTrustStore],
        lock_service: InMemoryLockService,
        exit_calls: list[int],
        make_ctx: Callable[[], CliContext],
    ) -> None:
        _seed(stores, creation_time=int(1e10))
        stopper = _stop_watch_when(lambda: lock_service.holder(LOCK_KEY) is not None)

        result = runner.invoke(cli, ["--ttl", "1", "watch", "--consul-lock"], obj=make_ctx())
        stopper.join(5)

        assert result.exit_code == 0, result.output
        assert lock_service.holder(LOCK_KEY) is None
        assert not lock_service.exists(LOCK_KEY)
        assert exit_calls == []

    def test_lock_loss_exits_without_writing(
        self,
        runner: CliRunner,
        stores: list[InMemoryTrustStore],
        lock_service: InMemoryLockService,
        exit_calls: list[int],
        make_ctx: Callable[[], CliContext],
    ) -> None:
        _seed(stores, creation_time=int(1e10))

        def revoke_when_held() -> None:
            for _ in range(200):
                if lock_service.holder(LOCK_KEY) is not None:
                    lock_service.revoke(LOCK_KEY)
                    return
                threading.Event().wait(0.05)

        revoker = threading.Thread(target=revoke_when_held, daemon=True)
        revoker.start()

        result = runner.invoke(cli, ["--ttl", "1", "watch", "--consul-lock"], obj=make_ctx())
        revoker.join(5)

        assert result.exit_code == 1
        assert "Lost lock" in result.output
        assert all(store.write_count == 1 for store in stores)

    def test_lock_timeout(
        self,
        runner: CliRunner,
        stores: list[InMemoryTrustStore],
        lock_service: InMemoryLockService,
        make_ctx: Callable[[], CliContext],
    ) -> None:
        _seed(stores)
        lock_service.acquire(LOCK_KEY)
        result = runner.invoke(
            cli, ["watch", "--consul-lock", "--lock-timeout", "0.1"], obj=make_ctx()
        )
        assert result.exit_code == 1
        assert "timed out" in result.output
        assert all(store.write_count == 1 for store in stores)

    def test_signal_while_waiting_for_lock_exits_without_taking_it(
        self,
        runner: CliRunner,
        stores: list[InMemoryTrustStore],
        lock_service: InMemoryLockService,
        exit_calls: list[int],
        make_ctx: Callable[[], CliContext],
    ) -> None:
        _seed(stores)
        other = lock_service.acquire(LOCK_KEY)
        stopper = _stop_watch_when(lambda: True)

        started = time.monotonic()
        result = runner.invoke(cli, ["--ttl", "1", "watch", "--consul-lock"], obj=make_ctx())
        stopper.join(5)

        assert result.exit_code == 0, result.output
        assert time.monotonic() - started < 3
        assert lock_service.holder(LOCK_KEY) is other
        assert all(store.write_count == 1 for store in stores)
        assert exit_calls == []

    def test_consul_proxy_reaches_config(self, runner: CliRunner, stores: list[InMemoryTrustStore]) -> None:
        seen: list[LocksmithConfig] = []

        def factory(config: LocksmithConfig) -> InMemoryLockService:
            seen.append(config)
            raise LockError("consul", "connection refused")

        ctx = CliContext(store_factory=lambda config: list(stores), lock_factory=factory)
        result = runner.invoke(
            cli, ["watch", "--consul-lock", "--consul-proxy", "http://proxy.internal:3128"], obj=ctx
        )
        assert result.exit_code == 1
        assert seen[0].consul.proxy == "http://proxy.internal:3128"

    def test_lock_service_unavailable(self, runner: CliRunner, stores: list[InMemoryTrustStore]) -> None:
        def broken(config: LocksmithConfig) -> InMemoryLockService:
            raise LockError("consul", "connection refused")

        ctx = CliContext(store_factory=lambda config: list(stores), lock_factory=broken)
        result = runner.invoke(cli, ["watch", "--consul-lock"], obj=ctx)
        assert result.exit_code == 1
        assert "Failed to create consul client" in result.output

    def test_health_endpoint_served_while_watching(
        self, runner: CliRunner, stores: list[InMemoryTrustStore], make_ctx: Callable[[], CliContext]
    ) -> None:
        _seed(stores, creation_time=int(1e10))
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        responses: list[dict] = []

        def healthy() -> bool:
            try:
                with urllib.request.urlopen(f"http://127.0.0.1:{port}/health", timeout=1) as response:
                    responses.append(json.loads(response.read()))
                    return True
            except OSError:
                return False

        stopper = _stop_watch_when(healthy)
        result = runner.invoke(
            cli,
            ["--ttl", "1", "watch", "--health", "--health-port", str(port), "--health-period", "1"],
            obj=make_ctx(),
        )
        stopper.join(5)

        assert result.exit_code == 0, result.output
        assert responses[0]["status"] == "ok"


# ---------------------------------------------------------------------------
# Consul lock service factory
# ---------------------------------------------------------------------------


class TestBuildConsulLockService:
    def test_builds_real_client_with_proxy_and_timeout(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(ConsulLockService, "ping", lambda self: None)
        config = LocksmithConfig(
            request_timeout=45,
            consul=ConsulConfig(lock=True, address="http://127.0.0.1:8500", token="t", proxy="http://proxy:3128"),
        )
        service = build_consul_lock_service(config)
        assert isinstance(service, ConsulLockService)
        session = service.client.http.session
        assert session.timeout == 45
        assert session.proxies["https"] == "http://proxy:3128"

    def test_unreachable_consul_is_a_lock_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("HTTP_PROXY", "http_proxy", "HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy"):
            monkeypatch.delenv(name, raising=False)
        config = LocksmithConfig(consul=ConsulConfig(lock=True, address="http://127.0.0.1:1"))
        with pytest.raises(LockError, match="Error communicating with consul"):
            build_consul_lock_service(config)

    def test_token_file_read(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CONSUL_HTTP_TOKEN", raising=False)
        monkeypatch.setattr(ConsulLockService, "ping", lambda self: None)
        token_file = tmp_path / "consul-token"
        token_file.write_text("from-file\n")
        config = LocksmithConfig(consul=ConsulConfig(lock=True, token_file=str(token_file)))
        service = build_consul_lock_service(config)
        assert service.client.token == "from-file"
