"""Consul-backed lock service.

A lock is a KV entry acquired through a Consul session, following the same
protocol as the Consul Go API's ``Lock``:

* a session with a TTL and ``release`` behaviour is created per acquisition
  and renewed every TTL/2 from that moment on, including while waiting;
* the entry is taken with ``PUT ?acquire=<session>`` carrying the lock flag;
* while another session holds the entry, blocking queries wait for a change;
* once held, a monitor thread watches the entry with blocking queries. A
  failed renewal, a changed ``Session`` field, or a failed query marks the
  lock as lost.
"""
from __future__ import annotations

import logging
import os
import socket
import threading
import time
import urllib.parse
from typing import Any, Optional

import consul
import requests

from fernet_locksmith.errors import ConfigError, LockError
from fernet_locksmith.leader.base import LockHandle, LockService
from fernet_locksmith.scheduler.tasks import PeriodicTask

logger = logging.getLogger(__name__)

# Flag value the Consul Go API sets on lock entries.
LOCK_FLAG_VALUE = 0x2DDCCBC058A50C18

DEFAULT_SESSION_TTL = 15
DEFAULT_LOCK_WAIT = 15
DEFAULT_RETRY_WAIT = 5.0
MONITOR_JOIN_TIMEOUT = 2.0


def parse_address(address: str) -> tuple[str, int, str]:
    """Split a Consul URL into (host, port, scheme).

    Raises
    ------
    ConfigError
        If *address* is empty or has no host.
    """
    if not address:
        raise ConfigError("Error creating consul client, consul address is empty")
    if "://" not in address:
        address = f"http://{address}"
    parsed = urllib.parse.urlparse(address)
    if not parsed.hostname:
        raise ConfigError(f"Invalid consul address {address!r}")
    scheme = parsed.scheme or "http"
    port = parsed.port or (443 if scheme == "https" else 8500)
    return parsed.hostname, port, scheme


class ConsulSession(requests.Session):
    """requests session applying a default timeout and an optional proxy.

    py-consul issues every request through ``client.http.session`` without a
    timeout, so the default is filled in here.
    """

    def __init__(self, timeout: float, proxy: str = "") -> None:
        super().__init__()
        self.timeout = timeout
        if proxy:
            self.proxies.update({"http": proxy, "https": proxy})

    def request(self, method: str, url: str, *args: Any, **kwargs: Any) -> requests.Response:  # type: ignore[override]
        if kwargs.get("timeout") is None:
            kwargs["timeout"] = self.timeout
        return super().request(method, url, *args, **kwargs)


class ConsulLockService(LockService):
    """Lock service using Consul sessions and KV.

    Parameters
    ----------
    address:
        Consul URL, e.g. ``http://127.0.0.1:8500``.
    token:
        ACL token.
    timeout:
        Per-request timeout in seconds. Raised to outlast a blocking query
        when it is shorter than ``lock_wait``.
    proxy:
        Optional HTTP(S) proxy URL.
    session_ttl:
        Session TTL in seconds. Renewed every ``session_ttl / 2``.
    lock_wait:
        Blocking-query wait in seconds while another session holds the lock.
    client:
        Pre-built ``consul.Consul`` client, mostly for tests.
    """

    _ERRORS = (consul.ConsulException, requests.RequestException)

    def __init__(
        self,
        address: str = "http://127.0.0.1:8500",
        token: str = "",
        timeout: float = 30,
        session_ttl: int = DEFAULT_SESSION_TTL,
        lock_wait: int = DEFAULT_LOCK_WAIT,
        retry_wait: float = DEFAULT_RETRY_WAIT,
        proxy: str = "",
        client: consul.Consul | None = None,
    ) -> None:
        if client is None:
            host, port, scheme = parse_address(address)
            client = consul.Consul(host=host, port=port, token=token or None, scheme=scheme)
            # Consul adds up to wait/16 of jitter to blocking queries
            request_timeout = max(timeout, lock_wait + lock_wait / 16 + 1)
            client.http.session = ConsulSession(request_timeout, proxy=proxy)
        self._client = client
        self._address = address
        self._session_ttl = session_ttl
        self._lock_wait = lock_wait
        self._retry_wait = retry_wait
        self._renewers: dict[str, PeriodicTask] = {}
        self._monitors: dict[str, tuple[threading.Thread, threading.Event]] = {}

    @property
    def client(self) -> consul.Consul:
        return self._client

    def ping(self) -> None:
        """Check the Consul server answers and has a leader.

        Raises
        ------
        LockError
            If Consul cannot be reached.
        """
        try:
            self._client.status.leader()
        except self._ERRORS as exc:
            raise LockError(self._address, f"Error communicating with consul server {self._address}: {exc}") from exc

    # ------------------------------------------------------------------
    # LockService interface
    # ------------------------------------------------------------------

    def acquire(
        self,
        key: str,
        timeout: float | None = None,
        stop: Optional[threading.Event] = None,
    ) -> LockHandle:
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            session_id = self._client.session.create(
                name=f"lock:{key}",
                behavior="release",
                ttl=self._session_ttl,
            )
        except self._ERRORS as exc:
            raise LockError(key, f"Failed to create session: {exc}") from exc

        handle = LockHandle(key=key, holder_id=session_id)
        self._start_renewer(handle)
        try:
            self._wait_and_take(handle, deadline, timeout, stop)
        except LockError:
            self._stop_renewer(handle)
            self._destroy_session(session_id)
            raise

        self._start_monitor(handle)
        logger.info("Lock %s acquired with session %s", key, session_id)
        return handle

    def release(self, handle: LockHandle) -> None:
        was_lost = handle.lost.is_set()
        handle.released = True
        self._stop_renewer(handle)
        monitor = self._signal_monitor(handle)
        try:
            if not was_lost:
                released = self._client.kv.put(
                    handle.key, self._holder_value(), release=handle.holder_id, flags=LOCK_FLAG_VALUE
                )
                if not released:
                    logger.warning("Lock %s was not held by session %s at release", handle.key, handle.holder_id)
        except self._ERRORS as exc:
            raise LockError(handle.key, f"Lock release failed: {exc}") from exc
        finally:
            self._destroy_session(handle.holder_id)
            self._join_monitor(monitor)

    def destroy(self, handle: LockHandle) -> None:
        try:
            _, data = self._client.kv.get(handle.key)
            if data is None:
                return
            if data.get("Flags") != LOCK_FLAG_VALUE:
                raise LockError(handle.key, "Existing key does not match lock use")
            if data.get("Session"):
                logger.info("Cleanup of %s aborted, lock in use", handle.key)
                return
            deleted = self._client.kv.delete(handle.key, cas=data["ModifyIndex"])
        except self._ERRORS as exc:
            raise LockError(handle.key, f"Lock cleanup failed: {exc}") from exc
        if not deleted:
            logger.info("Cleanup of %s aborted, lock entry changed concurrently", handle.key)

    def exists(self, key: str) -> bool:
        try:
            _, data = self._client.kv.get(key)
        except self._ERRORS as exc:
            raise LockError(key, f"Cannot access consul lock: {exc}") from exc
        return data is not None

    def close(self) -> None:
        for task in list(self._renewers.values()):
            task.stop()
        self._renewers.clear()
        monitors = list(self._monitors.values())
        self._monitors.clear()
        for _, stopped in monitors:
            stopped.set()
        for monitor in monitors:
            self._join_monitor(monitor)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _holder_value(self) -> bytes:
        return f"{socket.gethostname()}:{os.getpid()}".encode("utf-8")

    def _wait_and_take(
        self,
        handle: LockHandle,
        deadline: float | None,
        timeout: float | None,
        stop: Optional[threading.Event],
    ) -> None:
        key, session_id = handle.key, handle.holder_id
        index = None
        while True:
            if stop is not None and stop.is_set():
                raise LockError(key, "Stopped while waiting for lock")
            if handle.lost.is_set():
                raise LockError(key, f"Session {session_id} expired while waiting for lock")
            if deadline is not None and time.monotonic() >= deadline:
                raise LockError(key, f"Timed out after {timeout}s waiting for lock")
            try:
                index, data = self._client.kv.get(key, index=index, wait=f"{self._lock_wait}s")
                if data is not None and data.get("Flags") != LOCK_FLAG_VALUE:
                    raise LockError(key, "Existing key does not match lock use")
                if data is not None and data.get("Session"):
                    if data["Session"] == session_id:
                        return
                    logger.debug("Lock %s held by session %s, waiting", key, data["Session"])
                    continue
                acquired = self._client.kv.put(
                    key, self._holder_value(), acquire=session_id, flags=LOCK_FLAG_VALUE
                )
            except self._ERRORS as exc:
                raise LockError(key, f"Failed acquiring lock: {exc}") from exc
            if acquired:
                return
            # lock-delay after a release can reject the put; retry shortly
            index = None
            if stop is not None:
                stop.wait(self._retry_wait)
            else:
                time.sleep(self._retry_wait)

    def _start_renewer(self, handle: LockHandle) -> None:
        def renew() -> None:
            if handle.lost.is_set():
                return
            try:
                session = self._client.session.renew(handle.holder_id)
            except self._ERRORS as exc:
                logger.error("Failed to renew session %s: %s", handle.holder_id, exc)
                handle.lost.set()
                return
            if session is None:
                logger.error("Session %s for lock %s no longer exists", handle.holder_id, handle.key)
                handle.lost.set()

        renewer = PeriodicTask(f"consul-session-{handle.key}", renew, interval=self._session_ttl / 2)
        self._renewers[handle.holder_id] = renewer
        renewer.start()

    def _stop_renewer(self, handle: LockHandle) -> None:
        renewer = self._renewers.pop(handle.holder_id, None)
        if renewer is not None:
            renewer.stop()

    def _start_monitor(self, handle: LockHandle) -> None:
        stopped = threading.Event()
        monitor = threading.Thread(
            target=self._monitor, args=(handle, stopped), name=f"consul-monitor-{handle.key}", daemon=True
        )
        self._monitors[handle.holder_id] = (monitor, stopped)
        monitor.start()

    def _signal_monitor(self, handle: LockHandle) -> tuple[threading.Thread, threading.Event] | None:
        monitor = self._monitors.pop(handle.holder_id, None)
        if monitor is not None:
            monitor[1].set()
        return monitor

    @staticmethod
    def _join_monitor(monitor: tuple[threading.Thread, threading.Event] | None) -> None:
        if monitor is None:
            return
        thread = monitor[0]
        if thread is not threading.current_thread():
            thread.join(timeout=MONITOR_JOIN_TIMEOUT)

    def _monitor(self, handle: LockHandle, stopped: threading.Event) -> None:
        index = None
        while not stopped.is_set() and not handle.lost.is_set():
            try:
                index, data = self._client.kv.get(handle.key, index=index, wait=f"{self._lock_wait}s")
            except self._ERRORS as exc:
                if stopped.is_set():
                    return
                logger.error("Lost contact with consul while watching %s: %s", handle.key, exc)
                handle.lost.set()
                return
            if stopped.is_set():
                return
            if data is None or data.get("Session") != handle.holder_id:
                logger.error("Lock %s is no longer held by session %s", handle.key, handle.holder_id)
                handle.lost.set()
                return

    def _destroy_session(self, session_id: str) -> None:
        try:
            self._client.session.destroy(session_id)
        except self._ERRORS as exc:
            logger.warning("Failed to destroy session %s: %s", session_id, exc)
