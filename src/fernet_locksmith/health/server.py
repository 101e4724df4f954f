"""HTTP health endpoint using stdlib http.server.

Routes:
    GET    /health         200 with no failing checks, 503 otherwise

The server runs on a daemon thread next to the scheduler.
"""
from __future__ import annotations

import json
import logging
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from fernet_locksmith.health.checks import HealthRegistry
from fernet_locksmith.health.models import ErrorResponse, HealthResponse

logger = logging.getLogger(__name__)


def handle_health(registry: HealthRegistry) -> tuple[int, dict[str, object]]:
    """Handle GET /health.

    Returns
    -------
    tuple[int, dict[str, object]]
        HTTP status code and response dictionary.
    """
    failing = registry.status()
    if failing:
        return 503, HealthResponse(status="failing", checks=failing).model_dump()
    return 200, HealthResponse().model_dump()


class HealthHandler(BaseHTTPRequestHandler):
    """Request handler serving the health registry bound to the server."""

    server: "HealthServer"

    def log_message(self, format: str, *args: object) -> None:
        """Override to route access logs through the Python logging system."""
        logger.debug(format, *args)

    def do_GET(self) -> None:
        path = urllib.parse.urlparse(self.path).path.rstrip("/")
        if path == "/health":
            status, data = handle_health(self.server.registry)
            self._send_json(status, data)
        else:
            self._send_json(
                404,
                ErrorResponse(error="Not found", detail=f"No route for GET {path}").model_dump(),
            )

    def _send_json(self, status: int, data: dict[str, object]) -> None:
        """Serialize *data* to JSON and send an HTTP response with *status*."""
        body = json.dumps(data, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class HealthServer(ThreadingHTTPServer):
    """ThreadingHTTPServer carrying the registry its handler reports on."""

    daemon_threads = True

    def __init__(self, address: tuple[str, int], registry: HealthRegistry) -> None:
        self.registry = registry
        super().__init__(address, HealthHandler)
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Serve on a daemon thread."""
        self._thread = threading.Thread(target=self.serve_forever, name="health-server", daemon=True)
        self._thread.start()
        host, port = self.server_address[:2]
        logger.info("Health endpoint listening on http://%s:%d/health", host, port)

    def stop(self) -> None:
        self.shutdown()
        self.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5.0)


def create_server(registry: HealthRegistry, host: str = "0.0.0.0", port: int = 8080) -> HealthServer:
    """Create (but do not start) the health HTTP server."""
    return HealthServer((host, port), registry)
