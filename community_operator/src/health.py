from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol

from prometheus_client import generate_latest

from community_operator.src.manager import ManagerState


class ManagerStatus(Protocol):
    ready: threading.Event

    @property
    def state(self) -> ManagerState: ...

    def cache_synced(self) -> bool: ...


def readiness(status: ManagerStatus) -> tuple[bool, str]:
    """Return whether the operator is serving and a ``key=value`` summary.

    Ready means the manager is running with its runnables started and
    every informer has completed its initial list.
    """
    state = status.state
    synced = status.cache_synced()
    ready = state is ManagerState.RUNNING and status.ready.is_set() and synced
    summary = f"ready={str(ready).lower()} state={state} cache_synced={str(synced).lower()}"
    return ready, summary


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    manager_status: ManagerStatus

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            state = self.manager_status.state
            if state is ManagerState.CRASHED:
                self._respond(500, f"state={state}".encode())
            else:
                self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready, summary = readiness(self.manager_status)
            self._respond(200 if ready else 503, summary.encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("community_operator.health").debug(fmt, *args)


def make_health_handler(status: ManagerStatus) -> type[_HealthHandler]:
    """Return a handler class bound to the manager being probed.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        manager_status = status

    return _BoundHealthHandler


def start_health_server(status: ManagerStatus, port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(status))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
