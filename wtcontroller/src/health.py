from __future__ import annotations

import logging
import sys
import threading
import traceback
from collections.abc import Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol


class ReadinessSource(Protocol):
    name: str
    ready: threading.Event


def format_thread_dump() -> str:
    """Return the current stack of every live thread, one block per thread."""
    names = {thread.ident: thread.name for thread in threading.enumerate()}
    blocks = []
    for ident, frame in sys._current_frames().items():
        stack = "".join(traceback.format_stack(frame))
        blocks.append(f"Thread {names.get(ident, '<unknown>')} ({ident}):\n{stack}")
    return "\n".join(blocks)


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, Prometheus metrics and debug endpoints."""

    controllers: Sequence[ReadinessSource]
    debug_enabled: bool

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            states = [
                f"{controller.name}={'true' if controller.ready.is_set() else 'false'}"
                for controller in self.controllers
            ]
            all_ready = all(controller.ready.is_set() for controller in self.controllers)
            self._respond(200 if all_ready else 503, " ".join(states).encode())
        elif self.path == "/metrics":
            from prometheus_client import generate_latest

            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        elif self.path == "/debug/threads" and self.debug_enabled:
            self._respond(200, format_thread_dump().encode(), "text/plain; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("wtcontroller.health").debug(fmt, *args)


def make_health_handler(
    controllers: Sequence[ReadinessSource], debug_enabled: bool = False
) -> type[_HealthHandler]:
    """Return a handler class bound to the given controllers.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.controllers = tuple(controllers)
    _BoundHealthHandler.debug_enabled = debug_enabled
    return _BoundHealthHandler


def start_health_server(
    controllers: Sequence[ReadinessSource], port: int, debug_enabled: bool = False
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(controllers, debug_enabled=debug_enabled)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
