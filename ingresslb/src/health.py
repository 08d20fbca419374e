from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, metrics, build info and stop endpoints."""

    ready_event: threading.Event
    build_info: Mapping[str, str]
    stop_callback: Callable[[], None] | None

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

    def _stop(self) -> None:
        if self.stop_callback is None:
            self._respond(404)
            return
        self.stop_callback()
        self._respond(200, b"stopping")

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        elif self.path == "/build":
            body = json.dumps(dict(self.build_info), sort_keys=True).encode()
            self._respond(200, body, "application/json")
        elif self.path == "/stop":
            # POST only.
            self._respond(405)
        else:
            self._respond(404)

    def do_POST(self) -> None:
        if self.path == "/stop":
            self._stop()
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("ingresslb.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event,
    build_info: Mapping[str, str] | None = None,
    stop: Callable[[], None] | None = None,
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness event and callbacks.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """
    info = dict(build_info or {})

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        build_info = info
        stop_callback = staticmethod(stop) if stop is not None else None

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    build_info: Mapping[str, str] | None = None,
    stop: Callable[[], None] | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, build_info=build_info, stop=stop)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
