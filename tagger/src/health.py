from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

_TEXT = "text/plain; charset=utf-8"


class _ProbeHandler(BaseHTTPRequestHandler):
    """Kubelet probes and the Prometheus scrape endpoint.

    ``/readyz`` follows the controller group: it turns 200 once every
    informer cache has synced and back to 503 when the controllers stop.
    """

    caches_synced: threading.Event

    def _reply(self, status: int, body: bytes = b"", content_type: str = _TEXT) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _healthz(self) -> None:
        self._reply(200, b"ok")

    def _readyz(self) -> None:
        if self.caches_synced.is_set():
            self._reply(200, b"caches synced")
        else:
            self._reply(503, b"caches not synced")

    def _metrics(self) -> None:
        self._reply(200, generate_latest(), CONTENT_TYPE_LATEST)

    _ROUTES = {"/healthz": _healthz, "/readyz": _readyz, "/metrics": _metrics}

    def do_GET(self) -> None:
        route = self._ROUTES.get(self.path)
        if route is None:
            self._reply(404)
            return
        route(self)

    def log_message(self, fmt: str, *args: Any) -> None:
        # Probes hit every few seconds; keep them out of the info log.
        LOGGER.debug(fmt, *args)


def make_health_handler(ready: threading.Event) -> type[_ProbeHandler]:
    # HTTPServer builds a handler per request with no extra arguments, so the
    # event rides on a subclass.
    return type("_BoundProbeHandler", (_ProbeHandler,), {"caches_synced": ready})


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Serve probes and metrics on *port* from a daemon thread.

    Call ``shutdown()`` on the returned server to stop it.
    """
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
