"""
Metrics endpoint — serves the prometheus_client exposition app over HTTP GET,
with a /healthz liveness check alongside it.

Runs a threaded wsgiref server on a daemon thread so scrapes are answered
while a scan or renewal is in progress.
"""
from __future__ import annotations

import logging
import threading
from socketserver import ThreadingMixIn
from typing import Callable, Iterable, Optional
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import make_wsgi_app

from monitor.metrics import MetricsRegistry

logger = logging.getLogger(__name__)


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


class MetricsServer:
    def __init__(
        self,
        registry: MetricsRegistry,
        host: str = "0.0.0.0",
        port: int = 9469,
        path: str = "/metrics",
    ) -> None:
        self.registry = registry
        self._metrics_app = make_wsgi_app(registry.registry)
        self.host = host
        self.path = path
        self._requested_port = port
        self._httpd: Optional[WSGIServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self._httpd is None:
            return self._requested_port
        return self._httpd.server_port

    def app(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        method = environ.get("REQUEST_METHOD", "GET")
        path = environ.get("PATH_INFO", "/")

        if path not in (self.path, "/healthz"):
            return _respond(start_response, "404 Not Found", b"not found\n")
        if method not in ("GET", "HEAD"):
            return _respond(start_response, "405 Method Not Allowed", b"method not allowed\n",
                            extra=[("Allow", "GET, HEAD")])
        if path == "/healthz":
            return _respond(start_response, "200 OK", b"ok\n")

        # The exposition app renders the whole body before calling start_response.
        try:
            body = self._metrics_app(environ, start_response)
        except Exception:
            logger.exception("Failed to render metrics")
            return _respond(start_response, "500 Internal Server Error", b"error\n")
        if method == "HEAD":
            return [b""]
        return body

    def start(self) -> None:
        if self._httpd is not None:
            return
        self._httpd = make_server(
            self.host, self._requested_port, self.app,
            server_class=_ThreadingWSGIServer, handler_class=_QuietHandler,
        )
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="metrics-http", daemon=True
        )
        self._thread.start()
        logger.info("Serving metrics on http://%s:%d%s", self.host, self.port, self.path)

    def stop(self) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._httpd = None
        self._thread = None
        logger.info("Metrics server stopped")


def _respond(
    start_response: Callable,
    status: str,
    body: bytes,
    content_type: str = "text/plain; charset=utf-8",
    extra: Optional[list[tuple[str, str]]] = None,
) -> list[bytes]:
    headers = [("Content-Type", content_type), ("Content-Length", str(len(body)))]
    start_response(status, headers + (extra or []))
    return [body]
