"""Threaded JSON-over-HTTP listener shared by the webhook ingress and the platform simulator."""

from __future__ import annotations

import json
import socketserver
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Optional

import structlog

Reply = tuple[HTTPStatus, dict[str, Any]]
Route = Callable[[bytes], Reply]


class ThreadedHTTPServer(socketserver.ThreadingMixIn, HTTPServer):
    daemon_threads = True


class JsonListener:
    """Routes ``(method, path)`` to callables that take the raw body and return a JSON reply.

    Unknown routes answer 404; a route that raises answers 500 after the
    traceback is logged. Port ``0`` binds an ephemeral port, see :attr:`address`.
    """

    def __init__(self, host: str, port: int, *, name: str, logger: Optional[Any] = None) -> None:
        self._bind = (host, port)
        self._name = name
        self._routes: dict[tuple[str, str], Route] = {}
        self._httpd: Optional[ThreadedHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self.logger = logger or structlog.get_logger(name)

    def route(self, method: str, path: str, handler: Route) -> None:
        self._routes[(method.upper(), path)] = handler

    @property
    def address(self) -> tuple[str, int]:
        if self._httpd is None:
            return self._bind
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    @property
    def base_url(self) -> str:
        host, port = self.address
        return f"http://{host}:{port}"

    def start(self) -> None:
        if self._httpd is not None:
            return
        self._httpd = ThreadedHTTPServer(self._bind, _handler_for(self))
        self._thread = threading.Thread(target=self._httpd.serve_forever, name=self._name, daemon=True)
        self._thread.start()
        self._ready.set()
        host, port = self.address
        self.logger = self.logger.bind(host=host, port=port)
        self.logger.info("listener_started", listener=self._name, routes=sorted(f"{m} {p}" for m, p in self._routes))

    def stop(self) -> None:
        httpd, self._httpd = self._httpd, None
        if httpd is None:
            return
        try:
            httpd.shutdown()
            httpd.server_close()
        finally:
            if self._thread is not None:
                self._thread.join(timeout=2)
            self._ready.clear()
        self.logger.info("listener_stopped", listener=self._name)

    def wait_until_ready(self, timeout: float = 1.0) -> bool:
        return self._ready.wait(timeout=timeout)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def dispatch(self, method: str, path: str, raw_body: bytes) -> Reply:
        route = self._routes.get((method, path.split("?", 1)[0]))
        if route is None:
            return HTTPStatus.NOT_FOUND, {"error": f"no route for {method} {path}"}
        try:
            return route(raw_body)
        except Exception:
            self.logger.exception("route_failed", method=method, path=path)
            return HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "internal error"}


def _handler_for(listener: JsonListener) -> type[BaseHTTPRequestHandler]:
    class Handler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - keeps stderr clean
            listener.logger.debug("http_trace", client_ip=self.client_address[0], message=format % args)

        def do_GET(self) -> None:  # noqa: N802
            self._serve("GET")

        def do_POST(self) -> None:  # noqa: N802
            self._serve("POST")

        def _serve(self, method: str) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            raw_body = self.rfile.read(length) if length > 0 else b""
            status, payload = listener.dispatch(method, self.path, raw_body)
            body = json.dumps(payload, default=str, ensure_ascii=False).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

    return Handler
