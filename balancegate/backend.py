"""Upstream servers: liveness state and a WSGI reverse proxy to each."""

from __future__ import annotations

import http.client
import logging
import socket
import threading
from typing import Any, Callable, Iterable
from urllib.parse import SplitResult, quote, urlsplit

log = logging.getLogger(__name__)

_HOP_BY_HOP = frozenset({"connection", "proxy-connection", "keep-alive", "proxy-authenticate",
                         "proxy-authorization", "te", "trailer", "transfer-encoding", "upgrade"})

ErrorHandler = Callable[[dict, Callable[..., Any], Exception], Iterable[bytes]]


def _parse_url(url: str | SplitResult) -> SplitResult:
    return url if isinstance(url, SplitResult) else urlsplit(url)


def _request_headers(environ: dict) -> dict[str, str]:
    headers = {key[5:].replace("_", "-").title(): value
               for key, value in environ.items() if key.startswith("HTTP_")}
    for key, name in (("CONTENT_TYPE", "Content-Type"), ("CONTENT_LENGTH", "Content-Length")):
        if environ.get(key):
            headers[name] = environ[key]
    headers = {k: v for k, v in headers.items() if k.lower() not in _HOP_BY_HOP}
    remote = environ.get("REMOTE_ADDR")
    if remote:
        prior = headers.get("X-Forwarded-For")
        headers["X-Forwarded-For"] = f"{prior}, {remote}" if prior else remote
    return headers


class ReverseProxy:
    """WSGI application that forwards every request to one target URL."""

    def __init__(self, target: str | SplitResult, error_handler: ErrorHandler | None = None,
                 timeout: float = 30.0) -> None:
        self.target = _parse_url(target)
        self.error_handler = error_handler
        self.timeout = timeout

    def __call__(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        try:
            status, headers, body = self._forward(environ)
        except (OSError, http.client.HTTPException) as exc:
            if self.error_handler is not None:
                return self.error_handler(environ, start_response, exc)
            log.error("proxy error: %s", exc)
            start_response("502 Bad Gateway", [("Content-Length", "0")])
            return [b""]
        start_response(status, headers)
        return [body]

    def _forward(self, environ: dict) -> tuple[str, list[tuple[str, str]], bytes]:
        request_path = quote(environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", ""),
                             safe="/;:@&=+$,!~*'()-._%") or "/"
        path = self.target.path.rstrip("/") + "/" + request_path.lstrip("/")
        query = "&".join(q for q in (self.target.query, environ.get("QUERY_STRING", "")) if q)
        host = self.target.hostname
        if not host:
            raise ConnectionError(f"invalid proxy target {self.target.geturl()!r}")
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        body = environ["wsgi.input"].read(length) if length > 0 else None

        connection_class = (http.client.HTTPSConnection if self.target.scheme == "https"
                            else http.client.HTTPConnection)
        connection = connection_class(host, self.target.port, timeout=self.timeout)
        try:
            connection.request(environ.get("REQUEST_METHOD", "GET"),
                               f"{path}?{query}" if query else path,
                               body=body, headers=_request_headers(environ))
            response = connection.getresponse()
            content = response.read()
        finally:
            connection.close()
        headers = [(k, v) for k, v in response.getheaders() if k.lower() not in _HOP_BY_HOP]
        return f"{response.status} {response.reason}", headers, content


class Backend:
    """An upstream server with a thread-safe liveness flag."""

    def __init__(self, url: str | SplitResult, alive: bool = True,
                 proxy: ReverseProxy | None = None) -> None:
        self.url = _parse_url(url)
        self._alive = alive
        self._lock = threading.Lock()
        self.proxy = proxy if proxy is not None else ReverseProxy(self.url)

    def is_backend_alive(self) -> None:
        """Open a TCP connection to the backend; raise ConnectionError if it fails."""
        try:
            address = (self.url.hostname, self.url.port)
            if not address[0] or address[1] is None:
                raise ValueError
            socket.create_connection(address, timeout=2.0).close()
        except (OSError, ValueError) as exc:
            raise ConnectionError("site is unavailable") from exc

    def set_alive(self, alive: bool) -> None:
        with self._lock:
            self._alive = alive

    def is_alive(self) -> bool:
        with self._lock:
            return self._alive