"""Round-robin load balancer over reverse-proxied backends, as a WSGI app."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable
from urllib.parse import urlsplit

from .backend import Backend, ReverseProxy
from .config import RetryConfig
from .retry import with_retry

log = logging.getLogger(__name__)


def _plain_error(start_response: Callable[..., Any], status: str, message: str) -> list[bytes]:
    body = f"{message}\n".encode("utf-8")
    start_response(
        status,
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
        ],
    )
    return [body]


class RoundRobinBalancer:
    """Sends each request to the next live backend in turn."""

    def __init__(self, retry_config: RetryConfig | None = None, urls: Iterable[str] = ()) -> None:
        self.retry_config = retry_config if retry_config is not None else RetryConfig()
        self._backends: list[Backend] = []
        self._current = 0
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._health_thread: threading.Thread | None = None
        for url in urls:
            self.register_backend(url)

    @property
    def backends(self) -> tuple[Backend, ...]:
        with self._lock:
            return tuple(self._backends)

    def register_backend(self, url: str) -> Backend | None:
        """Add a backend for ``url``; an unparsable URL is logged and skipped."""
        try:
            target = urlsplit(url)
            target.port
        except ValueError as exc:
            log.error("Failed to parse backend URL %r: %s", url, exc)
            return None
        proxy = ReverseProxy(target)
        backend = Backend(target, True, proxy)
        proxy.error_handler = lambda environ, start_response, error: self.handle_proxy_error(
            environ, start_response, error, backend
        )
        with self._lock:
            self._backends.append(backend)
        return backend

    def remove_all_backends(self) -> None:
        with self._lock:
            self._backends = []
            self._current = 0

    def next_peer(self) -> Backend | None:
        """Advance the rotation and return the first live backend from there."""
        with self._lock:
            backends = self._backends
            if not backends:
                return None
            self._current += 1
            count = len(backends)
            start = self._current % count
            for offset, candidate in enumerate(backends[start:] + backends[:start]):
                if candidate.is_alive():
                    if offset:
                        self._current = (start + offset) % count
                    return candidate
        return None

    def __call__(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        with self._lock:
            empty = not self._backends
        if empty:
            return _plain_error(start_response, "503 Service Unavailable", "No backends available")
        peer = self.next_peer()
        if peer is not None:
            return peer.proxy(environ, start_response)
        log.warning("All backends are unavailable")
        return _plain_error(start_response, "503 Service Unavailable", "All backends are unavailable")

    def handle_proxy_error(
        self,
        environ: dict,
        start_response: Callable[..., Any],
        error: Exception,
        backend: Backend,
    ) -> Iterable[bytes]:
        """Mark ``backend`` down, try to restore it in the background and retry elsewhere."""
        log.error("Error redirecting request to backend %s: %s", backend.url.geturl(), error)
        backend.set_alive(False)
        threading.Thread(
            target=self._restore, args=(backend,), name="restore-backend", daemon=True
        ).start()

        alternative = self.next_peer()
        if alternative is not None and alternative is not backend:
            log.info("Switched to another backend %s", alternative.url.geturl())
            return alternative.proxy(environ, start_response)
        log.warning("No other backends available")
        return _plain_error(start_response, "503 Service Unavailable", "No other backends available")

    def _restore(self, backend: Backend) -> None:
        name = backend.url.geturl()
        log.info("Attempting to restore connection to backend %s", name)
        try:
            with_retry(self.retry_config, backend.is_backend_alive)
        except Exception as exc:
            log.error("Failed to restore connection to backend %s: %s", name, exc)
            return
        log.info("Connection to backend restored %s", name)
        backend.set_alive(True)

    def check_health(self) -> None:
        """Probe every backend once and update its liveness."""
        log.debug("Starting health check...")
        for backend in self.backends:
            try:
                backend.is_backend_alive()
            except ConnectionError as exc:
                log.error("Backend %s is unavailable: %s", backend.url.geturl(), exc)
                backend.set_alive(False)
            else:
                backend.set_alive(True)
        log.debug("Health check completed")

    def start_health_check(self, interval: float) -> None:
        """Run ``check_health`` every ``interval`` seconds in a background thread."""
        if interval <= 0:
            raise ValueError("health check interval must be positive")
        if self._health_thread is not None and self._health_thread.is_alive():
            raise RuntimeError("health check already running")
        self._stop.clear()
        self._health_thread = threading.Thread(
            target=self._health_loop, args=(interval,), name="health-check", daemon=True
        )
        self._health_thread.start()

    def _health_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            self.check_health()

    def stop(self) -> None:
        """Stop the health check thread."""
        self._stop.set()
        thread = self._health_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._health_thread = None

    def __enter__(self) -> "RoundRobinBalancer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()