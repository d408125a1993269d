"""Per-client token bucket rate limiting and a WSGI middleware applying it."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Iterable

from .config import BucketConfig
from .repository import BucketNotFoundError, BucketRepository

log = logging.getLogger(__name__)

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]


class Limiter:
    """Decides whether a client may make a request, and refills buckets periodically."""

    def __init__(self, repository: BucketRepository, config: BucketConfig, *, start: bool = True) -> None:
        self.repository = repository
        self.config = config
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        if start:
            self.start_refill()

    def start_refill(self) -> None:
        """Refill all buckets every ``config.refill_time`` seconds in a background thread."""
        if self.config.refill_time <= 0:
            raise ValueError("refill interval must be positive")
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("refill already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self._refill_loop, daemon=True)
        self._thread.start()

    def _refill_loop(self) -> None:
        while not self._stop.wait(self.config.refill_time):
            log.debug("Refilling tokens for all buckets")
            try:
                self.repository.refill_all_buckets()
            except Exception as exc:
                log.error("Failed to refill buckets: %s", exc)
        log.info("Stopping token refill")

    def stop(self) -> None:
        """Stop the refill thread."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None

    def __enter__(self) -> "Limiter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def allow(self, client_ip: str) -> bool:
        """Take a token for ``client_ip``; a new client gets a fresh bucket."""
        try:
            bucket = self.repository.bucket(client_ip)
        except BucketNotFoundError:
            log.debug("Creating new bucket for %s", client_ip)
            try:
                self.repository.create_bucket(client_ip, self.config.capacity,
                                              self.config.refill_rate, self.config.tokens - 1)
            except Exception as exc:
                log.error("Failed to create bucket for %s: %s", client_ip, exc)
                return False
            return True
        except Exception as exc:
            log.error("Failed to get bucket for %s: %s", client_ip, exc)
            return False

        if bucket.tokens <= 0:
            log.debug("No tokens available for %s", client_ip)
            return False
        try:
            return bool(self.repository.decrease(client_ip))
        except Exception as exc:
            log.error("Failed to decrease tokens for %s: %s", client_ip, exc)
            return False


def _client_ip(remote_addr: str) -> str | None:
    if remote_addr.startswith("["):
        host, sep, _ = remote_addr[1:].partition("]")
        return host if sep and host else None
    if remote_addr.count(":") == 1:
        return remote_addr.split(":", 1)[0] or None
    return remote_addr or None


def _respond(start_response: Callable[..., Any], status: str, content_type: str, body: bytes) -> list[bytes]:
    headers = [("Content-Type", content_type), ("Content-Length", str(len(body)))]
    if content_type.startswith("text/plain"):
        headers.append(("X-Content-Type-Options", "nosniff"))
    start_response(status, headers)
    return [body]


def rate_limit_middleware(limiter: Limiter, app: WSGIApp) -> WSGIApp:
    """Wrap a WSGI app so that clients over their limit get a 429 JSON response."""

    def middleware(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        remote = environ.get("REMOTE_ADDR", "")
        ip = _client_ip(remote)
        if ip is None:
            log.error("Failed to parse remote address %r", remote)
            return _respond(start_response, "500 Internal Server Error",
                            "text/plain; charset=utf-8", b"Internal server error\n")
        if not limiter.allow(ip):
            payload = json.dumps({"code": "429", "error": "Rate limit exceeded"}, separators=(",", ":"))
            return _respond(start_response, "429 Too Many Requests", "application/json",
                            (payload + "\n").encode("utf-8"))
        return app(environ, start_response)

    return middleware