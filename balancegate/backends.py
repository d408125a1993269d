"""Demo backend servers, one per configured backend URL."""

from __future__ import annotations

import argparse
import logging
import signal
import socketserver
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Sequence
from wsgiref.simple_server import WSGIServer, make_server

import yaml

from .config import BackendConfig, load_config

log = logging.getLogger(__name__)


class _ThreadingWSGIServer(socketserver.ThreadingMixIn, WSGIServer):
    daemon_threads = True


def make_backend_app(url: str) -> Callable[[dict, Callable[..., Any]], Iterable[bytes]]:
    """Return a WSGI app that greets every request with the backend's URL."""
    body = f"Hello, you are on backend {url}".encode("utf-8")

    def app(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        start_response("200 OK", [("Content-Type", "text/plain; charset=utf-8"),
                                  ("Content-Length", str(len(body)))])
        return [body]

    return app


def backend_address(url: str) -> tuple[str, int]:
    """Turn a backend URL such as ``http://localhost:8081`` into a listen address."""
    addr = url.removeprefix("http://")
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if not port.isdigit():
        raise ValueError(f"invalid port in address {addr!r}")
    return host.removeprefix("[").removesuffix("]"), int(port)


@contextmanager
def run_backends(backends: Sequence[BackendConfig]) -> Iterator[list[WSGIServer]]:
    """Serve every backend in its own thread while the context is open.

    A backend that cannot listen is logged and left out.
    """
    running: list[tuple[WSGIServer, threading.Thread]] = []
    try:
        for index, backend in enumerate(backends):
            try:
                host, port = backend_address(backend.url)
                server = make_server(host, port, make_backend_app(backend.url),
                                     server_class=_ThreadingWSGIServer)
            except (OSError, ValueError) as exc:
                log.error("ListenAndServe error for %s: %s", backend.url, exc)
                continue
            log.info("Backend started: url=%s index=%d", backend.url, index)
            thread = threading.Thread(target=server.serve_forever, daemon=True)
            thread.start()
            running.append((server, thread))
        yield [server for server, _ in running]
    finally:
        log.info("Shutting down servers...")
        for server, thread in running:
            server.shutdown()
            server.server_close()
            thread.join()
        log.info("All servers stopped.")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="balancegate-backends", description="Run demo backends.")
    parser.add_argument("--config", default="configs/config.yaml", help="configuration file")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise SystemExit(str(exc)) from exc

    stop = threading.Event()
    previous = {sig: signal.signal(sig, lambda *_: stop.set()) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        with run_backends(config.balancer.backends):
            while not stop.wait(0.5):
                pass
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())