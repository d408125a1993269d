"""The balancer application: wiring of its parts and the HTTP server that runs it."""

from __future__ import annotations

import argparse
import logging
import os
import socketserver
from typing import Any, Callable, Iterable
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import redis

from .balancer import Balancer, check_and_update, new_balancer
from .config import Config, Watcher, load_config
from .logger import init_logger
from .ratelimit import Limiter, rate_limit_middleware
from .redis_repository import RedisBucketRepository
from .repository import BucketRepository

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "configs/config.yaml"
_DEFAULT_REDIS_ADDR = "localhost:6379"


class _ThreadingWSGIServer(socketserver.ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _RequestHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        log.debug("%s - %s", self.address_string(), format % args)


def _redis_address(addr: str) -> tuple[str, int]:
    host, sep, port = (addr or _DEFAULT_REDIS_ADDR).rpartition(":")
    if not sep:
        return port, 6379
    return host or "localhost", int(port)


class ServiceProvider:
    """Builds the application's components on first use and keeps them."""

    def __init__(
        self,
        config_path: str | os.PathLike[str],
        *,
        redis_client: redis.Redis | None = None,
        bucket_repository: BucketRepository | None = None,
    ) -> None:
        self.config_path = os.fspath(config_path)
        self._config: Config | None = None
        self._redis_client = redis_client
        self._bucket_repository = bucket_repository
        self._limiter: Limiter | None = None
        self._balancer: Balancer | None = None
        self._watcher: Watcher | None = None
        init_logger(self.config.logger)

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = load_config(self.config_path)
        return self._config

    @property
    def redis_client(self) -> redis.Redis:
        """A connected Redis client; connection failures are raised."""
        if self._redis_client is None:
            settings = self.config.redis
            host, port = _redis_address(settings.addr)
            client = redis.Redis(
                host=host, port=port, password=settings.password or None, db=settings.db
            )
            client.ping()
            self._redis_client = client
        return self._redis_client

    @property
    def bucket_repository(self) -> BucketRepository:
        if self._bucket_repository is None:
            self._bucket_repository = RedisBucketRepository(self.redis_client)
        return self._bucket_repository

    @property
    def limiter(self) -> Limiter:
        if self._limiter is None:
            self._limiter = Limiter(self.bucket_repository, self.config.bucket)
        return self._limiter

    @property
    def balancer(self) -> Balancer:
        if self._balancer is None:
            config = self.config
            balancer = new_balancer(config.balancer, config.retry)
            try:
                self._watcher = check_and_update(config, balancer)
            except Exception:
                balancer.stop()
                raise
            self._balancer = balancer
        return self._balancer

    def close(self) -> None:
        """Stop every background thread the components started."""
        if self._watcher is not None:
            self._watcher.close()
            self._watcher = None
        if self._balancer is not None:
            self._balancer.stop()
        if self._limiter is not None:
            self._limiter.stop()


class App:
    """The rate-limited balancer, served over HTTP."""

    def __init__(
        self,
        config_path: str | os.PathLike[str],
        *,
        redis_client: redis.Redis | None = None,
        bucket_repository: BucketRepository | None = None,
    ) -> None:
        self.provider = ServiceProvider(
            config_path, redis_client=redis_client, bucket_repository=bucket_repository
        )
        try:
            limiter = self.provider.limiter
            self._app = rate_limit_middleware(limiter, self.provider.balancer)
        except Exception:
            self.provider.close()
            raise
        self._server: _ThreadingWSGIServer | None = None

    def wsgi_app(self) -> Callable[[dict, Callable[..., Any]], Iterable[bytes]]:
        """Return the WSGI application that handles every path."""
        return self._app

    @property
    def server_address(self) -> tuple[str, int] | None:
        """The address the server listens on, once started."""
        server = self._server
        return server.server_address if server is not None else None

    def start(self) -> None:
        """Listen on the configured port and serve until ``close`` is called."""
        port = self.provider.config.http.listen_port
        log.info("Starting server on port", extra={"port": port})
        server = make_server(
            "", port, self._app, server_class=_ThreadingWSGIServer, handler_class=_RequestHandler
        )
        self._server = server
        try:
            server.serve_forever()
        finally:
            server.server_close()

    def close(self) -> None:
        """Stop the server and all background work."""
        if self._server is not None:
            self._server.shutdown()
        self.provider.close()

    def __enter__(self) -> "App":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="balancegate", description="Rate-limited round-robin HTTP load balancer."
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="configuration file")
    args = parser.parse_args(argv)

    try:
        app = App(args.config)
    except Exception as exc:
        raise SystemExit(f"error creating app: {exc}") from exc

    try:
        app.start()
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        raise SystemExit(f"server error: {exc}") from exc
    finally:
        app.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())