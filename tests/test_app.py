import io
import json
import socket
import threading
import time
import urllib.request
from datetime import datetime, timezone
from wsgiref.simple_server import WSGIRequestHandler, make_server

import pytest

from balancegate.app import App, ServiceProvider, main
from balancegate.balancer import BalancerStrategyNotFoundError
from balancegate.repository import Bucket, BucketNotFoundError, BucketRepository


class MemoryRepository(BucketRepository):
    def __init__(self):
        self.buckets = {}

    def create_bucket(self, key, capacity, refill_rate, tokens):
        self.buckets[key] = Bucket(tokens, capacity, refill_rate, datetime.now(timezone.utc))

    def bucket(self, key):
        try:
            return self.buckets[key]
        except KeyError:
            raise BucketNotFoundError() from None

    def decrease(self, key):
        bucket = self.bucket(key)
        if bucket.tokens < 1:
            return False
        bucket.tokens -= 1
        return True

    def refill_all_buckets(self):
        for bucket in self.buckets.values():
            bucket.tokens = bucket.capacity


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        pass


@pytest.fixture
def upstream():
    def app(environ, start_response):
        start_response("200 OK", [("Content-Type", "text/plain")])
        return [b"upstream"]

    server = make_server("127.0.0.1", 0, app, handler_class=_QuietHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()
    thread.join()


def _closed_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _write_config(tmp_path, urls, strategy="round_robin", listen_port=0):
    backends = tmp_path / "backends.yaml"
    backends.write_text("".join(f"- url: {url}\n" for url in urls))
    config = tmp_path / "config.yaml"
    config.write_text(
        f"""
http:
  listen_port: {listen_port}
retry:
  max_attempts: 1
  delay: 10ms
  max_delay: 10ms
balancer:
  strategy: {strategy}
  backends_file: {backends}
  health_check_interval: 0s
logger:
  log_level: error
  log_format: json
  log_output: {tmp_path / "app.log"}
bucket:
  capacity: 2
  refil_rate: 1
  refil_time: 1h
  tokens: 2
redis:
  addr: 127.0.0.1:6379
  db: 0
"""
    )
    return config


def _call(app, remote="10.0.0.1"):
    environ = {
        "REQUEST_METHOD": "GET",
        "SCRIPT_NAME": "",
        "PATH_INFO": "/",
        "QUERY_STRING": "",
        "REMOTE_ADDR": remote,
        "wsgi.input": io.BytesIO(b""),
    }
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app(environ, start_response))
    return captured["status"], captured["headers"], body


def test_provider_loads_config_and_uses_given_repository(tmp_path):
    repo = MemoryRepository()
    provider = ServiceProvider(_write_config(tmp_path, []), bucket_repository=repo)
    try:
        assert provider.config.bucket.capacity == 2
        assert provider.config.balancer.strategy == "round_robin"
        assert provider.bucket_repository is repo
        assert provider.limiter is provider.limiter
        assert provider.limiter.repository is repo
    finally:
        provider.close()


def test_provider_unknown_strategy_raises(tmp_path):
    provider = ServiceProvider(
        _write_config(tmp_path, [], strategy="weighted"), bucket_repository=MemoryRepository()
    )
    try:
        assert provider.config.balancer.strategy == "weighted"
        with pytest.raises(BalancerStrategyNotFoundError, match="balancer strategy not found"):
            provider.balancer
    finally:
        provider.close()


def test_app_proxies_and_rate_limits(tmp_path, upstream):
    app = App(_write_config(tmp_path, [upstream]), bucket_repository=MemoryRepository())
    try:
        handler = app.wsgi_app()
        for _ in range(2):
            status, _, body = _call(handler)
            assert status == "200 OK"
            assert body == b"upstream"

        status, headers, body = _call(handler)
        assert status.startswith("429")
        assert headers["Content-Type"] == "application/json"
        assert json.loads(body) == {"code": "429", "error": "Rate limit exceeded"}

        status, _, body = _call(handler, remote="10.0.0.2")
        assert status == "200 OK"
        assert body == b"upstream"
    finally:
        app.close()


def test_app_reports_unreachable_backend(tmp_path):
    url = f"http://127.0.0.1:{_closed_port()}"
    app = App(_write_config(tmp_path, [url]), bucket_repository=MemoryRepository())
    try:
        status, _, body = _call(app.wsgi_app())
        assert status.startswith("503")
        assert body == b"No other backends available\n"
    finally:
        app.close()


def test_app_start_serves_http(tmp_path, upstream):
    app = App(_write_config(tmp_path, [upstream]), bucket_repository=MemoryRepository())
    thread = threading.Thread(target=app.start, daemon=True)
    thread.start()
    try:
        deadline = time.monotonic() + 5
        while app.server_address is None and time.monotonic() < deadline:
            time.sleep(0.02)
        port = app.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/", timeout=5) as response:
            assert response.status == 200
            assert response.read() == b"upstream"
    finally:
        app.close()
        thread.join(5)
    assert not thread.is_alive()


def test_main_with_missing_config_exits(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(tmp_path / "missing.yaml")])
    assert "error creating app" in str(excinfo.value.code)