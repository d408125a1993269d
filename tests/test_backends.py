import socket
import urllib.request

import pytest

from balancegate.backends import backend_address, main, make_backend_app, run_backends
from balancegate.config import BackendConfig


def _call(app):
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app({"REQUEST_METHOD": "GET", "PATH_INFO": "/"}, start_response))
    return captured["status"], captured["headers"], body


def test_backend_app_greets_with_url():
    status, headers, body = _call(make_backend_app("http://localhost:8081"))
    assert status == "200 OK"
    assert body == b"Hello, you are on backend http://localhost:8081"
    assert headers["Content-Length"] == str(len(body))


def test_backend_address_strips_scheme():
    assert backend_address("http://localhost:8081") == ("localhost", 8081)


def test_backend_address_without_scheme():
    assert backend_address("127.0.0.1:9000") == ("127.0.0.1", 9000)


@pytest.mark.parametrize("url", ["http://localhost", "http://localhost:port"])
def test_backend_address_rejects_bad_port(url):
    with pytest.raises(ValueError):
        backend_address(url)


def test_run_backends_serves_and_stops():
    url = "http://127.0.0.1:0"
    with run_backends([BackendConfig(url)]) as servers:
        assert len(servers) == 1
        port = servers[0].server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/", timeout=5) as response:
            assert response.status == 200
            assert response.read() == f"Hello, you are on backend {url}".encode()

    with pytest.raises(OSError):
        socket.create_connection(("127.0.0.1", port), timeout=1).close()


def test_run_backends_skips_invalid_address():
    backends = [BackendConfig("http://localhost"), BackendConfig("http://127.0.0.1:0")]
    with run_backends(backends) as servers:
        assert len(servers) == 1
        assert servers[0].server_address[0] == "127.0.0.1"


def test_main_with_missing_config_exits(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(tmp_path / "missing.yaml")])
    assert "missing.yaml" in str(excinfo.value.code)