"""Application configuration and a file watcher for hot reloads."""

from __future__ import annotations

import logging
import os
import re
import sys
import threading
from dataclasses import dataclass, field
from typing import IO, Any, Callable

import yaml

log = logging.getLogger(__name__)

_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "μs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}
_COMPONENT = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_COMPONENT_RE = re.compile(_COMPONENT)
_DURATION_RE = re.compile(rf"[+-]?(?:{_COMPONENT})+")


def parse_duration(value: Any) -> float:
    """Convert a duration such as "1m30s", or a nanosecond count, to seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value / 1e9
    if not isinstance(value, str):
        raise ValueError(f"invalid duration {value!r}")
    if value.lstrip("+-") == "0" and len(value) <= 2:
        return 0.0
    if not _DURATION_RE.fullmatch(value):
        raise ValueError(f"invalid duration {value!r}")
    total = sum(float(number) * _UNITS[unit] for number, unit in _COMPONENT_RE.findall(value))
    return -total if value.startswith("-") else total


@dataclass
class HTTPConfig:
    listen_port: int = 0
    read_timeout: int = 0
    write_timeout: int = 0


@dataclass
class RetryConfig:
    """Retry policy; delays are in seconds."""

    max_attempts: int = 0
    delay: float = 0.0
    max_delay: float = 0.0


@dataclass
class BackendConfig:
    url: str = ""


@dataclass
class BalancerConfig:
    strategy: str = ""
    backends_file: str = ""
    backends: list[BackendConfig] = field(default_factory=list)
    health_check_interval: float = 0.0


@dataclass
class LoggerConfig:
    log_level: str = ""
    log_format: str = ""
    log_output: str = ""

    def stream(self) -> IO[str]:
        """Return the log destination; stdout if the file cannot be opened."""
        if self.log_output == "stdout":
            return sys.stdout
        if self.log_output == "stderr":
            return sys.stderr
        try:
            return open(self.log_output, "a", encoding="utf-8")
        except OSError:
            return sys.stdout


@dataclass
class BucketConfig:
    """Defaults for new token buckets; refill_time is in seconds."""

    capacity: int = 0
    refill_rate: int = 0
    refill_time: float = 0.0
    tokens: int = 0


@dataclass
class RedisConfig:
    addr: str = ""
    password: str = ""
    db: int = 0


@dataclass
class Config:
    http: HTTPConfig = field(default_factory=HTTPConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    balancer: BalancerConfig = field(default_factory=BalancerConfig)
    logger: LoggerConfig = field(default_factory=LoggerConfig)
    bucket: BucketConfig = field(default_factory=BucketConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)


def _int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected an integer, got {value!r}")
    return value


def _str(value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise ValueError(f"expected a scalar, got {value!r}")
    return str(value)


# Each section: dataclass and its fields as (yaml key, attribute, converter).
_SECTIONS: dict[str, tuple[type, list[tuple[str, str, Callable[[Any], Any]]]]] = {
    "http": (HTTPConfig, [("listen_port", "listen_port", _int), ("read_timeout", "read_timeout", _int),
                          ("write_timeout", "write_timeout", _int)]),
    "retry": (RetryConfig, [("max_attempts", "max_attempts", _int), ("delay", "delay", parse_duration),
                            ("max_delay", "max_delay", parse_duration)]),
    "balancer": (BalancerConfig, [("strategy", "strategy", _str), ("backends_file", "backends_file", _str),
                                  ("health_check_interval", "health_check_interval", parse_duration)]),
    "logger": (LoggerConfig, [("log_level", "log_level", _str), ("log_format", "log_format", _str),
                              ("log_output", "log_output", _str)]),
    "bucket": (BucketConfig, [("capacity", "capacity", _int), ("refil_rate", "refill_rate", _int),
                              ("refil_time", "refill_time", parse_duration), ("tokens", "tokens", _int)]),
    "redis": (RedisConfig, [("addr", "addr", _str), ("password", "password", _str), ("db", "db", _int)]),
}


def _read_yaml(path: str | os.PathLike[str]) -> Any:
    with open(path, encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def load_config(path: str | os.PathLike[str]) -> Config:
    """Read the configuration file and the backends file it names."""
    raw = _read_yaml(path) or {}
    if not isinstance(raw, dict):
        raise ValueError("configuration must be a mapping")
    sections = {}
    for name, (cls, fields) in _SECTIONS.items():
        data = raw.get(name) or {}
        if not isinstance(data, dict):
            raise ValueError(f"config section {name!r} must be a mapping")
        sections[name] = cls(**{attr: convert(data[key]) for key, attr, convert in fields
                                if data.get(key) is not None})
    config = Config(**sections)
    config.balancer.backends = load_backends(config.balancer.backends_file)
    return config


def load_backends(path: str | os.PathLike[str]) -> list[BackendConfig]:
    """Read a YAML list of backends, each a mapping with a ``url`` key."""
    raw = _read_yaml(path) or []
    if not isinstance(raw, list):
        raise ValueError("backends file must hold a list")
    backends = []
    for item in raw:
        if item is not None and not isinstance(item, dict):
            raise ValueError(f"invalid backend entry {item!r}")
        url = (item or {}).get("url")
        backends.append(BackendConfig(url="" if url is None else _str(url)))
    return backends


class Watcher:
    """Polls a file and calls back whenever it changes."""

    def __init__(self, path: str | os.PathLike[str], poll_interval: float = 0.5) -> None:
        self.path = os.fspath(path)
        self.poll_interval = poll_interval
        self._signature = self._stat()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _stat(self) -> tuple[int, int]:
        info = os.stat(self.path)
        return info.st_mtime_ns, info.st_size

    def start(self, callback: Callable[[], None]) -> None:
        """Start watching in a background thread."""
        if self._thread is not None:
            raise RuntimeError("watcher already started")
        self._thread = threading.Thread(target=self._run, args=(callback,), daemon=True)
        self._thread.start()

    def _run(self, callback: Callable[[], None]) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                signature = self._stat()
            except OSError as exc:
                log.error("error watching file %s: %s", self.path, exc)
                continue
            if signature != self._signature:
                self._signature = signature
                log.info("modified file %s", self.path)
                try:
                    callback()
                except Exception:
                    log.exception("watch callback failed for %s", self.path)

    def close(self) -> None:
        """Stop watching."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()

    def __enter__(self) -> "Watcher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()