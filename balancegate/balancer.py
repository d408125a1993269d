"""Choosing a balancing strategy and reloading backends when their file changes."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

import yaml

from .config import BalancerConfig, Config, RetryConfig, Watcher, load_backends
from .roundrobin import RoundRobinBalancer

log = logging.getLogger(__name__)


class BalancerStrategyNotFoundError(LookupError):
    """Raised when the configured balancing strategy is not available."""

    def __init__(self, message: str = "balancer strategy not found") -> None:
        super().__init__(message)


@runtime_checkable
class Balancer(Protocol):
    """A WSGI application spreading requests over a changeable set of backends."""

    def __call__(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]: ...

    def register_backend(self, url: str) -> object: ...

    def remove_all_backends(self) -> None: ...

    def stop(self) -> None: ...


def new_balancer(cfg: BalancerConfig, retry_config: RetryConfig) -> Balancer:
    """Build the balancer named by ``cfg.strategy``; a positive interval starts health checks."""
    if cfg.strategy != "round_robin":
        raise BalancerStrategyNotFoundError()
    balancer = RoundRobinBalancer(retry_config, (backend.url for backend in cfg.backends))
    if cfg.health_check_interval > 0:
        balancer.start_health_check(cfg.health_check_interval)
    return balancer


def check_and_update(cfg: Config, balancer: Balancer) -> Watcher:
    """Replace the balancer's backends whenever the backends file changes; returns the watcher."""
    path = cfg.balancer.backends_file

    def reload() -> None:
        try:
            backends = load_backends(path)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            log.error("Failed to reload backends from %s: %s", path, exc)
            return
        balancer.remove_all_backends()
        for backend in backends:
            balancer.register_backend(backend.url)

    watcher = Watcher(path)
    watcher.start(reload)
    return watcher