"""Round-robin HTTP load balancer with Redis-backed per-client rate limiting."""

__version__ = "0.1.0"

__all__ = [
    "app",
    "backend",
    "backends",
    "balancer",
    "config",
    "logger",
    "ratelimit",
    "redis_repository",
    "repository",
    "retry",
    "roundrobin",
]