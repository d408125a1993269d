# balancegate

An HTTP load balancer. It forwards incoming requests to a set of backends in
round-robin order, and limits each client IP with its own token bucket kept
in Redis.

## Features

- **Round-robin reverse proxying.** Each request goes to the next backend that
  is marked live. If forwarding to a backend fails, that backend is marked down,
  the request is retried on the next live backend, and a background thread tries
  to reach the failed backend again (TCP connect, up to `retry.max_attempts`
  times, waiting `delay * attempt` capped at `max_delay`) and marks it live on
  success. With no live backend the answer is `503 Service Unavailable`.
- **Periodic health checks.** When `balancer.health_check_interval` is positive,
  every backend is probed with a TCP connection (2 second timeout) at that
  interval and marked live or down.
- **Per-client rate limiting.** A client seen for the first time gets a bucket
  with `bucket.capacity`, `bucket.refil_rate` and `bucket.tokens - 1` tokens.
  Each later request takes one token. A client with no tokens left gets
  `429 Too Many Requests` with the JSON body
  `{"code":"429","error":"Rate limit exceeded"}`. Every `bucket.refil_time` all
  buckets gain `refil_rate` tokens per elapsed second, up to their capacity.
- **Reloading the backend list.** The backends file is polled, and whenever it
  changes its contents replace the current backends.
- **Logging.** Uses the standard `logging` module with JSON or `key=value` text
  output; at level `debug` each record also shows its source location.

## Installation

```
pip install balancegate
```

The rate limiter needs a running Redis server.

## Configuration

Both commands read `configs/config.yaml` by default; pass `--config PATH` to
use another file.

```yaml
http:
  listen_port: 8080
retry:
  max_attempts: 3
  delay: 1s
  max_delay: 5s
balancer:
  strategy: round_robin
  backends_file: configs/backends.yaml
  health_check_interval: 10s
logger:
  log_level: info        # debug, info, warn/warning, error; anything else means info
  log_format: json       # text, or anything else for json
  log_output: stdout     # stdout, stderr, or a file path to append to
bucket:
  capacity: 10
  refil_rate: 1
  refil_time: 1s         # must be positive
  tokens: 10
redis:
  addr: localhost:6379
  db: 0
```

`redis.password` may be set when the server requires one. `http.read_timeout`
and `http.write_timeout` are read but not applied to the server.

Durations are written as `500ms`, `1s`, `1m30s` and so on (units `ns`, `us`,
`ms`, `s`, `m`, `h`); a bare integer is taken as nanoseconds.

The backends file is a YAML list:

```yaml
- url: http://localhost:9001
- url: http://localhost:9002
```

## Usage

Start the balancer:

```
balancegate
```

To try it locally, start a demo backend for every entry in the backends file.
Each one answers `Hello, you are on backend <url>`; stop them with Ctrl-C:

```
balancegate-backends
```

## Library use

The parts can be used on their own:

```python
from balancegate.config import load_config
from balancegate.balancer import new_balancer

cfg = load_config("configs/config.yaml")
balancer = new_balancer(cfg.balancer, cfg.retry)   # a WSGI application
...
balancer.stop()
```

- `balancegate.app.App(config_path, redis_client=None, bucket_repository=None)`
  wires everything together; `wsgi_app()` returns the rate-limited balancer,
  `start()` serves it and `close()` stops it. A Redis client or any
  `BucketRepository` can be supplied instead of connecting to Redis.
- `balancegate.roundrobin.RoundRobinBalancer` is the balancer itself, with
  `register_backend`, `remove_all_backends`, `next_peer`, `check_health` and
  `start_health_check`.
- `balancegate.ratelimit.Limiter` and `rate_limit_middleware(limiter, app)`
  add rate limiting to any WSGI application.
- `balancegate.redis_repository.RedisBucketRepository` stores buckets in
  Redis hashes under `ratelimit:bucket:<ip>`.
- `balancegate.backends.run_backends(backends)` is a context manager that
  serves the demo backends in threads.

## Limitations

- Only the `round_robin` strategy exists; any other raises
  `BalancerStrategyNotFoundError`.
- Bucket storage is Redis only; there is no in-memory repository.
- The proxy reads each upstream response whole before sending it on, so it
  does not stream responses or carry WebSocket upgrades.
- The server is plain HTTP; it does not terminate TLS.