"""Token bucket storage in Redis hashes, updated atomically with Lua scripts."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

import redis

from .repository import Bucket, BucketNotFoundError, BucketRepository

log = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:bucket:"
_SCAN_PATTERN = KEY_PREFIX + "*"
_SCAN_COUNT = 100
_NOT_FOUND = "NOT_FOUND"
_INT_RE = re.compile(r"[+-]?[0-9]+")

_REFILL_SCRIPT = """
local f = redis.call('HMGET', KEYS[1], 'tokens', 'capacity', 'refil_rate', 'last_refill')
local tokens = tonumber(f[1])
local capacity = tonumber(f[2])
local rate = tonumber(f[3])
local last = tonumber(f[4])
if not (tokens and capacity and rate and last) then
    return 0
end
local now = tonumber(ARGV[1])
local refilled = math.min(capacity, tokens + math.floor((now - last) * rate))
if refilled > tokens then
    redis.call('HMSET', KEYS[1], 'tokens', refilled, 'last_refill', now)
    return 1
end
return 0
"""

_DECREASE_SCRIPT = """
local f = redis.call('HMGET', KEYS[1], 'tokens', 'last_refill', 'capacity', 'refil_rate')
if not f[1] then
    return redis.error_reply('NOT_FOUND')
end
local now = tonumber(ARGV[1])
local gained = math.floor((now - tonumber(f[2])) * tonumber(f[4]))
local available = math.min(tonumber(f[3]), tonumber(f[1]) + gained)
if available >= 1 then
    redis.call('HMSET', KEYS[1], 'tokens', available - 1, 'last_refill', now)
    return 1
end
redis.call('HSET', KEYS[1], 'last_refill', now)
return 0
"""


class RedisClientMissingError(ValueError):
    """Raised when the repository is given no Redis client."""

    def __init__(self, message: str = "redis client is missing") -> None:
        super().__init__(message)


def bucket_key(key: str) -> str:
    """Return the Redis key under which the bucket for ``key`` is stored."""
    return f"{KEY_PREFIX}{key}"


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _parse_int(fields: dict[str, str], name: str) -> int:
    raw = fields.get(name, "")
    if not _INT_RE.fullmatch(raw):
        raise ValueError(f"invalid {name} value {raw!r}")
    return int(raw)


class RedisBucketRepository(BucketRepository):
    """Bucket repository backed by a Redis client."""

    def __init__(self, client: redis.Redis | None) -> None:
        if client is None:
            raise RedisClientMissingError()
        self._client = client

    def create_bucket(self, key: str, capacity: int, refill_rate: int, tokens: int) -> None:
        fields = {
            "tokens": tokens,
            "capacity": capacity,
            "refil_rate": refill_rate,
            "last_refill": int(time.time()),
        }
        pipe = self._client.pipeline(transaction=False)
        pipe.hset(bucket_key(key), mapping=fields)
        pipe.execute()

    def bucket(self, key: str) -> Bucket:
        raw = self._client.hgetall(bucket_key(key))
        if not raw:
            log.debug("Bucket not found", extra={"key": key})
            raise BucketNotFoundError()
        fields = {_text(name): _text(value) for name, value in raw.items()}
        return Bucket(
            tokens=_parse_int(fields, "tokens"),
            capacity=_parse_int(fields, "capacity"),
            refill_rate=_parse_int(fields, "refil_rate"),
            last_refill=datetime.fromtimestamp(_parse_int(fields, "last_refill"), timezone.utc),
        )

    def decrease(self, key: str) -> bool:
        try:
            result = self._client.eval(_DECREASE_SCRIPT, 1, bucket_key(key), int(time.time()))
        except redis.ResponseError as exc:
            if _NOT_FOUND in str(exc):
                raise BucketNotFoundError() from exc
            raise
        if isinstance(result, int):
            return result == 1
        if isinstance(result, (list, tuple)):
            if result and _text(result[0]) == _NOT_FOUND:
                raise BucketNotFoundError()
            raise ValueError(f"unexpected result format: {result!r}")
        raise TypeError(f"unexpected result type: {type(result).__name__}")

    def refill_all_buckets(self) -> None:
        now = int(time.time())
        cursor = 0
        while True:
            cursor, keys = self._client.scan(cursor=cursor, match=_SCAN_PATTERN, count=_SCAN_COUNT)
            if keys:
                pipe = self._client.pipeline(transaction=False)
                for key in keys:
                    pipe.eval(_REFILL_SCRIPT, 1, key, now)
                results = pipe.execute(raise_on_error=False)
                for key, outcome in zip(keys, results):
                    if isinstance(outcome, Exception):
                        log.error("Failed to refill bucket %s: %s", _text(key), outcome)
            if int(cursor) == 0:
                break