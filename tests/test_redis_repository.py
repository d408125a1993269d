import logging
from datetime import datetime, timezone

import pytest
from redis.exceptions import ResponseError

from balancegate.redis_repository import (
    RedisBucketRepository,
    RedisClientMissingError,
    bucket_key,
)
from balancegate.repository import BucketNotFoundError


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.commands = []

    def hset(self, name, mapping):
        self.commands.append(("hset", name, mapping))

    def eval(self, script, numkeys, *args):
        self.commands.append(("eval", script, numkeys, args))

    def execute(self, raise_on_error=True):
        self.client.executions.append((list(self.commands), raise_on_error))
        results = []
        for command in self.commands:
            if command[0] == "hset":
                _, name, mapping = command
                self.client.hashes[name] = {k: str(v) for k, v in mapping.items()}
                results.append(len(mapping))
            else:
                key = command[3][0]
                self.client.pipeline_evals.append(command)
                results.append(self.client.refill_results.get(key, 0))
        return results


class FakeRedis:
    def __init__(self):
        self.hashes = {}
        self.executions = []
        self.pipeline_evals = []
        self.refill_results = {}
        self.scan_pages = {0: (0, [])}
        self.scan_calls = []
        self.eval_result = 1
        self.eval_calls = []

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def hgetall(self, name):
        return dict(self.hashes.get(name, {}))

    def scan(self, cursor=0, match=None, count=None):
        self.scan_calls.append((cursor, match, count))
        return self.scan_pages[cursor]

    def eval(self, script, numkeys, *args):
        self.eval_calls.append((numkeys, args))
        if isinstance(self.eval_result, Exception):
            raise self.eval_result
        return self.eval_result


@pytest.fixture
def client():
    return FakeRedis()


@pytest.fixture
def repo(client):
    return RedisBucketRepository(client)


def test_bucket_key_uses_prefix():
    assert bucket_key("10.0.0.1") == "ratelimit:bucket:10.0.0.1"


def test_missing_client_is_rejected():
    with pytest.raises(RedisClientMissingError):
        RedisBucketRepository(None)


def test_create_then_read_round_trip(repo, client):
    before = int(datetime.now(timezone.utc).timestamp())
    repo.create_bucket("10.0.0.1", 10, 2, 9)
    stored = repo.bucket("10.0.0.1")
    after = int(datetime.now(timezone.utc).timestamp())

    assert (stored.tokens, stored.capacity, stored.refill_rate) == (9, 10, 2)
    assert before <= stored.last_refill.timestamp() <= after
    assert set(client.hashes[bucket_key("10.0.0.1")]) == {
        "tokens",
        "capacity",
        "refil_rate",
        "last_refill",
    }


def test_create_bucket_overwrites(repo):
    repo.create_bucket("a", 5, 1, 4)
    repo.create_bucket("a", 7, 3, 6)
    stored = repo.bucket("a")
    assert (stored.tokens, stored.capacity, stored.refill_rate) == (6, 7, 3)


def test_missing_bucket_raises(repo):
    with pytest.raises(BucketNotFoundError):
        repo.bucket("nobody")


def test_bucket_decodes_bytes(repo, client):
    client.hashes[bucket_key("b")] = {
        b"tokens": b"3",
        b"capacity": b"8",
        b"refil_rate": b"1",
        b"last_refill": b"0",
    }
    stored = repo.bucket("b")
    assert stored.tokens == 3
    assert stored.capacity == 8
    assert stored.last_refill == datetime.fromtimestamp(0, timezone.utc)


@pytest.mark.parametrize("field", ["tokens", "capacity", "refil_rate", "last_refill"])
def test_bucket_rejects_bad_numbers(repo, client, field):
    fields = {"tokens": "1", "capacity": "2", "refil_rate": "1", "last_refill": "0"}
    fields[field] = "abc"
    client.hashes[bucket_key("c")] = fields
    with pytest.raises(ValueError):
        repo.bucket("c")


@pytest.mark.parametrize("reply, expected", [(1, True), (0, False)])
def test_decrease_maps_script_reply(repo, client, reply, expected):
    client.eval_result = reply
    assert repo.decrease("d") is expected
    numkeys, args = client.eval_calls[0]
    assert numkeys == 1
    assert args[0] == bucket_key("d")


def test_decrease_not_found_error_reply(repo, client):
    client.eval_result = ResponseError("NOT_FOUND")
    with pytest.raises(BucketNotFoundError):
        repo.decrease("e")


def test_decrease_not_found_list_reply(repo, client):
    client.eval_result = [b"NOT_FOUND"]
    with pytest.raises(BucketNotFoundError):
        repo.decrease("e")


def test_decrease_other_error_propagates(repo, client):
    client.eval_result = ResponseError("ERR something else")
    with pytest.raises(ResponseError):
        repo.decrease("e")


def test_decrease_unexpected_list(repo, client):
    client.eval_result = ["other"]
    with pytest.raises(ValueError):
        repo.decrease("e")


def test_decrease_unexpected_type(repo, client):
    client.eval_result = "odd"
    with pytest.raises(TypeError):
        repo.decrease("e")


def test_refill_walks_every_scan_page(repo, client):
    client.scan_pages = {0: (7, ["k1", "k2"]), 7: (0, ["k3"])}
    assert repo.refill_all_buckets() is None

    assert [call[0] for call in client.scan_calls] == [0, 7]
    assert all(call[1] == "ratelimit:bucket:*" and call[2] == 100 for call in client.scan_calls)
    assert [cmd[3][0] for cmd in client.pipeline_evals] == ["k1", "k2", "k3"]
    assert len({cmd[3][1] for cmd in client.pipeline_evals}) == 1
    assert all(raise_on_error is False for _, raise_on_error in client.executions)


def test_refill_skips_empty_pages(repo, client):
    client.scan_pages = {0: (0, [])}
    assert repo.refill_all_buckets() is None
    assert client.executions == []
    assert len(client.scan_calls) == 1


def test_refill_logs_failed_keys(repo, client, caplog):
    client.scan_pages = {0: (0, ["good", "bad"])}
    client.refill_results = {"bad": ResponseError("boom")}
    with caplog.at_level(logging.ERROR):
        repo.refill_all_buckets()
    messages = [r.getMessage() for r in caplog.records]
    assert any("bad" in m for m in messages)
    assert not any("good" in m for m in messages)