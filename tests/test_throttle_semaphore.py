from contextlib import contextmanager

import httpx
import pytest

from services.shared import throttle


class FakeRedis:
    def __init__(self, time_module):
        self._time = time_module
        self._values = {}
        self._expire_at = {}

    def _ensure_not_expired(self, key):
        expire_at = self._expire_at.get(key)
        if expire_at is not None and self._time.time() >= expire_at:
            self._values.pop(key, None)
            self._expire_at.pop(key, None)

    def exists(self, key):
        self._ensure_not_expired(key)
        return 1 if key in self._values else 0

    def ttl(self, key):
        self._ensure_not_expired(key)
        if key not in self._values:
            return -2
        expire_at = self._expire_at.get(key)
        if expire_at is None:
            return -1
        return max(0, int(expire_at - self._time.time()))

    def expire(self, key, seconds):
        self._ensure_not_expired(key)
        if key not in self._values:
            return 0
        self._expire_at[key] = self._time.time() + int(seconds)
        return 1

    def setex(self, key, seconds, value):
        self._values[key] = value
        self._expire_at[key] = self._time.time() + int(seconds)
        return True

    def incr(self, key):
        self._ensure_not_expired(key)
        value = int(self._values.get(key, 0)) + 1
        self._values[key] = value
        return value

    def decr(self, key):
        self._ensure_not_expired(key)
        value = int(self._values.get(key, 0)) - 1
        self._values[key] = value
        return value

    def delete(self, key):
        self._values.pop(key, None)
        self._expire_at.pop(key, None)
        return 1

    def hgetall(self, key):
        self._ensure_not_expired(key)
        value = self._values.get(key)
        return value if isinstance(value, dict) else {}

    def hset(self, key, mapping):
        value = self._values.get(key)
        if not isinstance(value, dict):
            value = {}
        value.update({k.encode("utf-8"): str(v).encode("utf-8") for k, v in mapping.items()})
        self._values[key] = value
        return True

    def eval(self, script, numkeys, *args):
        _ = numkeys

        if script == throttle._ACQUIRE_SEMAPHORE_LUA:
            sem_key = args[0]
            limit = int(args[1])
            ttl_seconds = int(args[2])

            value = int(self.incr(sem_key))
            self.expire(sem_key, ttl_seconds)

            if value <= limit:
                return value

            self.decr(sem_key)
            return 0

        if script == throttle._RELEASE_SEMAPHORE_LUA:
            sem_key = args[0]
            value = int(self.decr(sem_key))
            if value <= 0:
                self.delete(sem_key)
            return value

        raise NotImplementedError("FakeRedis.eval does not support this script")


class _FakeResponse:
    def __init__(self, status_code=200, headers=None):
        self.status_code = status_code
        self.headers = headers or {}


def _fake_http_client_returning(response, seen=None):
    @contextmanager
    def fake_http_client(timeout=throttle.DEFAULT_GITHUB_TIMEOUT):
        class _Client:
            def get(self, url, headers=None, params=None):
                if seen is not None:
                    seen.update({"url": url, "headers": headers, "params": params})
                return response

        yield _Client()

    return fake_http_client


@pytest.fixture()
def redis_client():
    return FakeRedis(throttle.time)


def test_token_hash_length_expected():
    hashed = throttle.token_hash("ghp_example")

    assert len(hashed) == 32
    assert hashed == throttle.token_hash("ghp_example")
    assert "ghp_example" not in hashed


def test_acquire_token_semaphore_times_out_expected(redis_client, monkeypatch):
    current = {"t": 0.0}

    def fake_monotonic():
        current["t"] += 0.6
        return current["t"]

    monkeypatch.setattr(throttle.time, "monotonic", fake_monotonic)
    monkeypatch.setattr(throttle.time, "sleep", lambda _seconds: None)

    with pytest.raises(TimeoutError):
        throttle._acquire_token_semaphore(redis_client, "abc123", limit=0, timeout_seconds=1)


def test_send_github_request_releases_semaphore_on_transport_error_expected(redis_client, monkeypatch):
    monkeypatch.setattr(throttle, "get_redis", lambda: redis_client)

    @contextmanager
    def fake_http_client(timeout=throttle.DEFAULT_GITHUB_TIMEOUT):
        class _Client:
            def get(self, *_args, **_kwargs):
                raise httpx.ConnectError("network boom")

        yield _Client()

    monkeypatch.setattr(throttle, "_http_client", fake_http_client)

    with pytest.raises(httpx.ConnectError):
        throttle.send_github_request("ghp_example", "/user")

    assert redis_client.exists(throttle._sem_key(throttle.token_hash("ghp_example"))) == 0


def test_send_github_request_sets_headers_and_records_budget_expected(redis_client, monkeypatch):
    monkeypatch.setattr(throttle, "get_redis", lambda: redis_client)
    seen = {}
    reset_epoch = int(throttle.time.time()) + 600
    response = _FakeResponse(200, headers={"X-RateLimit-Remaining": "42", "X-RateLimit-Reset": str(reset_epoch)})
    monkeypatch.setattr(throttle, "_http_client", _fake_http_client_returning(response, seen))

    result = throttle.send_github_request("ghp_example", "/search/commits", params={"q": "author:octo"})

    hashed = throttle.token_hash("ghp_example")
    assert result is response
    assert seen["url"].endswith("/search/commits")
    assert seen["headers"]["Authorization"] == "Bearer ghp_example"
    assert seen["headers"]["X-GitHub-Api-Version"] == throttle.GITHUB_API_VERSION
    assert seen["params"] == {"q": "author:octo"}
    assert redis_client.hgetall(throttle._budget_key(hashed))[b"remaining"] == b"42"
    assert redis_client.exists(throttle._sem_key(hashed)) == 0


def test_send_github_request_raises_permission_error_on_401_expected(redis_client, monkeypatch):
    monkeypatch.setattr(throttle, "get_redis", lambda: redis_client)
    monkeypatch.setattr(throttle, "_http_client", _fake_http_client_returning(_FakeResponse(401)))

    with pytest.raises(PermissionError):
        throttle.send_github_request("ghp_example", "/user")


def test_end_request_applies_retry_after_cooldown_expected(redis_client):
    hashed = throttle.token_hash("ghp_example")

    throttle.end_request(redis_client, _FakeResponse(403, headers={"Retry-After": "30"}), hashed)

    assert redis_client.exists(throttle._cooldown_key(hashed)) == 1
    assert 0 < redis_client.ttl(throttle._cooldown_key(hashed)) <= 30


def test_parse_retry_after_seconds_and_http_date_expected(monkeypatch):
    original_datetime = throttle.datetime
    fixed_now = original_datetime(2025, 1, 1, 0, 0, 0, tzinfo=throttle.timezone.utc)

    class _FakeDatetime(original_datetime):
        @classmethod
        def now(cls, tz=None):
            _ = tz
            return fixed_now

    monkeypatch.setattr(throttle, "datetime", _FakeDatetime)

    assert throttle.parse_retry_after("12") == 12
    assert throttle.parse_retry_after("Wed, 01 Jan 2025 00:00:10 GMT") == 10
    assert throttle.parse_retry_after("garbage") == 0
    assert throttle.parse_retry_after(None) == 0


def test_wait_for_secondary_cooldown_repairs_missing_ttl_expected(monkeypatch):
    calls = {"expire": []}

    class _Redis:
        def __init__(self):
            self._exists_calls = 0

        def exists(self, _key):
            self._exists_calls += 1
            return 1 if self._exists_calls == 1 else 0

        def ttl(self, _key):
            return -1

        def expire(self, _key, seconds):
            calls["expire"].append(int(seconds))
            return 1

    monkeypatch.setattr(throttle.time, "sleep", lambda _seconds: None)

    throttle._wait_for_secondary_cooldown(_Redis(), "abc123")

    assert calls["expire"] == [5]
