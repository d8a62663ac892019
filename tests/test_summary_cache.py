import json

from services.shared import caching as caching_module


class _FakeRedis:
    def __init__(self):
        self._store = {}
        self.setex_calls = []

    def get(self, key):
        return self._store.get(key)

    def setex(self, key, ttl, value):
        self.setex_calls.append((key, ttl))
        self._store[key] = value

    def delete(self, key):
        self._store.pop(key, None)


class _BrokenRedis:
    def get(self, _key):
        raise ConnectionError("redis down")

    def setex(self, _key, _ttl, _value):
        raise ConnectionError("redis down")

    def delete(self, _key):
        raise ConnectionError("redis down")


def test_summary_round_trips_through_cache_expected(monkeypatch):
    fake = _FakeRedis()
    monkeypatch.setattr(caching_module, "get_redis", lambda: fake)
    monkeypatch.setattr(caching_module, "CACHE_TTL_SECONDS", 120)

    caching_module.set_cached_summary(7, {"user_id": 7, "xp": 1015})

    assert fake.setex_calls == [("summary:7", 120)]
    assert json.loads(fake.get("summary:7"))["xp"] == 1015
    assert caching_module.get_cached_summary(7) == {"user_id": 7, "xp": 1015}


def test_invalidate_summary_drops_entry_expected(monkeypatch):
    fake = _FakeRedis()
    monkeypatch.setattr(caching_module, "get_redis", lambda: fake)
    monkeypatch.setattr(caching_module, "CACHE_TTL_SECONDS", 120)

    caching_module.set_cached_summary(7, {"user_id": 7})
    caching_module.invalidate_summary(7)

    assert caching_module.get_cached_summary(7) is None


def test_zero_ttl_disables_caching_expected(monkeypatch):
    fake = _FakeRedis()
    monkeypatch.setattr(caching_module, "get_redis", lambda: fake)
    monkeypatch.setattr(caching_module, "CACHE_TTL_SECONDS", 0)

    caching_module.set_cached_summary(7, {"user_id": 7})

    assert fake.setex_calls == []


def test_redis_errors_degrade_to_cache_miss_expected(monkeypatch):
    monkeypatch.setattr(caching_module, "get_redis", lambda: _BrokenRedis())
    monkeypatch.setattr(caching_module, "CACHE_TTL_SECONDS", 120)

    assert caching_module.get_cached_summary(7) is None
    caching_module.set_cached_summary(7, {"user_id": 7})
    caching_module.invalidate_summary(7)


def test_undecodable_entry_is_a_miss_expected(monkeypatch):
    fake = _FakeRedis()
    fake._store["summary:7"] = b"{not json"
    monkeypatch.setattr(caching_module, "get_redis", lambda: fake)

    assert caching_module.get_cached_summary(7) is None
