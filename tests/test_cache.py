import pytest

from subflow.cache import MemoryCache, RedisCache, build_cache, webhook_seen_key


def test_memory_cache_roundtrip():
    cache = MemoryCache()
    assert cache.get("k") is None
    assert cache.get("k", "fallback") == "fallback"
    cache.set("k", {"v": 1}, ttl=60)
    assert cache.get("k") == {"v": 1}
    assert cache.delete("k") is True
    assert cache.delete("k") is False

def test_webhook_key_namespace():
    assert webhook_seen_key("evt_1") == "webhook:seen:evt_1"

def test_build_cache_schemes():
    assert isinstance(build_cache(None), MemoryCache)
    assert isinstance(build_cache("redis://localhost:6379/1"), RedisCache)
    with pytest.raises(RuntimeError):
        build_cache("memcached://localhost")
