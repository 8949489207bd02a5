"""
Small key/value cache used for short-lived bookkeeping (webhook dedupe keys).

Two backends behind one interface: an in-process cachetools cache for dev and
tests, and Redis when several workers must share what they've seen.
"""

import json
import logging
import threading
from typing import Any, Optional

import redis
from cachetools import TLRUCache

logger = logging.getLogger(__name__)

# Key namespaces
WEBHOOK_SEEN_PREFIX = "webhook:seen:"


def webhook_seen_key(event_id: str) -> str:
    return f"{WEBHOOK_SEEN_PREFIX}{event_id}"


class Cache:
    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError


def _expires(_key, item, now):
    # item is (value, ttl)
    return now + item[1]


class MemoryCache(Cache):
    def __init__(self, maxsize: int = 10000):
        # cachetools caches are not thread-safe on their own
        self._lock = threading.Lock()
        self._data = TLRUCache(maxsize=maxsize, ttu=_expires)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            item = self._data.get(key)
        return default if item is None else item[0]

    def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        with self._lock:
            self._data[key] = (value, ttl)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisCache(Cache):
    """JSON values with native Redis expiry. Read failures degrade to a miss."""

    def __init__(self, url: str):
        self.client = redis.Redis.from_url(url, decode_responses=False)

    def get(self, key: str, default: Any = None) -> Any:
        try:
            raw = self.client.get(key)
        except redis.RedisError:
            logger.warning("cache_get_failed key=%s", key, exc_info=True)
            return default
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        try:
            self.client.setex(key, int(ttl), json.dumps(value, default=str))
            return True
        except redis.RedisError:
            logger.warning("cache_set_failed key=%s", key, exc_info=True)
            return False

    def delete(self, key: str) -> bool:
        try:
            return bool(self.client.delete(key))
        except redis.RedisError:
            logger.warning("cache_delete_failed key=%s", key, exc_info=True)
            return False


def build_cache(url: Optional[str]) -> Cache:
    url = (url or "memory://").strip()
    if url.startswith("memory://"):
        return MemoryCache()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisCache(url)
    raise RuntimeError(f"Unsupported CACHE_URL scheme: {url}")
