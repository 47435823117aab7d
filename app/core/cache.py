from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Any

import redis

from app.core.metrics import metrics

logger = logging.getLogger(__name__)


class MemoryCache:
    """Process-local fallback store, bounded to ``max_entries`` keys.

    Expiry uses the monotonic clock. When full, the entry written longest
    ago is evicted first.
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        self._entries: OrderedDict[str, tuple[float | None, Any]] = OrderedDict()
        self._max_entries = max_entries
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            deadline, value = hit
            if deadline is not None and time.monotonic() >= deadline:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        deadline = time.monotonic() + ttl if ttl is not None else None
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (deadline, value)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None


class CacheClient:
    """JSON key-value cache with per-entry TTL.

    Entries are plain JSON values so a snapshot written by one worker can be
    read by another when Redis is configured. Redis errors degrade to the
    process-local store instead of failing the request.
    """

    def __init__(self, redis_url: str | None) -> None:
        self._redis = None
        self._local = MemoryCache()
        self._redis_enabled = False
        if redis_url:
            try:
                self._redis = redis.Redis.from_url(redis_url, decode_responses=True)
                self._redis_enabled = True
            except (redis.RedisError, ValueError) as exc:
                logger.warning("cache redis init failed: %s", exc)
                self._redis = None
                self._redis_enabled = False

    def get_json(self, key: str) -> Any | None:
        if self._redis_enabled and self._redis is not None:
            try:
                value = self._redis.get(key)
                if value is None:
                    return None
                return json.loads(value)
            except (redis.RedisError, json.JSONDecodeError) as exc:
                logger.warning("cache redis get failed: %s", exc)
                metrics.inc("chat_cache_errors_total", {"op": "get"})
        return self._local.get(key)

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        if self._redis_enabled and self._redis is not None:
            try:
                payload = json.dumps(value, ensure_ascii=False)
                if ttl is not None:
                    self._redis.setex(key, ttl, payload)
                else:
                    self._redis.set(key, payload)
                return
            except redis.RedisError as exc:
                logger.warning("cache redis set failed: %s", exc)
                metrics.inc("chat_cache_errors_total", {"op": "set"})
        self._local.set(key, value, ttl)

    def delete(self, key: str) -> None:
        if self._redis_enabled and self._redis is not None:
            try:
                self._redis.delete(key)
            except redis.RedisError as exc:
                logger.warning("cache redis delete failed: %s", exc)
                metrics.inc("chat_cache_errors_total", {"op": "delete"})
        self._local.delete(key)


_cache: CacheClient | None = None


def get_cache() -> CacheClient:
    global _cache
    if _cache is not None:
        return _cache
    from app.core.settings import SETTINGS

    _cache = CacheClient(SETTINGS.redis_url or None)
    return _cache
