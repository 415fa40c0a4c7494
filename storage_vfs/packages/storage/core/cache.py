"""缓存服务：使用 Redis 或内存后端缓存存储策略等热点数据。"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis

from .config import get_settings
from .logger import logger


class CacheService:
    """缓存后端基类，值统一为字符串，序列化由调用方负责。"""

    def get(self, key: str) -> Optional[str]:  # pragma: no cover - interface definition
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:  # pragma: no cover
        raise NotImplementedError

    def delete(self, *keys: str) -> None:  # pragma: no cover
        raise NotImplementedError


class RedisCacheService(CacheService):
    """基于 Redis 的缓存实现。"""

    def __init__(self, url: str) -> None:
        self._client = redis.Redis.from_url(url, decode_responses=True)
        self._client.ping()

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds and ttl_seconds > 0:
            self._client.set(key, value, ex=ttl_seconds)
        else:
            self._client.set(key, value)

    def delete(self, *keys: str) -> None:
        if keys:
            self._client.delete(*keys)


class InMemoryCacheService(CacheService):
    """内存后端用于测试或缺少 Redis 时的回退实现。"""

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            record = self._store.get(key)
            if record is None:
                return None
            value, expires_at = record
            if expires_at is not None and expires_at <= self._now():
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None
        if ttl_seconds and ttl_seconds > 0:
            expires_at = self._now() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._store[key] = (value, expires_at)

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)


_cache: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    """返回进程级缓存实例，Redis 不可用时回退到内存实现。"""
    global _cache
    if _cache is not None:
        return _cache

    settings = get_settings()
    if settings.cache_backend.lower() == "memory":
        _cache = InMemoryCacheService()
        return _cache

    try:
        _cache = RedisCacheService(settings.redis_url)
        logger.info("Cache initialized with Redis at %s", settings.redis_url)
    except redis.RedisError as exc:  # pragma: no cover - fallback path
        logger.warning("Redis unavailable (%s), falling back to in-memory cache", exc)
        _cache = InMemoryCacheService()
    return _cache
