"""
Redis cache for public product snapshots.

Values are JSON documents stored under ``{prefix}:{namespace}:{key}``.
Every operation degrades to a cache miss when Redis is down, so catalog
reads fall back to the database and never fail on cache errors.
"""
import json
import logging
from typing import Any, Callable, Optional

import redis
from flask import Flask, current_app
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CacheService:
    """Namespaced JSON cache-aside on top of one Redis client."""

    def __init__(self, app: Optional[Flask] = None):
        self.client: Optional[redis.Redis] = None
        self.prefix = 'storefront'

        if app:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        self.prefix = app.config.get('CACHE_KEY_PREFIX', 'storefront')
        if not app.config.get('CACHE_ENABLED', True):
            logger.info("[CACHE] Disabled by CACHE_ENABLED")
            return

        url = app.config.get('REDIS_URL', 'redis://redis:6379/0')
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=3,
            health_check_interval=30,
        )
        try:
            client.ping()
        except RedisError as e:
            logger.warning(f"[CACHE] Redis unreachable at {url}: {e}. Serving uncached reads.")
            return

        self.client = client
        logger.info(f"[CACHE] Redis connected: {url}")

    def is_available(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(self.client.ping())
        except RedisError:
            return False

    def key(self, namespace: str, key) -> str:
        return f"{self.prefix}:{namespace}:{key}"

    def get(self, namespace: str, key) -> Optional[Any]:
        if self.client is None:
            return None
        try:
            raw = self.client.get(self.key(namespace, key))
            return json.loads(raw) if raw is not None else None
        except (RedisError, ValueError) as e:
            logger.warning(f"[CACHE] GET {namespace}:{key} failed: {e}")
            return None

    def set(self, namespace: str, key, value: Any, ttl: Optional[int] = None) -> bool:
        if self.client is None:
            return False
        ttl = ttl or current_app.config.get('CACHE_DEFAULT_TTL', 60)
        try:
            # Dates and Decimals are stored as strings
            self.client.setex(self.key(namespace, key), ttl, json.dumps(value, default=str))
            return True
        except (RedisError, TypeError) as e:
            logger.warning(f"[CACHE] SET {namespace}:{key} failed: {e}")
            return False

    def delete(self, namespace: str, *keys) -> int:
        """Evict one or more keys of a namespace. Returns how many existed."""
        if self.client is None or not keys:
            return 0
        try:
            return self.client.delete(*(self.key(namespace, key) for key in keys))
        except RedisError as e:
            logger.warning(f"[CACHE] DEL {namespace}:{','.join(map(str, keys))} failed: {e}")
            return 0

    def memoize(self, namespace: str, key, loader: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """Return the cached value, or load it, store it and return it."""
        cached = self.get(namespace, key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(namespace, key, value, ttl)
        return value


_cache_service: Optional[CacheService] = None


def init_cache(app: Flask) -> None:
    global _cache_service
    _cache_service = CacheService(app)
    app.extensions['cache'] = _cache_service


def get_cache() -> CacheService:
    if _cache_service is None:
        raise RuntimeError("Cache not initialized. Call init_cache(app) first.")
    return _cache_service
