"""Redis-backed read cache for reporting queries; falls through to the database when
Redis is not configured or unavailable.

Invalidation bumps a namespace version instead of deleting keys, so one INCR retires
every cached report at once and stale entries simply expire.
"""
from __future__ import annotations
import json
import logging
from typing import Any, Callable
import redis
from redis.exceptions import RedisError
from prometheus_client import Counter
from ecosystem_analytics.infrastructure.metrics import registry

logger = logging.getLogger(__name__)

VERSION_KEY = "cache:ecosystem:version"

CACHE_HITS = Counter('query_cache_hits_total', 'Reporting cache hits', ['report'], registry=registry)
CACHE_MISSES = Counter('query_cache_misses_total', 'Reporting cache misses', ['report'], registry=registry)


class QueryCache:
    def __init__(self, redis_url: str | None, ttl_seconds: int = 30, client: redis.Redis | None = None):
        self.ttl_seconds = ttl_seconds
        self._client = client
        if self._client is None and redis_url and ttl_seconds > 0:
            self._client = redis.Redis.from_url(redis_url, socket_timeout=0.5, socket_connect_timeout=0.5)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _key(self, report: str, params: dict) -> str:
        version = self._client.get(VERSION_KEY) or b"0"
        if isinstance(version, bytes):
            version = version.decode()
        return f"cache:ecosystem:{version}:{report}:{json.dumps(params, sort_keys=True, default=str)}"

    def get_or_compute(self, report: str, params: dict, compute: Callable[[], Any]) -> Any:
        if not self.enabled:
            return compute()
        try:
            key = self._key(report, params)
            cached = self._client.get(key)
        except RedisError as e:
            logger.warning("query cache unavailable: %s", e)
            return compute()
        if cached is not None:
            CACHE_HITS.labels(report=report).inc()
            return json.loads(cached)
        CACHE_MISSES.labels(report=report).inc()
        value = compute()
        try:
            self._client.setex(key, self.ttl_seconds, json.dumps(value, default=str))
        except RedisError as e:
            logger.warning("query cache write failed: %s", e)
        return value

    def invalidate(self) -> None:
        if not self.enabled:
            return
        try:
            self._client.incr(VERSION_KEY)
        except RedisError as e:
            logger.warning("query cache invalidation failed: %s", e)
