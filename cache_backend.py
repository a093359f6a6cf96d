"""Shared cache for LLM responses.

Concept explanations read the same for every student, so resilient_llm_call
stores them here for CONCEPT_EXPLANATION_CACHE_TTL seconds. With REDIS_URL
set, every worker shares one Redis keyspace under "bootcamp:"; without it
(or when Redis is unreachable at startup) each process keeps a TTLCache.

Values go in and out as JSON. Redis errors after startup count as misses.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Protocol

import redis

from ai_resilience import TTLCache

logger = logging.getLogger(__name__)

KEY_PREFIX = "bootcamp:"


class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, ttl: int = 300) -> None: ...
    def delete(self, key: str) -> None: ...
    def clear(self) -> None: ...
    def cleanup(self) -> int: ...


def _dump(value: Any) -> str:
    # always JSON, so text such as "42" comes back as a string
    return json.dumps(value)


def _load(raw: str | bytes) -> Any:
    text = raw.decode() if isinstance(raw, bytes) else raw
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class InMemoryCache:
    """One TTLCache per process."""

    def __init__(self) -> None:
        self._entries = TTLCache()

    def get(self, key: str) -> Any | None:
        raw = self._entries.get(key)
        return _load(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        self._entries.set(key, _dump(value), ttl)

    def delete(self, key: str) -> None:
        self._entries.delete(key)

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        return self._entries.cleanup()


class RedisCache:
    """Namespaced keys in Redis; SETEX carries the TTL."""

    def __init__(self, redis_client, prefix: str = KEY_PREFIX) -> None:
        self._client = redis_client
        self._prefix = prefix

    @contextmanager
    def _tolerant(self, op: str, key: str = "") -> Iterator[None]:
        try:
            yield
        except redis.RedisError as e:
            logger.warning("Redis %s failed%s: %s", op, f" for {key}" if key else "", e)

    def get(self, key: str) -> Any | None:
        raw = None
        with self._tolerant("GET", key):
            raw = self._client.get(self._prefix + key)
        return _load(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        with self._tolerant("SETEX", key):
            self._client.setex(self._prefix + key, ttl, _dump(value))

    def delete(self, key: str) -> None:
        with self._tolerant("DEL", key):
            self._client.delete(self._prefix + key)

    def clear(self) -> None:
        """Delete this service's keys only; the rest of the database is untouched."""
        with self._tolerant("SCAN/DEL"):
            keys = list(self._client.scan_iter(match=f"{self._prefix}*"))
            if keys:
                self._client.delete(*keys)

    def cleanup(self) -> int:
        return 0


_cache: CacheBackend | None = None


def init_cache(app) -> None:
    """Pick the backend for this process. Called from create_app()."""
    global _cache

    url = app.config.get("REDIS_URL") or ""
    if url:
        try:
            client = redis.Redis.from_url(url, decode_responses=False)
            client.ping()
        except redis.RedisError as e:
            app.logger.warning("Redis unreachable (%s); using in-process cache", e)
        else:
            _cache = RedisCache(client)
            app.logger.info("LLM response cache: redis")
            return

    _cache = InMemoryCache()
    app.logger.info("LLM response cache: in-process")


def get_cache() -> CacheBackend:
    """Active backend; an in-process cache if init_cache() never ran."""
    global _cache
    if _cache is None:
        _cache = InMemoryCache()
    return _cache
