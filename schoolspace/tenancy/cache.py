"""
Resolver cache.

Successful tenant resolutions are cached under the school id, the school
code and the namespace with a bounded TTL. Entries go away on TTL expiry
or when `invalidate()` is called for a school (status changes); nothing
else evicts them.

Two backends with the same interface:
- TenantCache: in-process, thread-safe, injectable clock. One loader call
  per key per TTL window, even under concurrent misses.
- RedisTenantCache: shared between worker processes. Degrades to the
  loader when redis is unreachable.
"""
import json
import threading
import weakref
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

import redis

from schoolspace.tenancy.context import ResolvedTenantContext
from schoolspace.utils.logging import get_logger

logger = get_logger(__name__)

Loader = Callable[[], Optional[ResolvedTenantContext]]


def id_key(school_id) -> str:
    return f"id:{school_id}"


def code_key(code: str) -> str:
    return f"code:{code.lower()}"


def namespace_key(namespace: str) -> str:
    return f"ns:{namespace}"


def context_keys(context: ResolvedTenantContext) -> Iterable[str]:
    yield id_key(context.school_id)
    if context.code:
        yield code_key(context.code)
    yield namespace_key(context.namespace)


class TenantCache:
    """
    In-process TTL cache for resolved tenant contexts.

    A ttl_seconds of 0 disables caching, which tests use to force every
    resolution through the registry.
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: Dict[str, Tuple[ResolvedTenantContext, float]] = {}
        self._lock = threading.Lock()
        self._key_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def get(self, key: str) -> Optional[ResolvedTenantContext]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            context, expires_at = entry
            if self._clock() >= expires_at:
                del self._store[key]
                return None
            return context

    def put(self, context: ResolvedTenantContext) -> None:
        if self.ttl_seconds <= 0:
            return
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            for key in context_keys(context):
                self._store[key] = (context, expires_at)

    def get_or_load(self, key: str, loader: Loader) -> Optional[ResolvedTenantContext]:
        """
        Return the cached context for `key`, or call `loader` and cache it.

        Concurrent misses on one key wait for a single loader call. Loader
        exceptions propagate and nothing is cached; a None result is not
        cached either.
        """
        context = self.get(key)
        if context is not None:
            return context
        with self._lock_for(key):
            context = self.get(key)
            if context is not None:
                return context
            context = loader()
            if context is not None:
                self.put(context)
            return context

    def invalidate(self, school_id) -> int:
        """Drop every entry for one school. Returns how many keys went."""
        with self._lock:
            stale = [k for k, (ctx, _) in self._store.items() if ctx.school_id == school_id]
            for key in stale:
                del self._store[key]
        if stale:
            logger.debug(f"Invalidated {len(stale)} cache keys for school {school_id}",
                         extra={"school_id": school_id})
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self):
        with self._lock:
            return len(self._store)


class RedisTenantCache:
    """Redis-backed resolver cache shared by every worker process."""

    def __init__(self, client: "redis.Redis", ttl_seconds: int = 300, prefix: str = "tenant_ctx:"):
        self.client = client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix

    def get(self, key: str) -> Optional[ResolvedTenantContext]:
        try:
            raw = self.client.get(self.prefix + key)
        except redis.RedisError as e:
            logger.error(f"Redis error reading tenant cache: {e}")
            return None
        if raw is None:
            return None
        return ResolvedTenantContext.from_dict(json.loads(raw))

    def put(self, context: ResolvedTenantContext) -> None:
        if self.ttl_seconds <= 0:
            return
        payload = json.dumps(context.to_dict())
        try:
            for key in context_keys(context):
                self.client.setex(self.prefix + key, self.ttl_seconds, payload)
        except redis.RedisError as e:
            logger.error(f"Redis error writing tenant cache: {e}")

    def get_or_load(self, key: str, loader: Loader) -> Optional[ResolvedTenantContext]:
        # No cross-process stampede guard; a miss costs one registry read per worker
        context = self.get(key)
        if context is not None:
            return context
        context = loader()
        if context is not None:
            self.put(context)
        return context

    def invalidate(self, school_id) -> int:
        cached = self.get(id_key(school_id))
        keys = [self.prefix + k for k in context_keys(cached)] if cached else [self.prefix + id_key(school_id)]
        try:
            return int(self.client.delete(*keys) or 0)
        except redis.RedisError as e:
            logger.error(f"Redis error invalidating tenant cache: {e}")
            return 0

    def clear(self) -> None:
        try:
            keys = list(self.client.scan_iter(match=self.prefix + "*"))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            logger.error(f"Redis error clearing tenant cache: {e}")


def build_tenant_cache(settings):
    """Pick the cache backend from settings."""
    if settings.TENANT_CACHE_BACKEND == "redis":
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5
        )
        logger.info("Using redis tenant cache")
        return RedisTenantCache(client, ttl_seconds=settings.TENANT_CACHE_TTL_SECONDS)
    return TenantCache(ttl_seconds=settings.TENANT_CACHE_TTL_SECONDS)
