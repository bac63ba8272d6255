"""
Redis-backed storage for report results and stock figures.

Report results live under keys that embed a per-context version counter:

    {prefix}:{context}:version            integer, INCR on invalidation
    {prefix}:{context}:v{n}:{md5(args)}   one cached ReportResult

Invalidating a context is a single INCR. Keys built before the bump are
never read again and expire through their TTL, so a lookup write costs
one round trip no matter how many report variants were cached.

Redis being down is never an error here: reads miss, writes are dropped
and reports are computed straight from DuckDB.
"""
import asyncio
import hashlib
import json
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import redis.asyncio as redis

from lookup_analytics.config import config
from lookup_analytics.events import AnalyticsEvent, EventBus, emit_cache_invalidated
from lookup_analytics.observability import Timer, get_logger

logger = get_logger(__name__)

# Round trips slower than this are logged at WARNING
SLOW_CACHE_MS = 250.0

_UNAVAILABLE = object()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    errors: int = 0
    sets: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups * 100 if lookups else 0.0

    def to_dict(self) -> dict:
        return {**asdict(self), "hit_rate_percent": round(self.hit_rate, 2)}

    def reset(self) -> None:
        for name in asdict(self):
            setattr(self, name, 0)


class RedisCache:
    """
    JSON values in Redis with a TTL, degrading to a no-op.

    Constructor arguments default to ``config.cache`` at call time.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        enabled: Optional[bool] = None,
        default_ttl: Optional[int] = None,
    ):
        self.url = url or config.cache.url
        self.enabled = config.cache.enabled if enabled is None else enabled
        self.default_ttl = default_ttl or config.cache.ttl_seconds
        self._client = None
        self._connected = False
        self._stats = CacheStats()
        self._lock = asyncio.Lock()

    async def connect(self) -> bool:
        """Open the client and PING it; False leaves the cache in no-op mode."""
        if not self.enabled:
            logger.info("Report cache disabled (CACHE_ENABLED=false)")
            return False

        async with self._lock:
            if self._client is None:
                self._client = redis.from_url(
                    self.url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5.0,
                    socket_connect_timeout=5.0,
                )
            try:
                await self._client.ping()
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Redis unreachable at {self.url}, reports run uncached: {e}")
                self._connected = False
                return False

        self._connected = True
        logger.info(f"Report cache connected: {self.url}")
        return True

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    async def _command(self, op: str, key: str, call: Callable[[Any], Awaitable[Any]]) -> Any:
        """Run one client call; returns _UNAVAILABLE instead of raising."""
        if not self.is_connected:
            return _UNAVAILABLE
        try:
            with Timer(f"cache_{op}", logger, SLOW_CACHE_MS):
                return await call(self._client)
        except (redis.RedisError, OSError) as e:
            self._stats.errors += 1
            logger.debug(f"Cache {op} failed for {key}: {e}")
            return _UNAVAILABLE

    async def get(self, key: str) -> Optional[Any]:
        """Decoded value, or None on a miss, a bad payload or no Redis."""
        raw = await self._command("get", key, lambda client: client.get(key))
        if raw is _UNAVAILABLE or raw is None:
            self._stats.misses += 1
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            self._stats.errors += 1
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            self._stats.errors += 1
            logger.warning(f"Refusing to cache unserializable value under {key}: {e}")
            return False

        ttl = ttl or self.default_ttl
        result = await self._command("set", key, lambda client: client.setex(key, ttl, payload))
        if result is _UNAVAILABLE:
            return False
        self._stats.sets += 1
        return True

    async def delete(self, *keys: str) -> int:
        """Remove keys; returns how many existed (0 without Redis)."""
        if not keys:
            return 0
        removed = await self._command("delete", ",".join(keys), lambda client: client.delete(*keys))
        if removed is _UNAVAILABLE:
            return 0
        self._stats.invalidations += int(removed)
        return int(removed)

    async def incr(self, key: str) -> Optional[int]:
        value = await self._command("incr", key, lambda client: client.incr(key))
        if value is _UNAVAILABLE:
            logger.warning(f"Could not bump {key}; cached reports may be stale until TTL")
            return None
        return int(value)

    def get_stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "connected": self.is_connected,
            "url": self.url if self.is_connected else None,
            **self._stats.to_dict(),
        }

    def reset_stats(self) -> None:
        self._stats.reset()


class ReportCache:
    """Versioned report results, keyed by (context, normalized query args)."""

    def __init__(
        self,
        cache: RedisCache,
        bus: Optional[EventBus] = None,
        prefix: Optional[str] = None,
        ttl: Optional[int] = None,
    ):
        self.cache = cache
        self.bus = bus
        self.prefix = prefix or config.cache.key_prefix
        self.ttl = ttl

    def version_key(self, context: str) -> str:
        return f"{self.prefix}:{context}:version"

    async def version(self, context: str) -> int:
        """Current version of a context (0 until first invalidation)."""
        value = await self.cache.get(self.version_key(context))
        try:
            return int(value) if value is not None else 0
        except (TypeError, ValueError):
            return 0

    async def build_key(self, context: str, query_args: Dict[str, Any]) -> str:
        """
        Equal args map to the same key within one context version,
        whatever their insertion order.
        """
        canonical = json.dumps(query_args, sort_keys=True, default=str)
        digest = hashlib.md5(canonical.encode()).hexdigest()
        return f"{self.prefix}:{context}:v{await self.version(context)}:{digest}"

    async def get(self, key: str) -> Optional[Any]:
        return await self.cache.get(key)

    async def set(self, key: str, value: Any) -> bool:
        return await self.cache.set(key, value, self.ttl)

    async def invalidate(self, context: str, reason: str = "lookup_updated") -> Optional[int]:
        """Move a context to a new key space; None when Redis is unavailable."""
        version = await self.cache.incr(self.version_key(context))
        logger.debug(
            "Report cache invalidated",
            extra={"context": context, "version": version, "reason": reason},
        )
        if self.bus is not None:
            await emit_cache_invalidated(self.bus, context, version, reason=reason)
        return version

    async def invalidate_many(self, contexts: Iterable[str], reason: str = "lookup_updated") -> None:
        for context in sorted(set(contexts)):
            await self.invalidate(context, reason)


def register_cache_invalidation_handlers(bus: EventBus, report_cache: ReportCache) -> None:
    """Bump every report context a lookup write feeds, on LOOKUP_UPDATED."""

    @bus.on(AnalyticsEvent.LOOKUP_UPDATED)
    async def invalidate_on_lookup_updated(data: dict):
        contexts = data.get("contexts") or []
        await report_cache.invalidate_many(contexts, reason=data.get("sync_type", "lookup_updated"))

    logger.debug("Report cache invalidation handlers registered")
