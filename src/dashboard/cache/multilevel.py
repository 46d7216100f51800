"""
Two-tier read-through cache.

Reads check the fast (in-process) tier first, then the durable (SQLite)
tier. A durable hit is mirrored into the fast tier with the entry's remaining
TTL. Writes always go to the fast tier; durable writes additionally persist
the entry with the same expires_at.

Expiry is lazy: an expired entry is only reclaimed when it is next read, by
delete_by_prefix()/clear(), or when the fast tier reaches max_items and set()
makes room. There is no sweeper thread. Because of that, size and memory
figures are recomputed from the live key sets on every get_stats() call
instead of being tracked incrementally.

A full fast tier drops its expired entries first, then the oldest live one.
A fast-only set() removes any durable copy of the key.

Durable-tier failures are logged and never reach the caller.

get_or_set() does not coalesce concurrent misses for the same key; data only
changes when a sync runs, so an occasional duplicate computation is accepted.
"""
import inspect
import logging
import sys
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from dashboard.cache.entry import CacheEntry, CacheTier

logger = logging.getLogger(__name__)

KEY_SEPARATOR = ":"


def cache_key(*parts: Any) -> str:
    """Join key parts with ':'. The first part is the namespace used for stats."""
    return KEY_SEPARATOR.join(str(p) for p in parts)


def key_prefix(key: str) -> Optional[str]:
    head, sep, _ = key.partition(KEY_SEPARATOR)
    return head if sep else None


@dataclass
class Counters:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    flushes: int = 0
    evictions: int = 0
    size: int = 0
    memory_usage: int = 0
    by_tier: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    by_prefix: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "flushes": self.flushes,
            "evictions": self.evictions,
            "hit_ratio": self.hit_ratio,
            "size": self.size,
            "memory_usage": self.memory_usage,
            "by_tier": self.by_tier,
            "by_prefix": self.by_prefix,
        }


def estimate_size(value: Any) -> int:
    """Rough byte estimate of a cached value."""
    if value is None:
        return 0
    if isinstance(value, (str, bytes)):
        return len(value)
    if isinstance(value, dict):
        return sum(estimate_size(k) + estimate_size(v) for k, v in value.items())
    if isinstance(value, (list, tuple, set, frozenset)):
        return sum(estimate_size(v) for v in value)
    return sys.getsizeof(value)


class MultiLevelCache:
    """
    Usage:
        cache = MultiLevelCache(durable=SqlCacheTier(engine), default_ttl=3600)
        rows = await cache.get_or_set("hours:2025-01-01:2025-01-31", load_hours, ttl=300)
        cache.delete_by_prefix("hours:")
    """

    def __init__(
        self,
        durable=None,
        default_ttl: float = 3600,
        max_items: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            durable: SqlCacheTier (or any object with read/write/remove/keys/
                     clear/count/byte_size). None disables the durable tier.
            default_ttl: TTL in seconds when set() is called without one.
            max_items: Fast-tier capacity. None means unbounded.
            clock: Returns the current time in seconds; injectable for tests.
        """
        self.durable = durable
        self.default_ttl = default_ttl
        self.max_items = max_items
        self._clock = clock
        self._fast: Dict[str, CacheEntry] = {}
        self._global = Counters()
        self._flushes = 0
        self._evictions = 0
        self._by_tier = {CacheTier.FAST: Counters(), CacheTier.DURABLE: Counters()}
        self._by_prefix: Dict[str, Counters] = {}

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._lookup(key)
        return entry.value if entry is not None else default

    def has(self, key: str) -> bool:
        """True if a live entry exists. Does not touch hit/miss counters."""
        now = self._clock()
        entry = self._fast.get(key)
        if entry is not None and not entry.is_expired(now):
            return True
        durable_entry = self._durable_read(key)
        return durable_entry is not None and not durable_entry.is_expired(now)

    def get_ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, or None if the key is absent or expired."""
        now = self._clock()
        entry = self._fast.get(key)
        if entry is None or entry.is_expired(now):
            entry = self._durable_read(key)
        if entry is None or entry.is_expired(now):
            return None
        return entry.remaining(now)

    def get_metadata(self, key: str) -> Optional[Dict[str, Any]]:
        now = self._clock()
        entry = self._fast.get(key)
        if entry is None or entry.is_expired(now):
            entry = self._durable_read(key)
        if entry is None or entry.is_expired(now):
            return None
        return entry.metadata

    def keys(self, tier: Optional[CacheTier] = None) -> List[str]:
        """Union of keys in the requested tier(s), including not-yet-reclaimed expired ones."""
        keys: Dict[str, None] = {}
        if tier in (None, CacheTier.FAST):
            keys.update(dict.fromkeys(self._fast))
        if tier in (None, CacheTier.DURABLE):
            keys.update(dict.fromkeys(self._durable_keys()))
        return list(keys)

    # ─── Writes ───────────────────────────────────────────────────────────────

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tier: CacheTier = CacheTier.FAST,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        entry = CacheEntry(
            value=value,
            created_at=now,
            expires_at=now + ttl,
            tier=tier,
            metadata=metadata,
        )
        self._store_fast(key, entry, now)
        self._record("sets", key, CacheTier.FAST)

        if self.durable is not None:
            if tier == CacheTier.DURABLE:
                try:
                    self.durable.write(key, entry)
                except Exception as exc:
                    logger.error("Durable cache write failed for %s: %s", key, exc)
                else:
                    self._by_tier[CacheTier.DURABLE].sets += 1
            else:
                # A fast-only write supersedes any durable copy.
                try:
                    self.durable.remove(key)
                except Exception as exc:
                    logger.error("Durable cache delete failed for %s: %s", key, exc)
        logger.debug("Cache SET %s ttl=%ss tier=%s", key, ttl, tier.value)

    def update_ttl(self, key: str, ttl: float) -> bool:
        """Give a live entry a new lifetime of `ttl` seconds from now, in every tier holding it."""
        expires_at = self._clock() + ttl
        return self._rewrite(key, lambda entry: replace(entry, expires_at=expires_at))

    def update_metadata(self, key: str, metadata: Dict[str, Any]) -> bool:
        """Merge `metadata` into a live entry's metadata. The expiry is unchanged."""
        return self._rewrite(
            key, lambda entry: replace(entry, metadata={**(entry.metadata or {}), **metadata})
        )

    def delete(self, key: str) -> bool:
        """Remove `key` from both tiers. True if it existed in either."""
        deleted = False
        if self._fast.pop(key, None) is not None:
            deleted = True
            self._by_tier[CacheTier.FAST].deletes += 1
        if self.durable is not None:
            try:
                if self.durable.remove(key):
                    deleted = True
                    self._by_tier[CacheTier.DURABLE].deletes += 1
            except Exception as exc:
                logger.error("Durable cache delete failed for %s: %s", key, exc)
        if deleted:
            self._record("deletes", key)
        return deleted

    def delete_many(self, keys: Iterable[str]) -> int:
        return sum(1 for key in keys if self.delete(key))

    def delete_by_prefix(self, prefix: str) -> int:
        """Delete every key starting with `prefix` in either tier; each key counts once."""
        matching = [k for k in self.keys() if k.startswith(prefix)]
        count = self.delete_many(matching)
        if count:
            logger.info("Cache invalidated %d entries with prefix %r", count, prefix)
        return count

    def clear(self, tier: Optional[CacheTier] = None) -> int:
        """Empty one or both tiers. Returns the number of distinct keys removed."""
        removed = set()
        if tier in (None, CacheTier.FAST):
            removed.update(self._fast)
            self._fast.clear()
        if tier in (None, CacheTier.DURABLE) and self.durable is not None:
            try:
                removed.update(self.durable.keys())
                self.durable.clear()
            except Exception as exc:
                logger.error("Durable cache clear failed: %s", exc)
        self._flushes += 1
        logger.info("Cache cleared (%s): %d keys", tier.value if tier else "all tiers", len(removed))
        return len(removed)

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Union[Any, Awaitable[Any]]],
        ttl: Optional[float] = None,
        tier: CacheTier = CacheTier.FAST,
    ) -> Any:
        """Return the cached value, or compute it once with `factory` and cache it."""
        entry = self._lookup(key)
        if entry is not None:
            return entry.value
        value = factory()
        if inspect.isawaitable(value):
            value = await value
        self.set(key, value, ttl=ttl, tier=tier)
        return value

    # ─── Statistics ───────────────────────────────────────────────────────────

    def get_stats(self) -> CacheStats:
        now = self._clock()
        fast_live = {k: e for k, e in self._fast.items() if not e.is_expired(now)}
        durable_keys = self._durable_keys()
        durable_size = len(durable_keys)
        durable_bytes = 0
        if self.durable is not None:
            try:
                durable_bytes = self.durable.byte_size()
            except Exception as exc:
                logger.error("Durable cache size query failed: %s", exc)

        memory = sum(len(k) + estimate_size(e.value) for k, e in fast_live.items())

        prefix_sizes: Dict[str, int] = {}
        for key in set(fast_live) | set(durable_keys):
            prefix = key_prefix(key)
            if prefix is not None:
                prefix_sizes[prefix] = prefix_sizes.get(prefix, 0) + 1

        return CacheStats(
            hits=self._global.hits,
            misses=self._global.misses,
            sets=self._global.sets,
            deletes=self._global.deletes,
            flushes=self._flushes,
            evictions=self._evictions,
            size=len(set(fast_live) | set(durable_keys)),
            memory_usage=memory + durable_bytes,
            by_tier={
                CacheTier.FAST.value: self._tier_stats(CacheTier.FAST, len(fast_live)),
                CacheTier.DURABLE.value: self._tier_stats(CacheTier.DURABLE, durable_size),
            },
            by_prefix={
                prefix: {
                    "hits": c.hits,
                    "misses": c.misses,
                    "sets": c.sets,
                    "deletes": c.deletes,
                    "hit_ratio": c.hit_ratio,
                    "size": prefix_sizes.get(prefix, 0),
                }
                for prefix, c in sorted(self._by_prefix.items())
            },
        )

    def _tier_stats(self, tier: CacheTier, size: int) -> Dict[str, Any]:
        c = self._by_tier[tier]
        return {"hits": c.hits, "sets": c.sets, "deletes": c.deletes, "size": size}

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        now = self._clock()

        entry = self._fast.get(key)
        if entry is not None:
            if not entry.is_expired(now):
                self._record("hits", key, CacheTier.FAST)
                return entry
            del self._fast[key]

        durable_entry = self._durable_read(key)
        if durable_entry is not None:
            if not durable_entry.is_expired(now):
                self._store_fast(key, replace(durable_entry, mirrored=True), now)
                self._record("hits", key, CacheTier.DURABLE)
                return durable_entry
            try:
                self.durable.remove(key)
            except Exception as exc:
                logger.error("Durable cache delete failed for %s: %s", key, exc)
            else:
                self._by_tier[CacheTier.DURABLE].deletes += 1
                self._record("deletes", key)
            logger.debug("Cache EXPIRED %s", key)

        self._record("misses", key)
        return None

    def _store_fast(self, key: str, entry: CacheEntry, now: float) -> None:
        if self.max_items is not None and key not in self._fast and len(self._fast) >= self.max_items:
            self._make_room(now)
        self._fast[key] = entry

    def _make_room(self, now: float) -> None:
        victims = [k for k, e in self._fast.items() if e.is_expired(now)]
        if not victims and self._fast:
            victims = [min(self._fast, key=lambda k: self._fast[k].created_at)]
        for key in victims:
            del self._fast[key]
            self._by_tier[CacheTier.FAST].deletes += 1
        self._evictions += len(victims)
        logger.debug("Cache fast tier full; evicted %d entries", len(victims))

    def _rewrite(self, key: str, change: Callable[[CacheEntry], CacheEntry]) -> bool:
        now = self._clock()
        entry = self._fast.get(key)
        if entry is None or entry.is_expired(now):
            entry = self._durable_read(key)
            if entry is None or entry.is_expired(now):
                return False
            entry = replace(entry, mirrored=True)

        updated = change(entry)
        self._store_fast(key, updated, now)
        if updated.tier == CacheTier.DURABLE and self.durable is not None:
            try:
                self.durable.write(key, updated)
            except Exception as exc:
                logger.error("Durable cache update failed for %s: %s", key, exc)
        return True

    def _durable_read(self, key: str) -> Optional[CacheEntry]:
        if self.durable is None:
            return None
        try:
            return self.durable.read(key)
        except Exception as exc:
            logger.error("Durable cache read failed for %s: %s", key, exc)
            return None

    def _durable_keys(self) -> List[str]:
        if self.durable is None:
            return []
        try:
            return self.durable.keys()
        except Exception as exc:
            logger.error("Durable cache key listing failed: %s", exc)
            return []

    def _record(self, action: str, key: str, tier: Optional[CacheTier] = None) -> None:
        setattr(self._global, action, getattr(self._global, action) + 1)
        if tier is not None and action in ("hits", "sets"):
            counters = self._by_tier[tier]
            setattr(counters, action, getattr(counters, action) + 1)
        prefix = key_prefix(key)
        if prefix is not None:
            counters = self._by_prefix.setdefault(prefix, Counters())
            setattr(counters, action, getattr(counters, action) + 1)
