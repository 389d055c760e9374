from __future__ import annotations

from collections import OrderedDict
from dataclasses import asdict, dataclass, field
import hashlib
import json
import logging
import time
from typing import Any, Callable, Iterable

from redis.asyncio import Redis

from tabula.core.config import Settings, get_settings
from tabula.domain.payloads import FilterConfig, FilterPayload


logger = logging.getLogger(__name__)

CACHE_BACKEND_MEMORY = "memory"
CACHE_BACKEND_REDIS = "redis"

# Row timestamp sorts; every row write moves updatedAt.
_TIMESTAMP_SORTS = frozenset({"createdAt", "updatedAt"})


@dataclass
class CacheEntry:
    data: list[dict[str, Any]]
    pagination: dict[str, Any]
    inserted_at: float
    filter_hash: str
    table_id: int
    # Raw filter columns and sort column let targeted invalidation skip unrelated entries.
    filter_column_ids: list[int] = field(default_factory=list)
    sort_by: str = "id"
    # Pages that embed cells or match on global search depend on every column's values.
    include_cells: bool = False
    global_search: bool = False
    original_table_size: int = 0

    def touches(self, column_ids: set[int]) -> bool:
        if self.include_cells or self.global_search or self.sort_by in _TIMESTAMP_SORTS:
            return True
        if any(column_id in column_ids for column_id in self.filter_column_ids):
            return True
        return self.sort_by != "id" and self.sort_by in {str(column_id) for column_id in column_ids}

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        return cls(**json.loads(raw))


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def canonical_filters(filters: Iterable[FilterConfig]) -> list[dict[str, Any]]:
    # Order by the filter's stable identity so list position never changes the key.
    ordered = sorted(filters, key=lambda item: item.stable_id())
    return [
        {
            "columnId": item.column_id,
            "operator": item.operator,
            "value": item.value,
            "secondValue": item.second_value,
        }
        for item in ordered
    ]


def build_filter_hash(filters: Iterable[FilterConfig]) -> str:
    return hashlib.sha256(_canonical(canonical_filters(filters)).encode("utf-8")).hexdigest()


def build_cache_key(
    table_id: int,
    payload: FilterPayload,
    *,
    page_size: int,
    sort_by: str | None = None,
    column_scope: Iterable[int] | None = None,
    reference_scope: Iterable[int] | None = None,
) -> str:
    """Fingerprint a filtered listing request.

    Semantically identical requests produce the same key: filters are sorted by
    their stable identity, the global search is trimmed and ``sort_by`` is the
    validated sort key. The include-cells flag, the caller's readable-column
    scope and the referenced tables the caller may read are part of the key so
    callers with different grants never share a cached page.
    """
    if sort_by is None:
        sort_by = (payload.sort_by or "id").strip()
    material = {
        "tableId": table_id,
        "filters": canonical_filters(payload.filters),
        "globalSearch": payload.global_search.strip(),
        "sortBy": sort_by,
        "sortOrder": payload.sort_order,
        "page": payload.page,
        "pageSize": page_size,
        "includeCells": payload.include_cells,
        "columnScope": sorted(column_scope) if column_scope is not None else None,
        "referenceScope": sorted(reference_scope) if reference_scope is not None else None,
    }
    return hashlib.sha256(_canonical(material).encode("utf-8")).hexdigest()


class FilterCache:
    """Interface for filtered-listing result caches."""

    async def get(self, key: str) -> CacheEntry | None:
        raise NotImplementedError

    async def set(self, key: str, entry: CacheEntry) -> None:
        raise NotImplementedError

    async def invalidate_table(self, table_id: int) -> int:
        raise NotImplementedError

    async def invalidate_filters(self, table_id: int, affected_column_ids: Iterable[int]) -> int:
        raise NotImplementedError

    async def evict_expired(self) -> int:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError

    def now(self) -> float:
        raise NotImplementedError


class InMemoryFilterCache(FilterCache):
    def __init__(
        self,
        *,
        ttl_s: float = 300,
        max_entries: int = 1000,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._ttl_s = float(ttl_s)
        self._max_entries = max(1, int(max_entries))
        self._time_provider = time_provider or time.time
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def now(self) -> float:
        return self._time_provider()

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at >= self._ttl_s

    async def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self.now()):
            # Stale reads evict the entry and count as a miss.
            del self._entries[key]
            return None
        return entry

    async def set(self, key: str, entry: CacheEntry) -> None:
        # Re-inserting moves the key to the newest position; reads never do.
        self._entries.pop(key, None)
        self._entries[key] = entry
        while len(self._entries) > self._max_entries:
            evicted_key, _ = self._entries.popitem(last=False)
            logger.debug("filter_cache_evicted key=%s", evicted_key)

    async def invalidate_table(self, table_id: int) -> int:
        keys = [key for key, entry in self._entries.items() if entry.table_id == table_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def invalidate_filters(self, table_id: int, affected_column_ids: Iterable[int]) -> int:
        affected = {int(column_id) for column_id in affected_column_ids}
        keys = [
            key
            for key, entry in self._entries.items()
            if entry.table_id == table_id and entry.touches(affected)
        ]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def evict_expired(self) -> int:
        now = self.now()
        keys = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def clear(self) -> None:
        self._entries.clear()


class RedisFilterCache(FilterCache):
    """Shared cache for multi-instance deployments.

    Entries are stored under ``{prefix}:entry:{key}`` with a Redis expiry, a per-table
    set tracks keys for invalidation, and a sorted set scored by insertion time keeps
    the global size bound and drives oldest-first eviction.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str,
        ttl_s: float = 300,
        max_entries: int = 1000,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._ttl_s = float(ttl_s)
        self._max_entries = max(1, int(max_entries))
        self._time_provider = time_provider or time.time

    def now(self) -> float:
        return self._time_provider()

    def _entry_key(self, key: str) -> str:
        return f"{self._prefix}:entry:{key}"

    def _table_key(self, table_id: int) -> str:
        return f"{self._prefix}:table:{table_id}"

    def _index_key(self) -> str:
        return f"{self._prefix}:index"

    @staticmethod
    def _member(table_id: int, key: str) -> str:
        return f"{table_id}:{key}"

    async def _remove(self, members: list[str]) -> int:
        if not members:
            return 0
        pipe = self._redis.pipeline(transaction=False)
        for member in members:
            table_id, key = member.split(":", 1)
            pipe.delete(self._entry_key(key))
            pipe.srem(self._table_key(int(table_id)), key)
        pipe.zrem(self._index_key(), *members)
        await pipe.execute()
        return len(members)

    async def get(self, key: str) -> CacheEntry | None:
        raw = await self._redis.get(self._entry_key(key))
        if raw is None:
            return None
        entry = CacheEntry.from_json(raw)
        if self.now() - entry.inserted_at >= self._ttl_s:
            await self._remove([self._member(entry.table_id, key)])
            return None
        return entry

    async def set(self, key: str, entry: CacheEntry) -> None:
        ttl_ms = max(1, int(self._ttl_s * 1000))
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(self._entry_key(key), entry.to_json(), px=ttl_ms)
        pipe.sadd(self._table_key(entry.table_id), key)
        pipe.zadd(self._index_key(), {self._member(entry.table_id, key): entry.inserted_at})
        pipe.zcard(self._index_key())
        results = await pipe.execute()
        size = int(results[-1])
        if size > self._max_entries:
            overflow = await self._redis.zrange(self._index_key(), 0, size - self._max_entries - 1)
            await self._remove([str(member) for member in overflow])

    async def invalidate_table(self, table_id: int) -> int:
        keys = [str(key) for key in await self._redis.smembers(self._table_key(table_id))]
        removed = await self._remove([self._member(table_id, key) for key in keys])
        await self._redis.delete(self._table_key(table_id))
        return removed

    async def invalidate_filters(self, table_id: int, affected_column_ids: Iterable[int]) -> int:
        affected = {int(column_id) for column_id in affected_column_ids}
        keys = [str(key) for key in await self._redis.smembers(self._table_key(table_id))]
        if not keys:
            return 0
        raw_entries = await self._redis.mget([self._entry_key(key) for key in keys])
        doomed: list[str] = []
        for key, raw in zip(keys, raw_entries):
            # Entries that already expired in Redis only need their index cleaned up.
            if raw is None or CacheEntry.from_json(raw).touches(affected):
                doomed.append(self._member(table_id, key))
        return await self._remove(doomed)

    async def evict_expired(self) -> int:
        cutoff = self.now() - self._ttl_s
        members = await self._redis.zrangebyscore(self._index_key(), "-inf", cutoff)
        return await self._remove([str(member) for member in members])

    async def clear(self) -> None:
        members = [str(member) for member in await self._redis.zrange(self._index_key(), 0, -1)]
        await self._remove(members)


def build_filter_cache(settings: Settings | None = None) -> FilterCache:
    # Select the cache backend from settings; memory is the single-process default.
    settings = settings or get_settings()
    backend = settings.filter_cache_backend.lower()
    if backend == CACHE_BACKEND_REDIS:
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisFilterCache(
            redis,
            prefix=settings.filter_cache_redis_prefix,
            ttl_s=settings.filter_cache_ttl_s,
            max_entries=settings.filter_cache_max_entries,
        )
    if backend != CACHE_BACKEND_MEMORY:
        logger.warning("filter_cache_backend_unknown backend=%s fallback=memory", backend)
    return InMemoryFilterCache(
        ttl_s=settings.filter_cache_ttl_s,
        max_entries=settings.filter_cache_max_entries,
    )
