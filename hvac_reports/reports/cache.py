"""
Result Cache.

Persistence:
  - In-memory primary: all reads from memory, LRU order, bounded by entry
    count and total payload bytes.
  - Redis write-through: entries survive restarts and are shared between
    workers. A memory miss falls back to Redis.
  - If Redis is unavailable, in-memory only (logs warning).

Keys are "<report_id>:<sha256>" where the digest covers a canonical,
type-tagged encoding of everything that affects the result, so logically
identical requests hash identically regardless of construction order.
"""
import asyncio
import hashlib
import json
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import pydantic
import redis

from hvac_reports.core.constants import (
    CACHE_MAX_BYTES,
    CACHE_MAX_ENTRIES,
    CACHE_TTL_SECONDS,
    REDIS_PREFIX,
    REDIS_URL,
)
from hvac_reports.domain.models import ExecutionParams, ExecutionResult, ReportDefinition
from hvac_reports.reports.errors import CacheCorruption
from hvac_reports.reports.formula import normalize_formula
from hvac_reports.reports.weighting import effective_month
from hvac_reports.utils.log_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# Canonical key
# =============================================================================

def canonical_form(value: Any) -> Any:
    """Type-tagged structure: ["str", "a"] and ["int", 1] never collide."""
    if isinstance(value, Enum):
        return canonical_form(value.value)
    if value is None:
        return ["null"]
    if isinstance(value, bool):
        return ["bool", value]
    if isinstance(value, int):
        return ["int", value]
    if isinstance(value, float):
        return ["float", repr(value)]
    if isinstance(value, str):
        return ["str", value]
    if isinstance(value, datetime):
        return ["datetime", value.isoformat()]
    if isinstance(value, date):
        return ["date", value.isoformat()]
    if isinstance(value, dict):
        return ["map", [[str(k), canonical_form(value[k])] for k in sorted(value, key=str)]]
    if isinstance(value, (list, tuple)):
        return ["list", [canonical_form(v) for v in value]]
    raise TypeError(f"Cannot canonicalize {type(value).__name__}")


def canonical_json(value: Any) -> str:
    return json.dumps(canonical_form(value), separators=(",", ":"), ensure_ascii=False)


def cache_material(
    definition: ReportDefinition,
    params: ExecutionParams,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """The execution-relevant content of a request. Display-only settings are left out."""
    vis = definition.visualization
    weighting = definition.weighting
    seasonal = bool(weighting and weighting.seasonal_adjustment)
    return {
        "data_sources": [
            ds.model_dump(mode="python", by_alias=False) for ds in definition.data_sources
        ],
        "calculated_fields": [
            {"name": cf.name, "formula": normalize_formula(cf.formula), "data_type": cf.data_type}
            for cf in definition.calculated_fields
        ],
        "visualization": {
            "x_axis": vis.x_axis,
            "y_axis": vis.y_axis,
            "group_by": vis.group_by,
            "aggregation": vis.aggregation,
        },
        "weighting": weighting.model_dump(mode="python", by_alias=False) if weighting else None,
        "params": {
            "date_range": (
                {"start": params.date_range.start, "end": params.date_range.end}
                if params.date_range else None
            ),
            "district": params.district,
            "month": effective_month(params, today) if seasonal else None,
        },
    }


def compute_cache_key(
    report_id: str,
    definition: ReportDefinition,
    params: ExecutionParams,
    today: Optional[date] = None,
) -> str:
    digest = hashlib.sha256(
        canonical_json(cache_material(definition, params, today)).encode("utf-8")
    ).hexdigest()
    return f"{report_id}:{digest}"


# =============================================================================
# Redis helper
# =============================================================================

def get_redis(url: Optional[str] = REDIS_URL):
    """Try to connect to Redis. Returns client or None."""
    if not url:
        return None
    try:
        r = redis.Redis.from_url(url, decode_responses=True)
        r.ping()
        return r
    except (redis.RedisError, OSError) as e:
        logger.warning(f"[ResultCache] Redis unavailable: {e}")
        return None


# =============================================================================
# Cache
# =============================================================================

@dataclass
class CacheEntry:
    key: str
    payload: bytes
    created_at: float
    expires_at: float
    last_accessed_at: float
    access_count: int = 0
    size_bytes: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ResultCache:
    """
    TTL + LRU cache of serialized ExecutionResults.

    get/put are atomic under a lock; deserialization happens outside it.
    """

    def __init__(
        self,
        max_entries: int = CACHE_MAX_ENTRIES,
        max_bytes: int = CACHE_MAX_BYTES,
        default_ttl: float = CACHE_TTL_SECONDS,
        redis_client=None,
        clock: Callable[[], float] = time.time,
        redis_prefix: str = REDIS_PREFIX,
    ):
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.default_ttl = default_ttl
        self._redis = redis_client
        self._clock = clock
        self._prefix = redis_prefix
        self._lock = Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._bytes = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._corruptions = 0

    # ------------------------------------------------------------------
    # Internal (call with lock held)
    # ------------------------------------------------------------------

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._bytes -= entry.size_bytes
        return entry

    def _insert(self, entry: CacheEntry) -> None:
        self._remove(entry.key)
        self._entries[entry.key] = entry
        self._bytes += entry.size_bytes
        while self._entries and (len(self._entries) > self.max_entries or self._bytes > self.max_bytes):
            oldest_key, _ = next(iter(self._entries.items()))
            self._remove(oldest_key)
            self._evictions += 1

    # ------------------------------------------------------------------
    # Redis write-through
    # ------------------------------------------------------------------

    @property
    def remote(self) -> bool:
        """True when reads and writes may block on Redis."""
        return self._redis is not None

    def _redis_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _persist(self, entry: CacheEntry, ttl: float) -> None:
        if not self._redis:
            return
        try:
            self._redis.setex(self._redis_key(entry.key), max(1, math.ceil(ttl)), entry.payload.decode("utf-8"))
        except (redis.RedisError, OSError) as e:
            logger.warning(f"[ResultCache] Redis persist failed: {e}")

    def _load_from_redis(self, key: str, now: float) -> Optional[CacheEntry]:
        if not self._redis:
            return None
        try:
            payload = self._redis.get(self._redis_key(key))
            if payload is None:
                return None
            ttl = self._redis.ttl(self._redis_key(key))
        except (redis.RedisError, OSError) as e:
            logger.warning(f"[ResultCache] Redis read failed: {e}")
            return None
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        remaining = ttl if isinstance(ttl, (int, float)) and ttl > 0 else self.default_ttl
        return CacheEntry(
            key=key,
            payload=payload,
            created_at=now,
            expires_at=now + remaining,
            last_accessed_at=now,
            size_bytes=len(payload),
        )

    def _unpersist(self, *keys: str) -> None:
        if not self._redis or not keys:
            return
        try:
            self._redis.delete(*(self._redis_key(k) for k in keys))
        except (redis.RedisError, OSError) as e:
            logger.warning(f"[ResultCache] Redis delete failed: {e}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[ExecutionResult]:
        """Return the stored result, or None on miss, expiry or corruption."""
        now = self._clock()
        with self._lock:
            held = key in self._entries
        # Redis round-trips happen without the lock
        loaded = None if held else self._load_from_redis(key, now)

        with self._lock:
            entry = self._entries.get(key)
            if entry is None and loaded is not None:
                entry = loaded
                self._insert(entry)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                self._remove(key)
                self._expirations += 1
                self._misses += 1
                expired = True
            else:
                expired = False
                entry.access_count += 1
                entry.last_accessed_at = now
                if key in self._entries:
                    self._entries.move_to_end(key)
                self._hits += 1
                payload = entry.payload

        if expired:
            self._unpersist(key)
            return None

        try:
            return ExecutionResult.model_validate_json(payload)
        except (pydantic.ValidationError, ValueError) as e:
            error = CacheCorruption(key, str(e))
            logger.warning(f"[ResultCache] {error.message}; evicting")
            with self._lock:
                self._remove(key)
                self._corruptions += 1
                self._hits -= 1
                self._misses += 1
            self._unpersist(key)
            return None

    def put(self, key: str, result: ExecutionResult, ttl: Optional[float] = None) -> Optional[CacheEntry]:
        ttl = ttl if ttl is not None else self.default_ttl
        payload = result.model_dump_json(by_alias=True).encode("utf-8")
        if len(payload) > self.max_bytes:
            logger.warning(
                f"[ResultCache] Result for {key} is {len(payload)} bytes, over the "
                f"{self.max_bytes} byte limit; not cached"
            )
            return None

        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=payload,
            created_at=now,
            expires_at=now + ttl,
            last_accessed_at=now,
            size_bytes=len(payload),
        )
        with self._lock:
            self._insert(entry)
        self._persist(entry, ttl)
        return entry

    def evict(self, key: str) -> bool:
        with self._lock:
            removed = self._remove(key) is not None
        self._unpersist(key)
        return removed

    def evict_report(self, report_id: str) -> int:
        """Drop every entry belonging to a report."""
        prefix = f"{report_id}:"
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                self._remove(k)
        if self._redis:
            try:
                remote = [
                    k[len(self._prefix):]
                    for k in self._redis.scan_iter(match=f"{self._redis_key(prefix)}*")
                ]
                self._unpersist(*remote)
            except (redis.RedisError, OSError) as e:
                logger.warning(f"[ResultCache] Redis scan failed: {e}")
        if keys:
            logger.info(f"[ResultCache] Evicted {len(keys)} entries for report {report_id}")
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in expired:
                self._remove(k)
            self._expirations += len(expired)
        if expired:
            logger.info(f"[ResultCache] Purged {len(expired)} expired entries")
        return len(expired)

    def entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def clear(self) -> None:
        with self._lock:
            keys = list(self._entries)
            self._entries.clear()
            self._bytes = 0
        self._unpersist(*keys)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "total_bytes": self._bytes,
                "max_entries": self.max_entries,
                "max_bytes": self.max_bytes,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "corruptions": self._corruptions,
                "total_accesses": sum(e.access_count for e in self._entries.values()),
                "redis": self._redis is not None,
            }


# =============================================================================
# Single-flight
# =============================================================================

class InFlightRegistry:
    """
    Concurrent callers for one key share a single computation.

    If the leading computation is cancelled, waiters start their own.
    """

    def __init__(self):
        self._futures: Dict[str, asyncio.Future] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._futures

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> Tuple[T, bool]:
        """Return (result, shared) where shared is True for followers."""
        existing = self._futures.get(key)
        if existing is not None:
            try:
                return await asyncio.shield(existing), True
            except asyncio.CancelledError:
                if existing.cancelled():
                    logger.info(f"[InFlightRegistry] Leader for {key} cancelled; recomputing")
                    return await self.run(key, factory)
                raise

        future = asyncio.get_running_loop().create_future()
        self._futures[key] = future
        try:
            result = await factory()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as e:
            future.set_exception(e)
            future.exception()  # mark retrieved when nobody is waiting
            raise
        else:
            future.set_result(result)
            return result, False
        finally:
            if self._futures.get(key) is future:
                del self._futures[key]
