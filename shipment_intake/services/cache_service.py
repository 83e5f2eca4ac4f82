"""Read cache and the coordinator that keeps it fresh after committed mutations.

Correctness of stock and records never depends on this module, only the
freshness of reads does. Invalidation runs after the mutating transaction
commits and before the mutating request returns, so the mutating actor always
reads its own writes; other readers converge within the entry's TTL.
"""

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from shipment_intake.config import settings

logger = logging.getLogger(__name__)

INVENTORY_ITEM = "inventory_item"
CUSTOMER = "customer"
CUSTOMER_RECORDS = "customer_records"
SUMMARY = "summary"

DASHBOARD_KEY = "dashboard:metrics"


def stock_key(item_id: str) -> str:
    return f"inventory:{item_id}:stock"


def customer_key(customer_id: str) -> str:
    return f"customer:{customer_id}"


def customer_records_key(customer_id: str) -> str:
    return f"customer:{customer_id}:records"


def summary_key(period: str) -> str:
    return f"summary:{period}"


_ENTITY_KEYS: dict[str, Callable[[str], list[str]]] = {
    INVENTORY_ITEM: lambda entity_id: [stock_key(entity_id)],
    CUSTOMER: lambda entity_id: [customer_key(entity_id)],
    CUSTOMER_RECORDS: lambda entity_id: [customer_records_key(entity_id)],
    SUMMARY: lambda entity_id: [summary_key(entity_id)],
}


class ReadCache:
    """In-process TTL cache with per-key generations.

    A load that started before an invalidation of its key does not store
    its (possibly stale) result.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def get_or_load(self, key: str, ttl: float, loader: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[1] > self._clock():
                return entry[0]
            generation = self._generations.get(key, 0)

        value = loader()

        with self._lock:
            if self._generations.get(key, 0) == generation:
                self._entries[key] = (value, self._clock() + ttl)
        return value

    def delete(self, key: str) -> bool:
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            return self._entries.pop(key, None) is not None

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            for key in self._entries:
                self._generations[key] = self._generations.get(key, 0) + 1
            self._entries.clear()


_MISSING = object()


@dataclass(frozen=True)
class InvalidationEvent:
    seq: int
    entity_type: str
    entity_id: str
    keys: tuple[str, ...]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "keys": list(self.keys),
            "occurred_at": self.occurred_at.isoformat(),
        }


class CacheInvalidationCoordinator:
    def __init__(self, cache: ReadCache | None = None, feed_size: int = 1000):
        self.cache = cache or ReadCache()
        self._ttls = {
            INVENTORY_ITEM: settings.CACHE_TTL_INVENTORY_SECONDS,
            CUSTOMER: settings.CACHE_TTL_CUSTOMER_SECONDS,
            CUSTOMER_RECORDS: settings.CACHE_TTL_CUSTOMER_SECONDS,
            SUMMARY: settings.CACHE_TTL_SUMMARY_SECONDS,
        }
        # Aggregate keys that depend on every entity of a type
        self._dependents: dict[str, set[str]] = {
            INVENTORY_ITEM: {DASHBOARD_KEY},
            CUSTOMER: {DASHBOARD_KEY},
            CUSTOMER_RECORDS: {DASHBOARD_KEY},
        }
        self._listeners: list[Callable[[InvalidationEvent], None]] = []
        self._feed: deque[InvalidationEvent] = deque(maxlen=feed_size)
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def ttl_for(self, entity_type: str) -> int:
        return self._ttls.get(entity_type, settings.CACHE_TTL_INVENTORY_SECONDS)

    def register_dependency(self, entity_type: str, aggregate_key: str) -> None:
        """Declare that ``aggregate_key`` must be dropped whenever any ``entity_type`` changes."""
        if entity_type == SUMMARY:
            raise ValueError("Summaries are immutable; nothing may depend on summary invalidation")
        with self._lock:
            self._dependents.setdefault(entity_type, set()).add(aggregate_key)

    def subscribe(self, listener: Callable[[InvalidationEvent], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def read(self, entity_type: str, key: str, loader: Callable[[], Any], ttl: float | None = None) -> Any:
        return self.cache.get_or_load(key, ttl if ttl is not None else self.ttl_for(entity_type), loader)

    def keys_for(self, entity_type: str, entity_id: str) -> tuple[str, ...]:
        own = _ENTITY_KEYS.get(entity_type, lambda e: [f"{entity_type}:{e}"])(entity_id)
        with self._lock:
            dependents = sorted(self._dependents.get(entity_type, ()))
        return tuple(own) + tuple(k for k in dependents if k not in own)

    def invalidate(self, entity_type: str, entity_id: str) -> InvalidationEvent | None:
        """Drop every cache entry keyed by the entity and the aggregates that depend on it.

        Never raises: a failing cache or listener must not undo a committed mutation.
        """
        try:
            keys = self.keys_for(entity_type, entity_id)
            for key in keys:
                self.cache.delete(key)
            event = InvalidationEvent(next(self._seq), entity_type, entity_id, keys)
            with self._lock:
                self._feed.append(event)
                listeners = list(self._listeners)
        except Exception:
            logger.exception("Cache invalidation failed for %s %s", entity_type, entity_id)
            return None

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error("Invalidation listener failed for %s %s: %s", entity_type, entity_id, e)
        logger.debug("Invalidated %s %s keys=%s", entity_type, entity_id, keys)
        return event

    def invalidate_many(self, entity_type: str, entity_ids) -> None:
        for entity_id in entity_ids:
            self.invalidate(entity_type, entity_id)

    def events_after(self, seq: int = 0, limit: int = 500) -> list[InvalidationEvent]:
        with self._lock:
            return [e for e in self._feed if e.seq > seq][:limit]


coordinator = CacheInvalidationCoordinator()
