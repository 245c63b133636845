"""FrameCache: bounded LRU store of decoded images.

The cache is shared by the decode workers and the interactive thread, so
every structural change happens under one lock. Concurrent requests for the
same key coalesce into one compute call; the other callers wait on the
owner's future and get the same object (or the same exception).

Weight is the byte size of all frames. When the total exceeds the capacity,
the least-recently-used unpinned entries are evicted. If nothing can be
evicted the insertion still succeeds and the cache runs over capacity until
something is unpinned. A new entry crowded out only by pinned entries is
kept, since it fits once they are unpinned.
"""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass

from image_pipeline.logger import get_logger

from .metrics import metrics
from .models import DecodedImage

_logger = get_logger("frame_cache")


@dataclass
class _CacheEntry:
    image: DecodedImage
    weight: int
    pins: int = 0


class FrameCache:
    def __init__(self, capacity_bytes: int) -> None:
        self._capacity = max(0, int(capacity_bytes))
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._inflight: dict[str, Future] = {}
        # Keys invalidated while their compute was still running.
        self._stale: set[str] = set()
        self._evicted: deque[str] = deque()
        self._weight = 0
        self._lock = threading.RLock()
        _logger.debug("FrameCache init: capacity=%d bytes", self._capacity)

    # ---- lookup ------------------------------------------------------
    def get_or_insert(self, key: str, compute_fn: Callable[[], DecodedImage]) -> DecodedImage:
        """Return the cached image for `key`, computing and inserting it if absent."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
                metrics.inc("frame_cache.hits")
                return entry.image
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
                metrics.inc("frame_cache.misses")
            else:
                metrics.inc("frame_cache.coalesced")

        if not owner:
            _logger.debug("get_or_insert: waiting for in-flight compute key=%s", key)
            return future.result()

        try:
            image = compute_fn()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
                self._stale.discard(key)
            future.set_exception(exc)
            raise

        with self._lock:
            self._inflight.pop(key, None)
            if key in self._stale:
                self._stale.discard(key)
                _logger.debug("get_or_insert: key invalidated during compute, not cached: %s", key)
            else:
                self._insert(key, image)
        future.set_result(image)
        return image

    def get(self, key: str) -> DecodedImage | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry.image

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries)

    # ---- mutation ----------------------------------------------------
    def put(self, key: str, image: DecodedImage, *, pin: bool = False) -> None:
        with self._lock:
            self._insert(key, image, pins=1 if pin else 0)

    def invalidate(self, key: str) -> bool:
        """Drop `key` even if it is pinned (the underlying file changed)."""
        with self._lock:
            if key in self._inflight:
                self._stale.add(key)
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._weight -= entry.weight
            metrics.gauge("frame_cache.weight", self._weight)
        _logger.debug("invalidated: %s", key)
        return True

    def clear(self) -> int:
        """Remove every unpinned entry; returns how many were removed."""
        with self._lock:
            victims = [k for k, e in self._entries.items() if e.pins == 0]
            for key in victims:
                self._remove(key)
        _logger.debug("cache cleared: removed=%d", len(victims))
        return len(victims)

    # ---- pinning -----------------------------------------------------
    def pin(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry.pins += 1
            self._entries.move_to_end(key)
            return True

    def unpin(self, key: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.pins == 0:
                return
            entry.pins -= 1
            if entry.pins == 0:
                self._evict_to_capacity()

    def is_pinned(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.pins > 0

    # ---- accounting --------------------------------------------------
    @property
    def weight(self) -> int:
        with self._lock:
            return self._weight

    @property
    def unpinned_weight(self) -> int:
        with self._lock:
            return sum(e.weight for e in self._entries.values() if e.pins == 0)

    @property
    def capacity(self) -> int:
        return self._capacity

    @capacity.setter
    def capacity(self, value: int) -> None:
        with self._lock:
            self._capacity = max(0, int(value))
            self._evict_to_capacity()

    def drain_evictions(self) -> list[str]:
        """Keys evicted for capacity since the last call."""
        with self._lock:
            evicted = list(self._evicted)
            self._evicted.clear()
        return evicted

    # ---- internals (lock held) ---------------------------------------
    def _insert(self, key: str, image: DecodedImage, pins: int = 0) -> None:
        old = self._entries.pop(key, None)
        if old is not None:
            self._weight -= old.weight
            pins += old.pins
        entry = _CacheEntry(image=image, weight=image.nbytes, pins=pins)
        self._entries[key] = entry
        self._weight += entry.weight
        self._evict_to_capacity(protect=key)

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._weight -= entry.weight
        metrics.gauge("frame_cache.weight", self._weight)

    def _evict_to_capacity(self, protect: str | None = None) -> None:
        while self._weight > self._capacity:
            victim = next((k for k, e in self._entries.items() if e.pins == 0 and k != protect), None)
            fresh = self._entries.get(protect) if protect is not None else None
            if victim is None and fresh is not None and fresh.pins == 0:
                if fresh.weight <= self._capacity:
                    # Only pinned entries crowd it out; it fits once they are unpinned.
                    _logger.debug(
                        "holding %s over capacity until pins are released: weight=%d/%d",
                        protect,
                        self._weight,
                        self._capacity,
                    )
                    break
                # The new entry alone does not fit; the caller still gets it.
                victim = protect
            if victim is None:
                metrics.inc("frame_cache.overshoot")
                _logger.warning(
                    "cache over capacity with nothing evictable: weight=%d capacity=%d entries=%d",
                    self._weight,
                    self._capacity,
                    len(self._entries),
                )
                break
            self._remove(victim)
            self._evicted.append(victim)
            metrics.inc("frame_cache.evictions")
            _logger.debug("evicted: %s weight=%d/%d", victim, self._weight, self._capacity)
        metrics.gauge("frame_cache.weight", self._weight)
