"""A size-limited overlay on a store with a choice of eviction strategies."""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import OrderedDict
from datetime import timedelta
from typing import Any, Callable, Hashable, Protocol

import cachetools

from blobrelay.store.base import BlobNotFoundError, BlobStore
from blobrelay.trace import BlobTrace, new_blob_trace

log = logging.getLogger(__name__)

_MISSING = object()

EvictCallback = Callable[[Hashable, Any], None]


def _elapsed(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)


class EvictionStrategy(enum.IntEnum):
    """How the cache picks entries to discard when it is full."""

    LFU = 0  # least frequently used first
    ARC = 1  # balances between LRU and LFU
    LRU = 2  # least recently used first
    SIMPLE = 3  # no particular priority


class _Lister(Protocol):
    def list_blobs(self) -> list[str]: ...


class _NotifyOnPop:
    _on_evict: EvictCallback

    def popitem(self):  # type: ignore[no-untyped-def]
        key, value = super().popitem()  # type: ignore[misc]
        self._on_evict(key, value)
        return key, value


class _LFU(_NotifyOnPop, cachetools.LFUCache):
    pass


class _LRU(_NotifyOnPop, cachetools.LRUCache):
    pass


class _Random(_NotifyOnPop, cachetools.RRCache):
    pass


class _ToolsCache:
    """Adapts a cachetools cache to the operations the store needs."""

    def __init__(self, cache: cachetools.Cache, on_evict: EvictCallback) -> None:
        cache._on_evict = on_evict
        self._cache = cache
        self._on_evict = on_evict

    def __contains__(self, key: Hashable) -> bool:
        return key in self._cache

    def touch(self, key: Hashable) -> bool:
        try:
            self._cache[key]
        except KeyError:
            return False
        return True

    def set(self, key: Hashable, value: Any) -> None:
        self._cache[key] = value

    def remove(self, key: Hashable) -> None:
        value = self._cache.pop(key, _MISSING)
        if value is not _MISSING:
            self._on_evict(key, value)


class _ArcCache:
    """Adaptive replacement cache with ghost lists for recency and frequency."""

    def __init__(self, size: int, on_evict: EvictCallback) -> None:
        self._size = size
        self._part = 0
        self._items: dict[Hashable, Any] = {}
        self._t1: OrderedDict[Hashable, None] = OrderedDict()
        self._t2: OrderedDict[Hashable, None] = OrderedDict()
        self._b1: OrderedDict[Hashable, None] = OrderedDict()
        self._b2: OrderedDict[Hashable, None] = OrderedDict()
        self._on_evict = on_evict

    def __contains__(self, key: Hashable) -> bool:
        return key in self._items

    def _full(self) -> bool:
        return len(self._t1) + len(self._t2) == self._size

    def touch(self, key: Hashable) -> bool:
        if key in self._t1:
            del self._t1[key]
            self._t2[key] = None
            return True
        if key in self._t2:
            self._t2.move_to_end(key)
            return True
        return False

    def set(self, key: Hashable, value: Any) -> None:
        self._items[key] = value
        if key in self._t1 or key in self._t2:
            return
        if key in self._b1:
            step = max(len(self._b2) // len(self._b1), 1)
            self._part = min(self._size, self._part + step)
            self._replace(key)
            del self._b1[key]
            self._t2[key] = None
            return
        if key in self._b2:
            step = max(len(self._b1) // len(self._b2), 1)
            self._part = max(0, self._part - step)
            self._replace(key)
            del self._b2[key]
            self._t2[key] = None
            return

        if self._full() and len(self._t1) + len(self._b1) == self._size:
            if len(self._t1) < self._size:
                self._b1.popitem(last=False)
                self._replace(key)
            else:
                old, _ = self._t1.popitem(last=False)
                self._on_evict(old, self._items.pop(old))
        else:
            total = len(self._t1) + len(self._b1) + len(self._t2) + len(self._b2)
            if total >= self._size:
                if total == 2 * self._size:
                    (self._b2 if self._b2 else self._b1).popitem(last=False)
                self._replace(key)
        self._t1[key] = None

    def _replace(self, key: Hashable) -> None:
        if not self._full():
            return
        t1_len = len(self._t1)
        if t1_len and ((key in self._b2 and t1_len == self._part) or t1_len > self._part):
            old, _ = self._t1.popitem(last=False)
            self._b1[old] = None
        elif self._t2:
            old, _ = self._t2.popitem(last=False)
            self._b2[old] = None
        else:
            old, _ = self._t1.popitem(last=False)
            self._b1[old] = None
        value = self._items.pop(old, _MISSING)
        if value is not _MISSING:
            self._on_evict(old, value)

    def remove(self, key: Hashable) -> None:
        if key in self._t1:
            del self._t1[key]
            self._b1[key] = None
        elif key in self._t2:
            del self._t2[key]
            self._b2[key] = None
        else:
            return
        self._on_evict(key, self._items.pop(key))


def _build_cache(strategy: EvictionStrategy, size: int, on_evict: EvictCallback):
    if size <= 0:
        if strategy is not EvictionStrategy.SIMPLE:
            raise ValueError("cache size must be positive")
        return _ToolsCache(_Random(float("inf")), on_evict)
    if strategy is EvictionStrategy.LFU:
        return _ToolsCache(_LFU(size), on_evict)
    if strategy is EvictionStrategy.LRU:
        return _ToolsCache(_LRU(size), on_evict)
    if strategy is EvictionStrategy.ARC:
        return _ArcCache(size, on_evict)
    return _ToolsCache(_Random(size), on_evict)


class GcacheStore(BlobStore):
    """Limits a store to a maximum number of blobs, evicting by a strategy.

    Evicted blobs are deleted from the underlying store. If the underlying
    store can list its blobs, they are loaded into the cache in the background.
    """

    name = "gcache"

    def __init__(
        self,
        component: str,
        store: BlobStore,
        max_size: int,
        strategy: EvictionStrategy = EvictionStrategy.LFU,
    ) -> None:
        self.component = component
        self.store = store
        self._lock = threading.RLock()
        self._cache = _build_cache(EvictionStrategy(strategy), max_size, self._on_evict)
        self._loaded = threading.Event()
        self._load_error: BaseException | None = None

        if callable(getattr(store, "list_blobs", None)):
            threading.Thread(
                target=self._load_in_background, args=(store, max_size), daemon=True
            ).start()
        else:
            self._loaded.set()

    def _on_evict(self, key: Hashable, value: Any) -> None:
        log.info("evicting %s", key)
        try:
            self.store.delete(str(key))
        except Exception:
            log.debug("error deleting evicted blob %s", key, exc_info=True)

    def _load_in_background(self, store: _Lister, max_items: int) -> None:
        try:
            self.load_existing(store, max_items)
        except BaseException as exc:
            self._load_error = exc
            log.exception("error loading existing blobs")
        finally:
            self._loaded.set()

    def wait_loaded(self, timeout: float | None = None) -> bool:
        """Wait for the background load; re-raise its error if it failed."""
        finished = self._loaded.wait(timeout)
        if self._load_error is not None:
            raise self._load_error
        return finished

    def has(self, blob_hash: str) -> bool:
        """Report whether the blob is cached, without touching its rank."""
        with self._lock:
            return blob_hash in self._cache

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        start = time.monotonic()
        with self._lock:
            present = self._cache.touch(blob_hash)
        if not present:
            raise BlobNotFoundError(trace=new_blob_trace(_elapsed(start), self.name))
        try:
            blob, trace = self.store.get(blob_hash)
        except Exception as exc:
            if isinstance(exc, BlobNotFoundError):
                # The blob disappeared from the underlying store.
                with self._lock:
                    self._cache.remove(blob_hash)
            error_trace = getattr(exc, "trace", None)
            if isinstance(error_trace, BlobTrace):
                error_trace.stack(_elapsed(start), self.name)
            raise
        return blob, trace.stack(_elapsed(start), self.name)

    def put(self, blob_hash: str, blob: bytes) -> None:
        """Store the blob if the eviction strategy lets it stay in the cache."""
        if self._admit(blob_hash):
            self.store.put(blob_hash, blob)

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        """Store the sd blob if the eviction strategy lets it stay in the cache."""
        if self._admit(blob_hash):
            self.store.put_sd(blob_hash, blob)

    def _admit(self, blob_hash: str) -> bool:
        with self._lock:
            self._cache.set(blob_hash, True)
            return blob_hash in self._cache

    def delete(self, blob_hash: str) -> None:
        # Delete from the store first so its errors propagate; removal from
        # the cache then runs the eviction hook, which deletes again quietly.
        self.store.delete(blob_hash)
        with self._lock:
            self._cache.remove(blob_hash)

    def load_existing(self, store: _Lister, max_items: int) -> None:
        """Import the blobs already in a listable store into the cache."""
        log.info("loading at most %d items", max_items)
        existing = store.list_blobs()
        log.info("read %d files from underlying store", len(existing))
        for added, blob_hash in enumerate(existing, start=1):
            with self._lock:
                self._cache.set(blob_hash, True)
            if max_items > 0 and added >= max_items:
                try:
                    self.delete(blob_hash)
                    log.info(
                        "deleted overflowing blob: %s (%d/%d)", blob_hash, added - 1, len(existing)
                    )
                except Exception as exc:
                    log.warning("error while deleting a blob that's overflowing the cache: %s", exc)

    def shutdown(self) -> None:
        """Nothing to release; the underlying store is shut down by its owner."""