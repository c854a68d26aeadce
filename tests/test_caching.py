import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from blobrelay.store.base import BlobNotFoundError, BlobStore, NotImplementedStoreError
from blobrelay.store.caching import CachingStore
from blobrelay.store.memory import MemStore

BLOB = b"this is a blob of stuff"
HASH = "hash"


class SlowBlobStore(BlobStore):
    name = "slow"

    def __init__(self, delay):
        self.mem = MemStore()
        self.delay = delay
        self.get_calls = 0
        self._lock = threading.Lock()

    def has(self, blob_hash):
        time.sleep(self.delay)
        return self.mem.has(blob_hash)

    def get(self, blob_hash):
        with self._lock:
            self.get_calls += 1
        time.sleep(self.delay)
        return self.mem.get(blob_hash)

    def put(self, blob_hash, blob):
        time.sleep(self.delay)
        self.mem.put(blob_hash, blob)

    def put_sd(self, blob_hash, blob):
        time.sleep(self.delay)
        self.mem.put_sd(blob_hash, blob)

    def delete(self, blob_hash):
        time.sleep(self.delay)
        self.mem.delete(blob_hash)


class BrokenStore(BlobStore):
    name = "broken"

    def __init__(self, get_error=None):
        self.get_error = get_error

    def has(self, blob_hash):
        return False

    def get(self, blob_hash):
        raise self.get_error or BlobNotFoundError()

    def put(self, blob_hash, blob):
        raise NotImplementedStoreError()

    def put_sd(self, blob_hash, blob):
        raise NotImplementedStoreError()

    def delete(self, blob_hash):
        raise NotImplementedStoreError()


def test_put():
    origin, cache = MemStore(), MemStore()
    s = CachingStore("test", origin, cache)
    s.put(HASH, BLOB)
    assert origin.has(HASH) is True
    assert cache.has(HASH) is True


def test_cache_miss():
    origin, cache = MemStore(), MemStore()
    s = CachingStore("test", origin, cache)
    origin.put(HASH, BLOB)

    res, trace = s.get(HASH)
    assert res == BLOB
    assert [e.origin_name for e in trace.stacks] == ["mem", "sf_mem", "caching"]
    assert cache.has(HASH) is True

    res, _ = cache.get(HASH)
    assert res == BLOB


def test_cache_hit_does_not_need_origin():
    origin, cache = MemStore(), MemStore()
    cache.put(HASH, BLOB)
    res, trace = CachingStore("test", origin, cache).get(HASH)
    assert res == BLOB
    assert trace.stacks[-1].origin_name == "caching"
    assert origin.has(HASH) is False


def test_thundering_herd():
    origin = SlowBlobStore(0.1)
    cache = MemStore()
    s = CachingStore("test", origin, cache)
    origin.put(HASH, BLOB)

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = []
        for _ in range(4):
            futures.append(pool.submit(s.get, HASH))
            time.sleep(0.01)
        results = [f.result()[0] for f in futures]

    assert results == [BLOB] * 4
    assert origin.get_calls == 1


def test_get_missing_everywhere():
    s = CachingStore("test", MemStore(), MemStore())
    with pytest.raises(BlobNotFoundError) as info:
        s.get(HASH)
    assert [e.origin_name for e in info.value.trace.stacks] == ["sf_mem", "caching"]


def test_cache_error_is_not_a_miss():
    origin = MemStore()
    origin.put(HASH, BLOB)
    s = CachingStore("test", origin, BrokenStore(RuntimeError("disk on fire")))
    with pytest.raises(RuntimeError, match="disk on fire"):
        s.get(HASH)


def test_cache_put_failure_still_returns_blob():
    origin = MemStore()
    origin.put(HASH, BLOB)
    s = CachingStore("test", origin, BrokenStore())
    res, _ = s.get(HASH)
    assert res == BLOB


def test_origin_put_failure_skips_cache():
    cache = MemStore()
    s = CachingStore("test", BrokenStore(), cache)
    with pytest.raises(NotImplementedStoreError):
        s.put(HASH, BLOB)
    assert cache.has(HASH) is False


def test_has_checks_both():
    origin, cache = MemStore(), MemStore()
    s = CachingStore("test", origin, cache)
    assert s.has(HASH) is False
    origin.put(HASH, BLOB)
    assert s.has(HASH) is True
    origin.delete(HASH)
    cache.put(HASH, BLOB)
    assert s.has(HASH) is True


def test_put_sd_and_delete():
    origin, cache = MemStore(), MemStore()
    s = CachingStore("test", origin, cache)
    s.put_sd(HASH, b"{}")
    assert origin.debug() == {HASH: b"{}"}
    assert cache.debug() == {HASH: b"{}"}
    s.delete(HASH)
    assert origin.debug() == {}
    assert cache.debug() == {}


def test_name():
    assert CachingStore("test", MemStore(), MemStore()).name == "caching"