import pytest

from blobrelay.store.base import BlobNotFoundError
from blobrelay.store.disk import DiskStore
from blobrelay.store.gcache import EvictionStrategy, GcacheStore
from blobrelay.store.memory import MemStore

CACHE_MAX_SIZE = 3


def _store(strategy=EvictionStrategy.LFU, size=CACHE_MAX_SIZE):
    mem = MemStore()
    return GcacheStore("test", mem, size, strategy), mem


def test_lfu_eviction():
    lfu, mem = _store()
    blob = b"x"
    for i in range(3):
        lfu.put(str(i), blob)
        for _ in range(3 - i):
            lfu.get(str(i))

    for key, expected in {"0": True, "1": True, "2": True}.items():
        assert lfu.has(key) is expected

    lfu.put("3", blob)
    for key, expected in {"0": True, "1": True, "2": False, "3": True}.items():
        assert lfu.has(key) is expected
    assert len(mem.debug()) == CACHE_MAX_SIZE

    lfu.delete("0")
    lfu.delete("1")
    lfu.delete("3")
    assert len(mem.debug()) == 0


def test_underlying_blob_missing():
    lfu, mem = _store()
    blob_hash = "hash"
    lfu.put(blob_hash, b"this is a blob of stuff")
    mem.delete(blob_hash)

    assert lfu.has(blob_hash)
    with pytest.raises(BlobNotFoundError):
        lfu.get(blob_hash)
    assert not lfu.has(blob_hash)


def test_get_of_uncached_blob_raises_not_found():
    lfu, mem = _store()
    mem.put("direct", b"data")
    with pytest.raises(BlobNotFoundError):
        lfu.get("direct")


def test_get_returns_blob_with_trace():
    lfu, _ = _store()
    lfu.put("hash", b"payload")
    blob, trace = lfu.get("hash")
    assert blob == b"payload"
    assert [s.origin_name for s in trace.stacks] == ["mem", "gcache"]


def test_load_existing_from_disk(tmp_path):
    disk = DiskStore(tmp_path, 2)
    blob_hash = "hash"
    disk.put(blob_hash, b"this is a blob of stuff")
    assert disk.list_blobs() == [blob_hash]

    lfu = GcacheStore("test", disk, 3, EvictionStrategy.LFU)
    assert lfu.wait_loaded(5) is True
    assert lfu.has(blob_hash)


def test_load_existing_deletes_overflow(tmp_path):
    disk = DiskStore(tmp_path, 0)
    hashes = ["a1", "b2", "c3"]
    for blob_hash in hashes:
        disk.put(blob_hash, b"data")

    cache = GcacheStore("test", disk, 3, EvictionStrategy.LFU)
    assert cache.wait_loaded(5) is True
    assert len(disk.list_blobs()) == 2
    assert sum(cache.has(h) for h in hashes) == 2


def test_store_without_lister_is_loaded_immediately():
    cache, _ = _store()
    assert cache.wait_loaded(0) is True


def test_lru_evicts_least_recently_used():
    lru, mem = _store(EvictionStrategy.LRU)
    for key in ("a", "b", "c"):
        lru.put(key, b"x")
    lru.get("a")
    lru.put("d", b"x")
    assert not lru.has("b")
    assert all(lru.has(k) for k in ("a", "c", "d"))
    assert sorted(mem.debug()) == ["a", "c", "d"]


def test_arc_keeps_size_bound():
    arc, mem = _store(EvictionStrategy.ARC)
    for i in range(5):
        arc.put(str(i), b"x")
    assert len(mem.debug()) == CACHE_MAX_SIZE
    assert not arc.has("0")
    assert arc.has("4")


def test_arc_get_and_delete():
    arc, mem = _store(EvictionStrategy.ARC)
    arc.put("k", b"value")
    assert arc.get("k")[0] == b"value"
    arc.delete("k")
    assert not arc.has("k")
    assert mem.debug() == {}


def test_simple_keeps_size_bound():
    simple, mem = _store(EvictionStrategy.SIMPLE)
    for i in range(4):
        simple.put(str(i), b"x")
    assert len(mem.debug()) == CACHE_MAX_SIZE
    assert sum(simple.has(str(i)) for i in range(4)) == CACHE_MAX_SIZE


def test_non_positive_size_rejected():
    with pytest.raises(ValueError):
        GcacheStore("test", MemStore(), 0, EvictionStrategy.LFU)


def test_put_sd_stores_in_underlying():
    cache, mem = _store()
    cache.put_sd("sd", b"descriptor")
    assert mem.debug() == {"sd": b"descriptor"}