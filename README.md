# blobrelay

Storage and transport for content-addressed blobs: data chunks named by
the SHA-384 hex digest of their contents.

The package provides:

- **Blob stores** that share one interface, `blobrelay.store.base.BlobStore`,
  with the methods `has`, `get`, `put`, `put_sd`, `delete` and `shutdown`.
  `get` returns a `(blob, trace)` pair.
  - `MemStore` (`blobrelay.store.memory`): an in-memory store with no persistence.
  - `NoopStore` (`blobrelay.store.memory`): accepts everything and keeps nothing.
  - `DiskStore` (`blobrelay.store.disk`): keeps blobs as files on the local
    filesystem. It can shard them into subdirectories named after a hash prefix.
    On read it checks that the file's SHA-384 matches its name. A blob that
    fails the check is deleted, and the read raises `ValueError`. At most 30
    checks run at once, and reads beyond that limit are not checked.
  - `GcacheStore` (`blobrelay.store.gcache`): caps another store at a maximum
    number of blobs. It evicts by an `EvictionStrategy` (`LFU`, `ARC`, `LRU` or
    `SIMPLE`) and deletes each evicted blob from the underlying store.
  - `CachingStore` (`blobrelay.store.caching`): reads from a cache store first.
    On a miss it reads from the origin store and copies the blob into the cache.
  - `ITTTStore` (`blobrelay.store.ittt`): reads from one store and falls back to
    a second. It is read-only.
  - `HttpStore` (`blobrelay.store.httpstore`) and `CloudFrontROStore`
    (`blobrelay.store.cloudfront`): read-only stores backed by HTTP endpoints.
  - `PeerStore` (`blobrelay.server.peerstore`): a read-only store that downloads
    blobs from a peer server over TCP.
- **Request coalescing**: `with_single_flight` in `blobrelay.store.singleflight`
  wraps a store so that concurrent `get`s of the same hash reach it only once.
- **Traces** (`blobrelay.trace.BlobTrace`): a record of which stores a blob
  passed through, on which host, and how long each step took. A trace
  serialises to compact JSON, so it can travel in a `Via` response header.
- **Servers**: an HTTP blob server (`blobrelay.server.httpserver.Server`) and
  a TCP peer-protocol server (`blobrelay.server.peerserver.Server`). Both serve
  any `BlobStore`. A matching peer `Client` is in `blobrelay.server.peerclient`.
- **Wallet client**: `blobrelay.wallet.node.Node` is a small JSON-RPC client for
  wallet servers that speak line-delimited JSON over TCP, with optional TLS.

## Stores

```python
from blobrelay.store.base import BlobNotFoundError
from blobrelay.store.caching import CachingStore
from blobrelay.store.memory import MemStore

origin = MemStore()
cache = MemStore()
store = CachingStore("example", origin, cache)

store.put("hash", b"this is a blob of stuff")   # written to origin, then cache

blob, trace = store.get("hash")
print(blob)
print(trace)          # one line per hop, with timing and delta

try:
    store.get("missing")
except BlobNotFoundError:
    print("not found")
```

### A bounded cache on disk

```python
from blobrelay.store.disk import DiskStore
from blobrelay.store.gcache import EvictionStrategy, GcacheStore

disk = DiskStore("/var/cache/blobs", 2)
bounded = GcacheStore("example", disk, 10_000, EvictionStrategy.LRU)
bounded.wait_loaded(5)   # blobs already on disk are indexed in a background thread
```

`GcacheStore.put` may not store the blob if the eviction strategy refuses to
keep it. `has` reports membership in the cache without changing rank.

## Traces

```python
from datetime import timedelta

from blobrelay.trace import deserialize, new_blob_trace

trace = new_blob_trace(timedelta(milliseconds=10), "disk")
trace.stack(timedelta(milliseconds=25), "caching")
wire = trace.serialize()   # timings are encoded as integer nanoseconds
assert deserialize(wire).stacks[1].origin_name == "caching"
```

## Serving blobs

HTTP server: `GET /blob?hash=<hash>` returns the blob with status 200, or 404.
`HEAD /blob?hash=<hash>` answers 204 if the store has the blob and 404 if not.
Downloads are served by a fixed pool of worker threads. The server remembers a
hash that was not found for five minutes and answers it without asking the
store again.

```python
from blobrelay.server.httpserver import Server as HttpServer
from blobrelay.store.httpstore import HttpStore

server = HttpServer(store, 4)          # 4 download workers
server.start("127.0.0.1:8080")
remote = HttpStore("127.0.0.1:8080")
blob, trace = remote.get("hash")
server.shutdown()
```

Peer server and store:

```python
from blobrelay.server.peerserver import Server as PeerServer
from blobrelay.server.peerstore import PeerStore, StoreOpts

peer = PeerServer(store)
peer.start("127.0.0.1:3333")           # DEFAULT_PORT is 3333
remote = PeerStore(StoreOpts("127.0.0.1:3333", timeout=5))
print(remote.has("hash"))
peer.shutdown()
```

The peer server only serves a `requested_blob` that is a 96-character hex hash.

## Wallet servers

```python
from blobrelay.wallet.node import Node

node = Node(timeout=1.0)
node.connect(["wallet.example.com:50001"])   # pass an ssl.SSLContext for TLS
print(node.server_version())
print(node.get_tx("txid"))
print(node.get_claims_in_tx("txid"))
node.shutdown()
```

`connect` tries the addresses in random order. It skips an address that times
out or whose host name does not resolve.

## Errors

Failures are raised as exceptions:

- `BlobNotFoundError` when a store does not hold the blob.
- `NotImplementedStoreError` when a store does not support an operation, for
  example a `put` on a read-only store.
- `RequestTooLargeError` from the peer protocol reader when a message exceeds
  its size limit.
- `WalletError` and its subclasses `WalletTimeoutError`, `NodeConnectedError`
  and `ConnectFailedError` for wallet server problems.
- `HttpStore` and `CloudFrontROStore` let network failures surface as
  `requests` exceptions.

## What this package does not do

- It has no command-line program. Servers and stores are started from Python.
- It has no S3 store and no database-backed store that tracks stream contents
  or blocked blobs. `Blocklister` is only an interface.
- It has no HTTP/3 transport.
- The wallet `Node` returns raw transactions and claim listings. It does not
  resolve URLs and does not decode claim contents.