"""A store that fronts an origin store with a cache store."""

from __future__ import annotations

import logging
import time
from datetime import timedelta

from blobrelay.store.base import BlobNotFoundError, BlobStore
from blobrelay.store.singleflight import with_single_flight
from blobrelay.trace import BlobTrace

log = logging.getLogger(__name__)


def _elapsed(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)


def _stack_on_error(exc: BaseException, start: float, name: str) -> None:
    trace = getattr(exc, "trace", None)
    if isinstance(trace, BlobTrace):
        trace.stack(_elapsed(start), name)


class CachingStore(BlobStore):
    """Reads from the cache first, falling back to the origin and caching the result.

    Writes go to the origin and then to the cache.
    """

    name = "caching"

    def __init__(self, component: str, origin: BlobStore, cache: BlobStore) -> None:
        self.component = component
        self.origin = with_single_flight(component, origin)
        self.cache = with_single_flight(component, cache)

    def has(self, blob_hash: str) -> bool:
        return self.cache.has(blob_hash) or self.origin.has(blob_hash)

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        start = time.monotonic()
        try:
            blob, trace = self.cache.get(blob_hash)
        except BlobNotFoundError:
            pass
        except Exception as exc:
            _stack_on_error(exc, start, self.name)
            raise
        else:
            return blob, trace.stack(_elapsed(start), self.name)

        try:
            blob, trace = self.origin.get(blob_hash)
        except Exception as exc:
            _stack_on_error(exc, start, self.name)
            raise
        try:
            self.cache.put(blob_hash, blob)
        except Exception:
            log.exception("error saving blob to underlying cache")
        return blob, trace.stack(_elapsed(start), self.name)

    def put(self, blob_hash: str, blob: bytes) -> None:
        self.origin.put(blob_hash, blob)
        self.cache.put(blob_hash, blob)

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        self.origin.put_sd(blob_hash, blob)
        self.cache.put_sd(blob_hash, blob)

    def delete(self, blob_hash: str) -> None:
        self.origin.delete(blob_hash)
        self.cache.delete(blob_hash)

    def shutdown(self) -> None:
        self.origin.shutdown()
        self.cache.shutdown()