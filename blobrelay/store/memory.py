"""In-memory and no-op blob stores."""

from __future__ import annotations

import threading
import time
from datetime import timedelta

from blobrelay.store.base import BlobNotFoundError, BlobStore
from blobrelay.trace import BlobTrace, new_blob_trace


def _elapsed(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)


class MemStore(BlobStore):
    """A blob store held entirely in memory, with no persistence."""

    name = "mem"

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def has(self, blob_hash: str) -> bool:
        with self._lock:
            return blob_hash in self._blobs

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        start = time.monotonic()
        with self._lock:
            blob = self._blobs.get(blob_hash)
        if blob is None:
            raise BlobNotFoundError(trace=new_blob_trace(_elapsed(start), self.name))
        return blob, new_blob_trace(_elapsed(start), self.name)

    def put(self, blob_hash: str, blob: bytes) -> None:
        with self._lock:
            self._blobs[blob_hash] = bytes(blob)

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        self.put(blob_hash, blob)

    def delete(self, blob_hash: str) -> None:
        with self._lock:
            self._blobs.pop(blob_hash, None)

    def debug(self) -> dict[str, bytes]:
        """Return a snapshot of the stored blobs."""
        with self._lock:
            return dict(self._blobs)

    def shutdown(self) -> None:
        """Nothing to release for an in-memory store."""


class NoopStore(BlobStore):
    """A store that keeps nothing and always reports success."""

    name = "noop"

    def has(self, blob_hash: str) -> bool:
        return False

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        return b"", new_blob_trace(timedelta(0), self.name)

    def put(self, blob_hash: str, blob: bytes) -> None:
        """Discard the blob."""

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        """Discard the blob."""

    def delete(self, blob_hash: str) -> None:
        """Nothing is stored, so nothing is deleted."""

    def shutdown(self) -> None:
        """Nothing to release."""