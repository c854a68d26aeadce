"""A store that tries one store and falls back to another."""

from __future__ import annotations

import time
from datetime import timedelta

from blobrelay.store.base import BlobStore, NotImplementedStoreError
from blobrelay.trace import BlobTrace


def _elapsed(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)


class ITTTStore(BlobStore):
    """Reads from `this`; if that fails, reads from `that`. Writes are not supported."""

    name = "ittt"

    def __init__(self, this: BlobStore, that: BlobStore) -> None:
        self.this = this
        self.that = that

    def has(self, blob_hash: str) -> bool:
        try:
            if self.this.has(blob_hash):
                return True
        except Exception:
            pass
        return self.that.has(blob_hash)

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        start = time.monotonic()
        try:
            blob, trace = self.this.get(blob_hash)
        except Exception:
            pass
        else:
            return blob, trace.stack(_elapsed(start), self.name)

        try:
            blob, trace = self.that.get(blob_hash)
        except Exception as exc:
            error_trace = getattr(exc, "trace", None)
            if isinstance(error_trace, BlobTrace):
                error_trace.stack(_elapsed(start), self.name)
            raise
        return blob, trace.stack(_elapsed(start), self.name)

    def put(self, blob_hash: str, blob: bytes) -> None:
        raise NotImplementedStoreError()

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        raise NotImplementedStoreError()

    def delete(self, blob_hash: str) -> None:
        raise NotImplementedStoreError()

    def shutdown(self) -> None:
        """Nothing to release; the wrapped stores are shut down by their owners."""