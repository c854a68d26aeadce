"""A store wrapper that collapses concurrent requests for the same hash."""

from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Any, Callable

from blobrelay.store.base import BlobStore
from blobrelay.trace import BlobTrace, new_blob_trace


def _elapsed(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)


class _Call:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: BaseException | None = None


class _Group:
    """Runs at most one function per key at a time; others share its outcome."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, _Call] = {}

    def do(self, key: str, fn: Callable[[], Any]) -> Any:
        with self._lock:
            call = self._calls.get(key)
            leader = call is None
            if call is None:
                call = _Call()
                self._calls[key] = call
        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.result
        try:
            call.result = fn()
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                del self._calls[key]
            call.done.set()
        return call.result


class SingleFlightStore(BlobStore):
    """Sends at most one get or put per hash to the wrapped store at a time."""

    def __init__(self, origin: BlobStore, component: str = "") -> None:
        self.origin = origin
        self.component = component
        self._group = _Group()

    @property
    def name(self) -> str:  # type: ignore[override]
        return "sf_" + self.origin.name

    def has(self, blob_hash: str) -> bool:
        return self.origin.has(blob_hash)

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        start = time.monotonic()
        try:
            response = self._group.do(blob_hash, lambda: self._fetch(blob_hash))
        except Exception as exc:
            if hasattr(exc, "trace"):
                exc.trace = new_blob_trace(_elapsed(start), self.name)
            raise
        if response is None:
            raise RuntimeError("getter response is nil")
        blob, trace = response
        return blob, BlobTrace(list(trace.stacks))

    def _fetch(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        start = time.monotonic()
        blob, trace = self.origin.get(blob_hash)
        return blob, trace.stack(_elapsed(start), self.name)

    def put(self, blob_hash: str, blob: bytes) -> None:
        self._group.do(blob_hash, lambda: self.origin.put(blob_hash, blob))

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        self.origin.put_sd(blob_hash, blob)

    def delete(self, blob_hash: str) -> None:
        self.origin.delete(blob_hash)

    def shutdown(self) -> None:
        self.origin.shutdown()


def with_single_flight(component: str, origin: BlobStore) -> SingleFlightStore:
    """Wrap a store so concurrent requests for one hash reach it only once."""
    return SingleFlightStore(origin, component)