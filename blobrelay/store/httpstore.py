"""A read-only blob store that fetches blobs from an upstream HTTP server."""

from __future__ import annotations

import logging
import time
from datetime import timedelta

import requests
from requests.adapters import HTTPAdapter

from blobrelay.store.base import BlobNotFoundError, BlobStore, NotImplementedStoreError
from blobrelay.trace import BlobTrace, deserialize, new_blob_trace

log = logging.getLogger(__name__)

_CONNECT_TIMEOUT = 30.0
_POOL_SIZE = 100


def _elapsed(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)


class _UpstreamError(RuntimeError):
    """The upstream server answered with an unexpected status."""

    def __init__(self, message: str, trace: BlobTrace | None = None) -> None:
        super().__init__(message)
        self.trace = trace


def _make_session() -> requests.Session:
    """A session with a large connection pool and no response compression."""
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=_POOL_SIZE, pool_maxsize=_POOL_SIZE)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers["Accept-Encoding"] = "identity"
    return session


class HttpStore(BlobStore):
    """Reads blobs from another blob server over HTTP. Writes are not supported.

    Network failures surface as ``requests`` exceptions.
    """

    name = "http"

    def __init__(self, upstream: str, session: requests.Session | None = None) -> None:
        self.upstream = "http://" + upstream
        self._session = session if session is not None else _make_session()

    def _url(self, blob_hash: str) -> str:
        return f"{self.upstream}/blob?hash={blob_hash}"

    def has(self, blob_hash: str) -> bool:
        res = self._session.head(self._url(blob_hash), timeout=(_CONNECT_TIMEOUT, None))
        with res:
            if res.status_code == 404:
                return False
            if res.status_code == 204:
                return True
            raise _UpstreamError(
                f"upstream error. Status code: {res.status_code} ({res.text})"
            )

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        start = time.monotonic()
        res = self._session.get(self._url(blob_hash), timeout=(_CONNECT_TIMEOUT, None))
        with res:
            serialized = res.headers.get("Via", "")
            trace = (
                deserialize(serialized)
                if serialized
                else new_blob_trace(_elapsed(start), self.name)
            )

            if res.status_code == 404:
                raise BlobNotFoundError(trace=trace.stack(_elapsed(start), self.name))
            if res.status_code == 200:
                blob = res.content
                return blob, trace.stack(_elapsed(start), self.name)
            raise _UpstreamError(
                f"upstream error. Status code: {res.status_code} ({res.text})",
                trace.stack(_elapsed(start), self.name),
            )

    def put(self, blob_hash: str, blob: bytes) -> None:
        raise NotImplementedStoreError()

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        raise NotImplementedStoreError()

    def delete(self, blob_hash: str) -> None:
        raise NotImplementedStoreError()

    def shutdown(self) -> None:
        self._session.close()