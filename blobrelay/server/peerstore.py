"""A read-only blob store that downloads blobs from a peer server."""

from __future__ import annotations

from dataclasses import dataclass

from blobrelay.server.peerclient import Client
from blobrelay.store.base import BlobNotFoundError, BlobStore, NotImplementedStoreError
from blobrelay.trace import BlobTrace


@dataclass
class StoreOpts:
    """Where the peer is and how long to wait on it, in seconds (0 means 5)."""

    address: str
    timeout: float = 0.0


class PeerStore(BlobStore):
    """Gets blobs from a peer. Writes and deletes are not supported."""

    name = "peer"

    def __init__(self, opts: StoreOpts) -> None:
        self.opts = opts

    def _client(self) -> Client:
        client = Client(timeout=self.opts.timeout)
        try:
            client.connect(self.opts.address)
        except OSError as exc:
            raise ConnectionError(f"connection error: {exc}") from exc
        return client

    def has(self, blob_hash: str) -> bool:
        with self._client() as client:
            return client.has_blob(blob_hash)

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        with self._client() as client:
            try:
                return client.get_blob(blob_hash)
            except Exception as exc:
                if "blob not found" in str(exc):
                    raise BlobNotFoundError(trace=getattr(exc, "trace", None)) from exc
                raise

    def put(self, blob_hash: str, blob: bytes) -> None:
        raise NotImplementedStoreError()

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        raise NotImplementedStoreError()

    def delete(self, blob_hash: str) -> None:
        raise NotImplementedStoreError()

    def shutdown(self) -> None:
        """Nothing to release; connections are opened per request."""