"""The blob store interface and the errors stores raise."""

from __future__ import annotations

from abc import ABC, abstractmethod

from blobrelay.trace import BlobTrace


class BlobNotFoundError(LookupError):
    """The requested blob is not in the store."""

    def __init__(self, message: str = "blob not found", trace: BlobTrace | None = None):
        super().__init__(message)
        self.trace = trace


class NotImplementedStoreError(NotImplementedError):
    """The store does not support the requested operation."""

    def __init__(
        self,
        message: str = "this store does not implement this method",
        trace: BlobTrace | None = None,
    ):
        super().__init__(message)
        self.trace = trace


class BlobStore(ABC):
    """Storage for blobs addressed by their hash."""

    #: Name of the store, used in traces.
    name: str = ""

    @abstractmethod
    def has(self, blob_hash: str) -> bool:
        """Return whether the blob exists in the store."""

    @abstractmethod
    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        """Return the blob and its trace; raise BlobNotFoundError if absent."""

    @abstractmethod
    def put(self, blob_hash: str, blob: bytes) -> None:
        """Store a blob."""

    @abstractmethod
    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        """Store a stream descriptor blob."""

    @abstractmethod
    def delete(self, blob_hash: str) -> None:
        """Remove a blob from the store."""

    def shutdown(self) -> None:
        """Release the store's resources. Stores without any keep this."""


class Blocklister(ABC):
    """A store that can refuse blobs permanently."""

    @abstractmethod
    def block(self, blob_hash: str) -> None:
        """Delete the blob and prevent it from being uploaded again."""

    @abstractmethod
    def wants(self, blob_hash: str) -> bool:
        """Return False if the blob exists or is blocked, True otherwise."""