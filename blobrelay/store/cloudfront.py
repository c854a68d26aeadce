"""A read-only blob store backed by a CDN endpoint."""

from __future__ import annotations

import logging
import time
from datetime import timedelta

import requests

from blobrelay.store.base import BlobNotFoundError, BlobStore, NotImplementedStoreError
from blobrelay.trace import BlobTrace, new_blob_trace

log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "blobrelay"


def _elapsed(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)


class _StatusError(RuntimeError):
    """The endpoint answered with an unexpected status."""

    def __init__(self, message: str, trace: BlobTrace | None = None) -> None:
        super().__init__(message)
        self.trace = trace


class CloudFrontROStore(BlobStore):
    """Reads blobs from ``endpoint + hash``. Writes are not supported."""

    name = "cloudfront_ro"

    def __init__(
        self,
        endpoint: str,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.user_agent = user_agent
        self._session = session if session is not None else requests.Session()

    def _request(self, method: str, blob_hash: str) -> requests.Response:
        return self._session.request(
            method,
            self.endpoint + blob_hash,
            headers={"User-Agent": self.user_agent},
        )

    def has(self, blob_hash: str) -> bool:
        with self._request("HEAD", blob_hash) as res:
            if res.status_code in (404, 403):
                return False
            if res.status_code == 200:
                return True
            raise _StatusError(f"unexpected status {res.status_code}")

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        log.debug("Getting %s from S3", blob_hash[:8])
        start = time.monotonic()
        try:
            with self._request("GET", blob_hash) as res:
                if res.status_code in (404, 403):
                    raise BlobNotFoundError(trace=new_blob_trace(_elapsed(start), self.name))
                if res.status_code == 200:
                    blob = res.content
                    return blob, new_blob_trace(_elapsed(start), self.name)
                raise _StatusError(
                    f"unexpected status {res.status_code}",
                    new_blob_trace(_elapsed(start), self.name),
                )
        finally:
            log.debug("Getting %s from S3 took %s", blob_hash[:8], _elapsed(start))

    def put(self, blob_hash: str, blob: bytes) -> None:
        raise NotImplementedStoreError()

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        raise NotImplementedStoreError()

    def delete(self, blob_hash: str) -> None:
        raise NotImplementedStoreError()

    def shutdown(self) -> None:
        """Nothing to release."""