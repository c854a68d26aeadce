"""A blob store that keeps blobs as files on local disk."""

from __future__ import annotations

import hashlib
import logging
import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

from blobrelay.store.base import BlobNotFoundError, BlobStore
from blobrelay.store.speedwalk import all_files
from blobrelay.trace import BlobTrace, new_blob_trace

log = logging.getLogger(__name__)

_MAX_CONCURRENT_CHECKS = 30
_TMP_DIR_NAME = "tmp"


def _elapsed(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)


def atime(stat_result: os.stat_result) -> datetime:
    """Return a file's access time; off Linux the modification time is used."""
    if sys.platform.startswith("linux"):
        nanoseconds = stat_result.st_atime_ns
    else:
        nanoseconds = stat_result.st_mtime_ns
    seconds, remainder = divmod(nanoseconds, 1_000_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(
        microseconds=remainder // 1_000
    )


class DiskStore(BlobStore):
    """Stores blobs as files, optionally sharded into subdirectories.

    With a positive ``prefix_length`` each blob lives in a subdirectory
    named after the first ``prefix_length`` characters of its hash.
    """

    name = "disk"

    def __init__(self, blob_dir: str | os.PathLike[str], prefix_length: int = 0) -> None:
        self.blob_dir = os.fspath(blob_dir)
        self.prefix_length = prefix_length
        self._initialized = False
        self._init_lock = threading.Lock()
        self._checks = 0
        self._checks_lock = threading.Lock()

    def has(self, blob_hash: str) -> bool:
        self._init_once()
        try:
            os.stat(self._path(blob_hash))
        except FileNotFoundError:
            return False
        return True

    def get(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        start = time.monotonic()
        self._init_once()
        try:
            with open(self._path(blob_hash), "rb") as handle:
                blob = handle.read()
        except FileNotFoundError:
            raise BlobNotFoundError(
                trace=new_blob_trace(_elapsed(start), self.name)
            ) from None

        # Throttles how many blobs are verified at once; unverified reads pass through.
        if self._begin_check():
            try:
                read_hash = hashlib.sha384(blob).hexdigest()
                if read_hash != blob_hash:
                    message = (
                        f"[{blob_hash}] found a broken blob while reading from disk. "
                        f"Actual hash: {read_hash}"
                    )
                    log.error("%s", message)
                    self.delete(blob_hash)
                    raise ValueError(message)
            finally:
                self._end_check()

        return blob, new_blob_trace(_elapsed(start), self.name)

    def put(self, blob_hash: str, blob: bytes) -> None:
        self._init_once()
        os.makedirs(self._dir(blob_hash), mode=0o755, exist_ok=True)
        tmp_path = self._tmp_path(blob_hash)
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "wb") as handle:
            handle.write(blob)
        os.replace(tmp_path, self._path(blob_hash))

    def put_sd(self, blob_hash: str, blob: bytes) -> None:
        self.put(blob_hash, blob)

    def delete(self, blob_hash: str) -> None:
        self._init_once()
        if not self.has(blob_hash):
            return
        os.remove(self._path(blob_hash))

    def list_blobs(self) -> list[str]:
        """Return the hashes of all blobs present in the blob directory."""
        self._init_once()
        return all_files(self.blob_dir, True)

    def shutdown(self) -> None:
        """Nothing to release for a disk store."""

    def _begin_check(self) -> bool:
        with self._checks_lock:
            if self._checks >= _MAX_CONCURRENT_CHECKS:
                return False
            self._checks += 1
            return True

    def _end_check(self) -> None:
        with self._checks_lock:
            self._checks -= 1

    def _dir(self, blob_hash: str) -> str:
        if self.prefix_length <= 0 or len(blob_hash) < self.prefix_length:
            return self.blob_dir
        return os.path.join(self.blob_dir, blob_hash[: self.prefix_length])

    def _path(self, blob_hash: str) -> str:
        return os.path.join(self._dir(blob_hash), blob_hash)

    def _tmp_path(self, blob_hash: str) -> str:
        return os.path.join(self.blob_dir, _TMP_DIR_NAME, blob_hash)

    def _init_once(self) -> None:
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            os.makedirs(self.blob_dir, mode=0o755, exist_ok=True)
            os.makedirs(os.path.join(self.blob_dir, _TMP_DIR_NAME), mode=0o755, exist_ok=True)
            self._initialized = True