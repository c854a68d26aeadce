"""A client for the peer protocol."""

from __future__ import annotations

import json
import logging
import socket
import time
from datetime import timedelta
from typing import Any, BinaryIO

from blobrelay.server.peerserver import read_next_message
from blobrelay.trace import BlobTrace, deserialize, new_blob_trace

log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 5.0
_ORIGIN = "tcp"


def _elapsed(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)


class _PeerError(RuntimeError):
    """The peer answered a request with an error or an invalid response."""

    def __init__(self, message: str, trace: BlobTrace | None = None) -> None:
        super().__init__(message)
        self.trace = trace


def _encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class Client:
    """A connection to a peer server. Timeouts are in seconds; 0 means 5 seconds."""

    def __init__(self, timeout: float = 0.0) -> None:
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._reader: BinaryIO | None = None

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self, address: str) -> None:
        """Connect over IPv4 to ``host:port``."""
        if not self.timeout:
            self.timeout = _DEFAULT_TIMEOUT
        host, _, port = address.rpartition(":")
        last_error: OSError | None = None
        for family, kind, proto, _, sockaddr in socket.getaddrinfo(
            host, int(port), socket.AF_INET, socket.SOCK_STREAM
        ):
            sock = socket.socket(family, kind, proto)
            sock.settimeout(self.timeout)
            try:
                sock.connect(sockaddr)
            except OSError as exc:
                sock.close()
                last_error = exc
                continue
            self._sock = sock
            self._reader = sock.makefile("rb")
            return
        if last_error is not None:
            raise last_error
        raise ConnectionError(f"no address found for {address}")

    def close(self) -> None:
        """Close the connection."""
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _require_connection(self) -> None:
        if self._sock is None:
            raise ConnectionError("not connected")

    def _write(self, payload: bytes) -> None:
        assert self._sock is not None
        log.debug("writing %d bytes", len(payload))
        self._sock.sendall(payload)

    def _read_json(self) -> dict[str, Any]:
        assert self._reader is not None
        message = read_next_message(self._reader)
        log.debug("read %d bytes", len(message))
        data = json.loads(message)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"unexpected response: {message!r}")
        return data

    def _read_raw(self, size: int) -> bytes:
        assert self._reader is not None
        data = self._reader.read(size)
        log.debug("read %d bytes", len(data))
        if len(data) != size:
            raise _PeerError("unexpected EOF")
        return data

    def has_blob(self, blob_hash: str) -> bool:
        """Ask the peer whether it has a blob."""
        self._require_connection()
        self._write(_encode({"lbrycrd_address": False, "requested_blobs": [blob_hash]}))
        response = self._read_json()
        return blob_hash in (response.get("available_blobs") or [])

    def get_blob(self, blob_hash: str) -> tuple[bytes, BlobTrace]:
        """Download a blob from the peer, returning it with its trace."""
        start = time.monotonic()
        self._require_connection()
        self._write(_encode({"requested_blob": blob_hash}))
        response = self._read_json()

        raw_trace = response.get("RequestTrace")
        if raw_trace is not None:
            trace = deserialize(json.dumps(raw_trace))
        else:
            trace = new_blob_trace(_elapsed(start), _ORIGIN)

        incoming = response.get("incoming_blob") or {}
        prefix = blob_hash[:8]
        error = incoming.get("error") or ""
        if error:
            raise _PeerError(f"{prefix}: {error}", trace)
        if incoming.get("blob_hash", "") != blob_hash:
            raise _PeerError(
                f"{prefix}: blob hash in response does not match requested hash",
                trace.stack(_elapsed(start), _ORIGIN),
            )
        length = incoming.get("length", 0)
        if isinstance(length, bool) or not isinstance(length, int) or length <= 0:
            raise _PeerError(f"{prefix}: length reported as <= 0", trace)

        log.debug("receiving blob %s", prefix)
        try:
            blob = self._read_raw(length)
        except _PeerError as exc:
            exc.trace = trace.stack(_elapsed(start), _ORIGIN)
            raise
        return blob, trace.stack(_elapsed(start), _ORIGIN)