"""The peer protocol server: answers availability and blob requests over TCP."""

from __future__ import annotations

import hashlib
import json
import logging
import socket
import threading
from typing import Any, BinaryIO

from blobrelay.store.base import BlobNotFoundError, BlobStore

log = logging.getLogger(__name__)

#: Port the peer server listens on if none is given.
DEFAULT_PORT = 3333
#: Address to be used when paying for data. Payments are not implemented.
LBRYCRD_ADDRESS = "bJxKvpD96kaJLriqVajZ7SaQTsWWyrGQct"

#: Largest request, in bytes, the protocol reader accepts.
MAX_REQUEST_SIZE = 512
#: Length of a blob hash written as hex.
BLOB_HASH_HEX_LENGTH = 96

PAYMENT_RATE_ACCEPTED = "RATE_ACCEPTED"
PAYMENT_RATE_TOO_LOW = "RATE_TOO_LOW"

_CONNECTION_TIMEOUT = 60.0
_ACCEPT_POLL = 0.2


class RequestTooLargeError(ValueError):
    """A protocol message grew past MAX_REQUEST_SIZE without becoming valid JSON."""

    def __init__(self, message: str = "request is too large") -> None:
        super().__init__(message)


def blob_hash_of(blob: bytes) -> str:
    """Return the hex-encoded SHA-384 hash that names a blob."""
    return hashlib.sha384(blob).hexdigest()


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def is_valid_json(data: bytes) -> bool:
    """Return whether the bytes hold exactly one valid JSON value."""
    try:
        json.loads(bytes(data), parse_constant=_reject_constant)
    except (ValueError, UnicodeDecodeError):
        return False
    return True


def _read_chunk(reader: BinaryIO) -> tuple[bytes, bool]:
    """Read up to and including the next '}'; the flag tells whether EOF was hit."""
    chunk = bytearray()
    while True:
        byte = reader.read(1)
        if not byte:
            return bytes(chunk), True
        chunk += byte
        if byte == b"}":
            return bytes(chunk), False


def read_next_message(reader: BinaryIO) -> bytes:
    """Read one JSON message from a byte stream.

    The protocol has no framing: a message ends at the first '}' after
    which the bytes read so far form valid JSON. Raises EOFError when the
    stream ends before any byte, and RequestTooLargeError when a message
    grows past MAX_REQUEST_SIZE.
    """
    message = bytearray()
    while True:
        chunk, eof = _read_chunk(reader)
        if chunk:
            message += chunk
            if len(message) > MAX_REQUEST_SIZE:
                raise RequestTooLargeError()
            if is_valid_json(message):
                break
        if eof:
            break
    if not message:
        raise EOFError("end of stream")
    return bytes(message)


def _parse_object(data: bytes, describe_syntax: bool) -> dict[str, Any]:
    try:
        parsed = json.loads(bytes(data))
    except json.JSONDecodeError as exc:
        if describe_syntax:
            raise ValueError(
                f"invalid json at offset {exc.pos} in data {bytes(data).hex()}"
            ) from exc
        raise ValueError(str(exc)) from exc
    except UnicodeDecodeError as exc:
        raise ValueError(f"invalid json in data {bytes(data).hex()}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ValueError(f"cannot unmarshal {type(parsed).__name__} into a request")
    return parsed


def _string(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key} must be a string")
    return value


def _string_list(obj: dict[str, Any], key: str) -> list[str]:
    value = obj.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"field {key} must be a list of strings")
    return value


def _number(obj: dict[str, Any], key: str) -> float:
    value = obj.get(key)
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"field {key} must be a number")
    return float(value)


def _encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class Server:
    """Serves blobs from a store to peers speaking the JSON peer protocol."""

    def __init__(self, store: BlobStore) -> None:
        self.store = store
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._connections: dict[socket.socket, threading.Thread] = {}

    @property
    def address(self) -> tuple[str, int] | None:
        """The (host, port) the server is bound to, once started."""
        if self._listener is None:
            return None
        host, port = self._listener.getsockname()[:2]
        return str(host), int(port)

    def start(self, address: str) -> None:
        """Listen on ``host:port`` and serve connections in background threads."""
        log.info("peer listening on %s", address)
        host, _, port = address.rpartition(":")
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((host, int(port)))
            listener.listen()
        except BaseException:
            listener.close()
            raise
        listener.settimeout(_ACCEPT_POLL)
        self._listener = listener
        self._stopping.clear()
        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()

    def shutdown(self) -> None:
        """Stop accepting connections and wait for open ones to finish."""
        log.debug("shutting down peer server")
        self._stopping.set()
        if self._accept_thread is not None:
            self._accept_thread.join()
            self._accept_thread = None
        if self._listener is not None:
            self._listener.close()
        with self._lock:
            open_connections = list(self._connections.items())
        for conn, _ in open_connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for _, thread in open_connections:
            thread.join()
        log.debug("peer server stopped")

    def _accept_loop(self) -> None:
        assert self._listener is not None
        while not self._stopping.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stopping.is_set():
                    return
                log.error("accepting conn: %s", exc)
                continue
            conn.settimeout(_CONNECTION_TIMEOUT)
            thread = threading.Thread(target=self._serve_connection, args=(conn,), daemon=True)
            with self._lock:
                self._connections[conn] = thread
            thread.start()

    def _serve_connection(self, conn: socket.socket) -> None:
        try:
            with conn, conn.makefile("rb") as reader:
                while True:
                    try:
                        request = read_next_message(reader)
                    except EOFError:
                        return
                    except (OSError, ValueError) as exc:
                        log.error("error reading peer request: %s", exc)
                        return

                    try:
                        response = self.handle_composite_request(request)
                    except Exception:
                        log.exception("error handling peer request")
                        return

                    try:
                        conn.sendall(response)
                    except OSError as exc:
                        # A reset means the other side closed the connection.
                        if "connection reset by peer" not in str(exc).lower():
                            log.error("error writing peer response: %s", exc)
                        return
        finally:
            with self._lock:
                self._connections.pop(conn, None)

    def handle_availability_request(self, data: bytes) -> bytes:
        """Answer which of the requested blobs the store holds."""
        request = _parse_object(data, describe_syntax=False)
        available = [h for h in _string_list(request, "requested_blobs") if self.store.has(h)]
        return _encode({"lbrycrd_address": LBRYCRD_ADDRESS, "available_blobs": available})

    def handle_composite_request(self, data: bytes) -> bytes:
        """Answer a combined availability, payment-rate and blob request.

        The returned bytes are the JSON response followed by the blob, if one
        was requested and found.
        """
        request = _parse_object(data, describe_syntax=True)
        response: dict[str, Any] = {"lbrycrd_address": LBRYCRD_ADDRESS}

        requested_blobs = _string_list(request, "requested_blobs")
        if requested_blobs:
            available = [h for h in requested_blobs if self.store.has(h)]
            if available:
                response["available_blobs"] = available

        rate = _number(request, "blob_data_payment_rate")
        response["blob_data_payment_rate"] = (
            PAYMENT_RATE_TOO_LOW if rate < 0 else PAYMENT_RATE_ACCEPTED
        )

        incoming: dict[str, Any] = {"blob_hash": "", "length": 0}
        blob = b""
        requested = _string(request, "requested_blob")
        if requested:
            if len(requested) != BLOB_HASH_HEX_LENGTH:
                raise ValueError("Invalid blob hash length")
            log.debug("Sending blob %s", requested[:8])
            try:
                blob, trace = self.store.get(requested)
            except BlobNotFoundError as exc:
                if exc.trace is not None:
                    log.debug("%s", exc.trace)
                incoming = {"error": str(exc), "blob_hash": "", "length": 0}
            else:
                log.debug("%s", trace)
                blob = bytes(blob)
                incoming = {"blob_hash": blob_hash_of(blob), "length": len(blob)}
        response["incoming_blob"] = incoming

        return _encode(response) + blob