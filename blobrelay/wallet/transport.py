"""A line-delimited JSON transport to a wallet server, plus the wallet errors."""

from __future__ import annotations

import json
import logging
import queue
import socket
import ssl
import threading

log = logging.getLogger(__name__)

#: Every message on the wire ends with this byte.
DELIMITER = b"\n"

_DIAL_TIMEOUT = 5.0
_HANDSHAKE_TIMEOUT = 1.0
_HANDSHAKE = b'{"id":1,"method":"server.version"}\n'


class WalletError(RuntimeError):
    """A wallet server request failed."""


class WalletTimeoutError(WalletError):
    """The wallet server did not answer in time."""

    def __init__(self, message: str = "timeout") -> None:
        super().__init__(message)


class NodeConnectedError(WalletError):
    """The node already has a connection."""

    def __init__(self, message: str = "node already connected") -> None:
        super().__init__(message)


class ConnectFailedError(WalletError):
    """None of the wallet servers could be reached."""

    def __init__(self, message: str = "failed to connect") -> None:
        super().__init__(message)


def _split_address(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr!r} has no port")
    return host.strip("[]"), int(port)


class TCPTransport:
    """A connection to a wallet server that delivers each received line.

    Received lines are put on ``responses``; a read failure is put on
    ``errors`` if nothing else is pending there. The connection is checked
    with a ``server.version`` call before the constructor returns.
    """

    def __init__(self, addr: str, tls_context: ssl.SSLContext | None = None) -> None:
        host, port = _split_address(addr)
        sock = socket.create_connection((host, port), timeout=_DIAL_TIMEOUT)
        if tls_context is not None:
            try:
                sock = tls_context.wrap_socket(sock, server_hostname=host)
            except BaseException:
                sock.close()
                raise
        sock.settimeout(None)

        self.address = addr
        self.responses: queue.Queue[bytes] = queue.Queue()
        self.errors: queue.Queue[BaseException] = queue.Queue(maxsize=1)
        self._sock = sock
        self._reader = sock.makefile("rb")
        self._closed = threading.Event()
        self._listener = threading.Thread(target=self._listen, daemon=True)
        self._listener.start()

        try:
            self._handshake()
        except WalletTimeoutError as exc:
            self.shutdown()
            raise WalletTimeoutError(f"{addr}: {exc}") from None
        except WalletError as exc:
            self.shutdown()
            raise WalletError(f"{addr}: {exc}") from exc

    def send(self, body: bytes) -> None:
        """Write raw bytes to the server."""
        log.debug("%s <- %s", self.address, body)
        self._sock.sendall(body)

    def shutdown(self) -> None:
        """Close the connection and stop reading. Safe to call twice."""
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        if threading.current_thread() is not self._listener:
            self._listener.join()
        try:
            self._reader.close()
            self._sock.close()
        except OSError as exc:
            self._report(exc)

    def _listen(self) -> None:
        while True:
            try:
                line = self._reader.readline()
            except (OSError, ValueError) as exc:
                self._report(exc)
                return
            if not line.endswith(DELIMITER):
                self._report(EOFError("connection closed"))
                return
            log.debug("%s -> %s", self.address, line)
            self.responses.put(line)

    def _report(self, exc: BaseException) -> None:
        try:
            self.errors.put_nowait(exc)
        except queue.Full:
            pass

    def _handshake(self) -> None:
        try:
            self.send(_HANDSHAKE)
        except OSError as exc:
            raise WalletError(str(exc)) from exc

        try:
            data = self.responses.get(timeout=_HANDSHAKE_TIMEOUT)
        except queue.Empty:
            raise WalletTimeoutError() from None

        try:
            parsed = json.loads(data)
        except ValueError as exc:
            raise WalletError(str(exc)) from exc
        if not isinstance(parsed, dict):
            raise WalletError(f"unexpected handshake response: {data!r}")
        error = parsed.get("error")
        if error is None:
            return
        if not isinstance(error, dict):
            raise WalletError(f"unexpected error in handshake response: {error!r}")
        message = error.get("message")
        if message is None:
            return
        if not isinstance(message, str):
            raise WalletError(f"unexpected error in handshake response: {error!r}")
        if message:
            raise WalletError(message)