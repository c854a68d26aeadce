"""A JSON-RPC client for wallet servers."""

from __future__ import annotations

import itertools
import json
import logging
import queue
import random
import socket
import ssl
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from blobrelay.wallet.transport import (
    DELIMITER,
    ConnectFailedError,
    NodeConnectedError,
    TCPTransport,
    WalletError,
    WalletTimeoutError,
)

log = logging.getLogger(__name__)

CLIENT_NAME = "blobrelay"
CLIENT_VERSION = "0.0.1"
PROTOCOL_VERSION = "1.0"

_POLL = 0.05


@dataclass(frozen=True)
class ClaimInTx:
    """A claim found in a transaction."""

    name: str = ""
    claim_id: str = ""
    txid: str = ""
    nout: int = 0
    amount: int = 0
    depth: int = 0
    height: int = 0
    value: str = ""
    claim_sequence: int = 0
    address: str = ""
    supports: list[Any] = field(default_factory=list)
    effective_amount: int = 0
    valid_at_height: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaimInTx:
        def text(key: str) -> str:
            return str(data.get(key) or "")

        def number(key: str) -> int:
            return int(data.get(key) or 0)

        return cls(
            name=text("name"),
            claim_id=text("claim_id"),
            txid=text("txid"),
            nout=number("nout"),
            amount=number("amount"),
            depth=number("depth"),
            height=number("height"),
            value=text("value"),
            claim_sequence=number("claim_sequence"),
            address=text("address"),
            supports=list(data.get("supports") or []),
            effective_amount=number("effective_amount"),
            valid_at_height=number("valid_at_height"),
        )


@dataclass
class _Reply:
    data: dict[str, Any] | None = None
    error: BaseException | None = None


def _decode(line: bytes) -> tuple[int, _Reply]:
    """Split a server message into its id and its result or error."""
    try:
        data = json.loads(line)
    except ValueError as exc:
        return 0, _Reply(error=WalletError(f"invalid response: {exc}"))
    if not isinstance(data, dict):
        return 0, _Reply(error=WalletError(f"invalid response: {line!r}"))

    msg_id = data.get("id")
    if msg_id is None:
        msg_id = 0
    if isinstance(msg_id, bool) or not isinstance(msg_id, int):
        return 0, _Reply(error=WalletError(f"invalid response id: {msg_id!r}"))

    error = data.get("error")
    if error is None:
        error = {}
    if not isinstance(error, dict):
        return 0, _Reply(error=WalletError(f"invalid error in response: {error!r}"))
    code = error.get("code", 0)
    message = error.get("message")
    # Some servers nest the real error inside the message field.
    if isinstance(message, dict):
        code = message.get("code", 0)
        message = message.get("message")
    if message:
        return msg_id, _Reply(error=WalletError(f"{code}: {message}"))
    return msg_id, _Reply(data=data)


class Node:
    """A connection to one wallet server, chosen at random from a list.

    ``timeout`` is how long, in seconds, a request waits for its answer.
    """

    def __init__(self, timeout: float = 1.0) -> None:
        self.timeout = timeout
        self._transport: TCPTransport | None = None
        self._ids = itertools.count()
        self._ids_lock = threading.Lock()
        self._handlers: dict[int, queue.Queue[_Reply]] = {}
        self._handlers_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def connect(self, addrs: Iterable[str], tls_context: ssl.SSLContext | None = None) -> None:
        """Connect to the first reachable server, trying them in random order."""
        if self._transport is not None:
            raise NodeConnectedError()

        candidates = list(addrs)
        random.shuffle(candidates)
        for addr in candidates:
            try:
                self._transport = TCPTransport(addr, tls_context)
            except WalletTimeoutError:
                continue
            except socket.gaierror:
                continue
            break

        if self._transport is None:
            raise ConnectFailedError()

        log.debug("wallet connected to %s", self._transport.address)
        for target in (self._handle_errors, self._listen):
            thread = threading.Thread(target=target, daemon=True)
            thread.start()
            self._threads.append(thread)

    def shutdown(self) -> None:
        """Close the connection and stop the background threads."""
        address = self._transport.address if self._transport is not None else None
        log.debug("shutting down wallet %s", address)
        self._stop.set()
        if self._transport is not None:
            self._transport.shutdown()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        log.debug("wallet stopped")

    def raw(self, method: str, params: Iterable[str]) -> dict[str, Any] | None:
        """Make a request and return the whole decoded response."""
        return self._request(method, params)

    def server_version(self) -> str:
        """Return the version the server reports."""
        response = self._request("server.version", [CLIENT_NAME, PROTOCOL_VERSION])
        result = response.get("result") if response else None
        if isinstance(result, list) and len(result) >= 2 and isinstance(result[1], str):
            return result[1]
        return ""

    def get_claims_in_tx(self, txid: str) -> list[ClaimInTx]:
        """Return the claims in a transaction."""
        response = self._request("blockchain.claimtrie.getclaimsintx", [txid])
        result = response.get("result") if response else None
        if not result:
            return []
        if not isinstance(result, list):
            raise WalletError(f"unexpected result: {result!r}")
        return [ClaimInTx.from_dict(item) for item in result if isinstance(item, dict)]

    def get_tx(self, txid: str) -> str:
        """Return a transaction as hex."""
        response = self._request("blockchain.transaction.get", [txid])
        result = response.get("result") if response else None
        if result is None:
            return ""
        if not isinstance(result, str):
            raise WalletError(f"unexpected result: {result!r}")
        return result

    def _request(self, method: str, params: Iterable[str]) -> dict[str, Any] | None:
        if self._transport is None:
            raise WalletError("not connected")
        with self._ids_lock:
            msg_id = next(self._ids)
        body = json.dumps(
            {"id": msg_id, "method": method, "params": list(params)},
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8") + DELIMITER

        replies: queue.Queue[_Reply] = queue.Queue()
        with self._handlers_lock:
            self._handlers[msg_id] = replies
        try:
            try:
                self._transport.send(body)
            except OSError as exc:
                raise WalletError(str(exc)) from exc
            reply = self._wait(replies)
        finally:
            with self._handlers_lock:
                self._handlers.pop(msg_id, None)

        if reply is None:
            return None
        if reply.error is not None:
            raise reply.error
        return reply.data

    def _wait(self, replies: queue.Queue[_Reply]) -> _Reply | None:
        deadline = time.monotonic() + self.timeout
        while True:
            if self._stop.is_set():
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return _Reply(error=WalletTimeoutError())
            try:
                return replies.get(timeout=min(_POLL, remaining))
            except queue.Empty:
                continue

    def _listen(self) -> None:
        assert self._transport is not None
        while not self._stop.is_set():
            try:
                line = self._transport.responses.get(timeout=_POLL)
            except queue.Empty:
                continue
            msg_id, reply = _decode(line)
            if reply.error is not None and reply.data is None and msg_id == 0:
                log.error("%s", reply.error)
            with self._handlers_lock:
                handler = self._handlers.get(msg_id)
            if handler is not None:
                handler.put(reply)

    def _handle_errors(self) -> None:
        assert self._transport is not None
        while not self._stop.is_set():
            try:
                exc = self._transport.errors.get(timeout=_POLL)
            except queue.Empty:
                continue
            log.error("wallet transport error: %s", exc)