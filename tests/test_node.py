import json
import socket
import threading

import pytest

from blobrelay.wallet.node import ClaimInTx, Node
from blobrelay.wallet.transport import (
    ConnectFailedError,
    NodeConnectedError,
    WalletError,
    WalletTimeoutError,
)


class _FakeWallet:
    def __init__(self, responder):
        self.responder = responder
        self.received = []
        self._closed = threading.Event()
        self._conns = []
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen()
        self._sock.settimeout(0.1)
        self.address = f"127.0.0.1:{self._sock.getsockname()[1]}"
        threading.Thread(target=self._accept, daemon=True).start()

    def _accept(self):
        while not self._closed.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self._conns.append(conn)
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn):
        with conn, conn.makefile("rb") as reader:
            try:
                for line in reader:
                    self.received.append(line)
                    reply = self.responder(json.loads(line))
                    if reply is not None:
                        conn.sendall(reply)
            except (OSError, ValueError):
                return

    def close(self):
        self._closed.set()
        for conn in self._conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        self._sock.close()


def _reply(msg, **fields):
    return (json.dumps({"id": msg.get("id"), **fields}) + "\n").encode()


CLAIM = {
    "name": "example",
    "claim_id": "abc123",
    "txid": "deadbeef",
    "nout": 1,
    "amount": 100,
    "depth": 5,
    "height": 42,
    "value": "00ff",
    "claim_sequence": 2,
    "address": "addr",
    "supports": [],
    "effective_amount": 150,
    "valid_at_height": 40,
}


def _responder(msg):
    method = msg.get("method")
    if method == "server.version" and "params" not in msg:
        return _reply(msg, result=["srv", "1.0"])
    if method == "server.version":
        return _reply(msg, result=["ElectrumX", "0.9"])
    if method == "blockchain.transaction.get":
        return _reply(msg, result="0100abcd")
    if method == "blockchain.claimtrie.getclaimsintx":
        return _reply(msg, jsonrpc="2.0", result=[CLAIM])
    if method == "fail":
        return _reply(msg, error={"code": -32600, "message": "bad request"})
    if method == "nested":
        return _reply(msg, error={"code": 1, "message": {"code": 2, "message": "inner"}})
    if method == "echo":
        return _reply(msg, result=msg["params"])
    return None


@pytest.fixture
def make_wallet():
    servers = []

    def factory(responder=_responder):
        server = _FakeWallet(responder)
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.close()


@pytest.fixture
def connected(make_wallet):
    server = make_wallet()
    node = Node(timeout=2.0)
    node.connect([server.address])
    yield node, server
    node.shutdown()


def test_server_version_sends_request_and_reads_second_result(connected):
    node, server = connected
    assert node.server_version() == "0.9"
    assert server.received[1] == b'{"id":0,"method":"server.version","params":["blobrelay","1.0"]}\n'


def test_get_tx(connected):
    node, _ = connected
    assert node.get_tx("deadbeef") == "0100abcd"


def test_get_claims_in_tx(connected):
    node, _ = connected
    claims = node.get_claims_in_tx("deadbeef")
    assert claims == [ClaimInTx.from_dict(CLAIM)]
    assert claims[0].claim_id == "abc123"
    assert claims[0].nout == 1


def test_error_response_raises(connected):
    node, _ = connected
    with pytest.raises(WalletError) as info:
        node.raw("fail", [])
    assert str(info.value) == "-32600: bad request"


def test_nested_error_response_uses_inner_error(connected):
    node, _ = connected
    with pytest.raises(WalletError) as info:
        node.raw("nested", [])
    assert str(info.value) == "2: inner"


def test_raw_returns_whole_response_and_ids_increase(connected):
    node, server = connected
    first = node.raw("echo", ["a", "b"])
    second = node.raw("echo", ["c"])
    assert first == {"id": 0, "result": ["a", "b"]}
    assert second == {"id": 1, "result": ["c"]}
    sent_ids = [json.loads(line)["id"] for line in server.received[1:]]
    assert sent_ids == [0, 1]


def test_unanswered_request_times_out(connected):
    node, _ = connected
    node.timeout = 0.2
    with pytest.raises(WalletTimeoutError):
        node.raw("ignored", [])


def test_connect_twice_raises(connected):
    node, server = connected
    with pytest.raises(NodeConnectedError):
        node.connect([server.address])


def test_connect_without_addresses_fails():
    node = Node()
    with pytest.raises(ConnectFailedError):
        node.connect([])


def test_connect_skips_server_that_times_out(make_wallet):
    silent = make_wallet(lambda msg: None)
    good = make_wallet()
    node = Node(timeout=2.0)
    try:
        node.connect([silent.address, good.address])
        assert node.get_tx("deadbeef") == "0100abcd"
    finally:
        node.shutdown()


def test_request_before_connect_raises():
    with pytest.raises(WalletError, match="not connected"):
        Node().get_tx("deadbeef")


def test_claim_from_partial_dict_uses_defaults():
    claim = ClaimInTx.from_dict({"name": "only"})
    assert claim.name == "only"
    assert claim.nout == 0
    assert claim.supports == []
    assert claim.claim_id == ""