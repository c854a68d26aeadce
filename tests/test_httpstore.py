from datetime import timedelta

import pytest
import requests
import responses
from responses import matchers

from blobrelay.store.base import BlobNotFoundError, NotImplementedStoreError
from blobrelay.store.httpstore import HttpStore
from blobrelay.trace import new_blob_trace

UPSTREAM = "blobs.example.com"
URL = "http://blobs.example.com/blob"
HASH = "abc123"


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def _match():
    return [matchers.query_param_matcher({"hash": HASH})]


def test_has_true_on_no_content(mocked):
    mocked.add(responses.HEAD, URL, status=204, match=_match())
    assert HttpStore(UPSTREAM).has(HASH) is True


def test_has_false_on_not_found(mocked):
    mocked.add(responses.HEAD, URL, status=404, match=_match())
    assert HttpStore(UPSTREAM).has(HASH) is False


def test_has_raises_on_other_status(mocked):
    mocked.add(responses.HEAD, URL, status=500, match=_match())
    with pytest.raises(RuntimeError, match="upstream error. Status code: 500"):
        HttpStore(UPSTREAM).has(HASH)


def test_get_returns_blob_and_stacks_trace(mocked):
    mocked.add(responses.GET, URL, body=b"blob-bytes", status=200, match=_match())
    blob, trace = HttpStore(UPSTREAM).get(HASH)
    assert blob == b"blob-bytes"
    assert [s.origin_name for s in trace.stacks] == ["http", "http"]


def test_get_continues_upstream_trace(mocked):
    upstream_trace = new_blob_trace(timedelta(seconds=1), "disk")
    mocked.add(
        responses.GET,
        URL,
        body=b"blob-bytes",
        status=200,
        headers={"Via": upstream_trace.serialize()},
        match=_match(),
    )
    blob, trace = HttpStore(UPSTREAM).get(HASH)
    assert blob == b"blob-bytes"
    assert [s.origin_name for s in trace.stacks] == ["disk", "http"]
    assert trace.stacks[0].timing == timedelta(seconds=1)


def test_get_not_found_carries_trace(mocked):
    mocked.add(responses.GET, URL, status=404, match=_match())
    with pytest.raises(BlobNotFoundError) as info:
        HttpStore(UPSTREAM).get(HASH)
    assert info.value.trace.stacks[-1].origin_name == "http"


def test_get_error_status_includes_body(mocked):
    mocked.add(responses.GET, URL, status=502, body="bad gateway", match=_match())
    with pytest.raises(RuntimeError, match=r"Status code: 502 \(bad gateway\)"):
        HttpStore(UPSTREAM).get(HASH)


def test_get_invalid_via_header_raises(mocked):
    mocked.add(
        responses.GET, URL, status=200, body=b"x", headers={"Via": "not json"}, match=_match()
    )
    with pytest.raises(ValueError):
        HttpStore(UPSTREAM).get(HASH)


def test_connection_failure_propagates(mocked):
    with pytest.raises(requests.ConnectionError):
        HttpStore(UPSTREAM).get(HASH)


def test_put_not_implemented():
    with pytest.raises(NotImplementedStoreError):
        HttpStore(UPSTREAM).put(HASH, b"data")


def test_put_sd_not_implemented():
    with pytest.raises(NotImplementedStoreError):
        HttpStore(UPSTREAM).put_sd(HASH, b"data")


def test_delete_not_implemented():
    with pytest.raises(NotImplementedStoreError):
        HttpStore(UPSTREAM).delete(HASH)