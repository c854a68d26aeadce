"""An HTTP server that serves blobs from a store."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

import cachetools

from blobrelay.store.base import BlobNotFoundError, BlobStore
from blobrelay.trace import BlobTrace, new_blob_trace

log = logging.getLogger(__name__)

_QUEUE_CAPACITY = 20000
_MISSES_CACHE_SIZE = 2000
_MISSES_TTL_SECONDS = 5 * 60
_TEXT = "text/plain; charset=utf-8"


@dataclass
class Response:
    """A status, headers and body ready to be written to a client."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


def _text(status: int, message: str, headers: dict[str, str] | None = None) -> Response:
    merged = dict(headers or {})
    merged["Content-Type"] = _TEXT
    return Response(status, message.encode("utf-8"), merged)


class _Job:
    def __init__(self, blob_hash: str) -> None:
        self.blob_hash = blob_hash
        self.done = threading.Event()
        self.response = Response(500)


class Server:
    """Serves ``GET /blob?hash=`` and ``HEAD /blob?hash=`` from a store.

    Blob downloads are handed to a fixed pool of workers. Hashes the store
    did not have are remembered for five minutes and answered from memory.
    """

    def __init__(self, store: BlobStore, request_queue_size: int) -> None:
        self.store = store
        self.concurrent_requests = request_queue_size
        self._misses: cachetools.TTLCache = cachetools.TTLCache(
            maxsize=_MISSES_CACHE_SIZE, ttl=_MISSES_TTL_SECONDS
        )
        self._misses_lock = threading.Lock()
        self._jobs: queue.Queue[_Job | None] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        self._workers: list[threading.Thread] = []
        self._httpd: ThreadingHTTPServer | None = None
        self._serve_thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int] | None:
        """The (host, port) the server is bound to, once started."""
        if self._httpd is None:
            return None
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    def _missed(self, blob_hash: str) -> bool:
        with self._misses_lock:
            return blob_hash in self._misses

    def _remember_miss(self, blob_hash: str) -> None:
        with self._misses_lock:
            self._misses[blob_hash] = True

    def handle_get_blob(self, blob_hash: str) -> Response:
        """Build the response to a blob download request."""
        start = time.monotonic()
        if self._missed(blob_hash):
            trace = new_blob_trace(timedelta(seconds=time.monotonic() - start), "http")
            return Response(404, headers={"Via": trace.serialize()})

        try:
            blob, trace = self.store.get(blob_hash)
        except BlobNotFoundError as exc:
            via = (exc.trace or BlobTrace()).serialize()
            self._remember_miss(blob_hash)
            return Response(404, headers={"Via": via})
        except Exception as exc:
            error_trace = getattr(exc, "trace", None)
            if not isinstance(error_trace, BlobTrace):
                error_trace = BlobTrace()
            log.error("error getting blob %s: %s", blob_hash, exc)
            return _text(500, str(exc), {"Via": error_trace.serialize()})

        return Response(
            200,
            bytes(blob),
            {
                "Via": trace.serialize(),
                "Content-Disposition": "filename=" + blob_hash,
                "Content-Type": "application/octet-stream",
            },
        )

    def handle_has_blob(self, blob_hash: str) -> Response:
        """Build the response to a blob existence check."""
        try:
            has = self.store.has(blob_hash)
        except Exception as exc:
            return _text(500, str(exc))
        return Response(204 if has else 404)

    def _enqueue(self, blob_hash: str) -> Response:
        job = _Job(blob_hash)
        self._jobs.put(job)
        job.done.wait()
        return job.response

    def _work(self) -> None:
        while True:
            job = self._jobs.get()
            if job is None:
                return
            try:
                job.response = self.handle_get_blob(job.blob_hash)
            except Exception:
                log.exception("recovered from error while serving %s", job.blob_hash)
            finally:
                job.done.set()

    def start(self, address: str) -> None:
        """Bind to ``host:port`` and serve in background threads."""
        host, _, port = address.rpartition(":")
        self._httpd = ThreadingHTTPServer((host, int(port)), _make_handler(self))
        self._httpd.daemon_threads = True

        for _ in range(self.concurrent_requests):
            worker = threading.Thread(target=self._work, daemon=True)
            worker.start()
            self._workers.append(worker)

        log.info("HTTP server listening on %s", address)
        self._serve_thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._serve_thread.start()

    def shutdown(self) -> None:
        """Stop accepting requests and stop the workers."""
        log.debug("shutting down HTTP server")
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
        if self._serve_thread is not None:
            self._serve_thread.join()
        for _ in self._workers:
            self._jobs.put(None)
        for worker in self._workers:
            worker.join()
        self._workers.clear()
        log.debug("HTTP server stopped")


def _recovery(exc: BaseException) -> Response:
    body = json.dumps({"title": "Error", "err": str(exc)}).encode("utf-8")
    return Response(500, body, {"Content-Type": "application/json; charset=utf-8"})


def _make_handler(server: Server) -> type[BaseHTTPRequestHandler]:
    class _Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def _route(self) -> tuple[str, str]:
            parts = urlsplit(self.path)
            blob_hash = parse_qs(parts.query).get("hash", [""])[0]
            return parts.path, blob_hash

        def _send(self, response: Response, with_body: bool = True) -> None:
            self.send_response(response.status)
            for name, value in response.headers.items():
                self.send_header(name, value)
            self.send_header("Content-Length", str(len(response.body)))
            self.end_headers()
            if with_body and response.body:
                self.wfile.write(response.body)

        def do_GET(self) -> None:  # noqa: N802
            path, blob_hash = self._route()
            try:
                if path == "/blob":
                    response = server._enqueue(blob_hash)
                elif path == "/":
                    raise RuntimeError("woops")
                else:
                    response = _text(404, "404 page not found")
            except Exception as exc:
                response = _recovery(exc)
            self._send(response)

        def do_HEAD(self) -> None:  # noqa: N802
            path, blob_hash = self._route()
            try:
                if path == "/blob":
                    response = server.handle_has_blob(blob_hash)
                else:
                    response = _text(404, "404 page not found")
            except Exception as exc:
                response = _recovery(exc)
            self._send(response, with_body=False)

        def log_message(self, format: str, *args: object) -> None:  # noqa: A002
            log.info("%s - %s", self.address_string(), format % args)

    return _Handler