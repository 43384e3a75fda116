"""HTTP/1.1 connection handling on top of anyio byte streams.

One ``HTTPConnection`` serves one accepted socket: it parses the request
head, frames the body (``Content-Length`` or chunked), drives the ASGI
app with a ``receive``/``send`` pair, and writes the response. Requests
on a connection are served one after another, so responses always leave
in request order.

Protocol failures never reach the app:

- malformed request line, header or framing -> 400, close
- header block larger than ``max_header_size`` -> 431, close
- declared body larger than ``max_content_length`` -> 413, close
- request after the worker started draining -> 503, close
"""

import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from email.utils import formatdate
from http import HTTPStatus
from typing import Any
from urllib.parse import unquote

import anyio
from anyio.abc import ByteStream, SocketAttribute
from anyio.streams.buffered import BufferedByteReceiveStream

from trill._internal.asgi import Message, Receive, Scope, Send
from trill.config import AppConfig
from trill.errors import HTTPError, PayloadTooLarge, ServiceUnavailable
from trill.http.fields import Headers

logger = logging.getLogger("trill.server")
access_logger = logging.getLogger("trill.access")

RequestHandler = Callable[[Scope, Receive, Send], Awaitable[None]]

_CHUNK_LINE_LIMIT = 1024
_STREAM_ERRORS = (anyio.BrokenResourceError, anyio.ClosedResourceError, anyio.EndOfStream)
_READ_SIZE = 65536
_SUPPORTED_VERSIONS = {"HTTP/1.1": "1.1", "HTTP/1.0": "1.0"}
_TOKEN_CHARS = frozenset("!#$%&'*+-.^_`|~0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")


def _bad_request(detail: str) -> HTTPError:
    return HTTPError(status=400, detail=detail)


@dataclass(frozen=True, slots=True)
class RequestHead:
    """A parsed request line plus header block."""

    method: str
    raw_path: bytes
    path: str
    query_string: bytes
    http_version: str
    headers: tuple[tuple[bytes, bytes], ...]
    content_length: int | None
    chunked: bool
    keep_alive: bool
    expect_continue: bool


def parse_request_head(data: bytes) -> RequestHead:
    """Parse everything up to (not including) the blank line ending the head.

    Raises ``HTTPError(400)`` for anything that is not a well-formed
    HTTP/1.0 or HTTP/1.1 origin-form request.
    """
    try:
        text = data.decode("latin-1")
    except UnicodeDecodeError:  # pragma: no cover - latin-1 decodes every byte
        raise _bad_request("Undecodable request head") from None

    lines = text.split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3:
        raise _bad_request("Malformed request line")
    method, target, version = parts
    if not method or not set(method) <= _TOKEN_CHARS:
        raise _bad_request("Malformed request method")
    if version not in _SUPPORTED_VERSIONS:
        raise _bad_request(f"Unsupported protocol version {version!r}")
    if not target.startswith("/"):
        raise _bad_request("Request target must be an absolute path")

    pairs: list[tuple[str, str]] = []
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name or not set(name) <= _TOKEN_CHARS:
            raise _bad_request(f"Malformed header line {line[:40]!r}")
        pairs.append((name.lower(), value.strip(" \t")))
    fields = Headers(pairs)

    raw_target = target.encode("latin-1")
    raw_path, _, query_string = raw_target.partition(b"?")

    lengths = set(fields.get_list("content-length"))
    if len(lengths) > 1 or not all(v.isdigit() for v in lengths):
        raise _bad_request("Invalid Content-Length")
    content_length = int(lengths.pop()) if lengths else None

    codings = fields.tokens("transfer-encoding")
    chunked = bool(codings)
    if chunked and codings[-1] != "chunked":
        raise _bad_request("Unsupported Transfer-Encoding")
    if chunked and content_length is not None:
        raise _bad_request("Both Content-Length and Transfer-Encoding present")

    http_version = _SUPPORTED_VERSIONS[version]
    if http_version == "1.1":
        keep_alive = not fields.has_token("connection", "close")
    else:
        keep_alive = fields.has_token("connection", "keep-alive")

    return RequestHead(
        method=method,
        raw_path=raw_path,
        path=unquote(raw_path.decode("latin-1")),
        query_string=query_string,
        http_version=http_version,
        headers=tuple((n.encode("latin-1"), v.encode("latin-1")) for n, v in pairs),
        content_length=content_length,
        chunked=chunked,
        keep_alive=keep_alive,
        expect_continue=http_version == "1.1" and fields.has_token("expect", "100-continue"),
    )


def _reason(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def _status_line(status: int) -> bytes:
    return f"HTTP/1.1 {status} {_reason(status)}\r\n".encode("latin-1")


class ConnectionTracker:
    """Per-worker bookkeeping shared by every connection on that worker.

    Counts in-flight requests and remembers which connections are idle
    (waiting for their next request), so a draining worker can close the
    idle ones at once and wait only for the busy ones.

    Lives on one event loop; no locking.
    """

    def __init__(self) -> None:
        self.draining = False
        self.inflight = 0
        self._idle: set[anyio.CancelScope] = set()
        self._drained = anyio.Event()

    @contextmanager
    def idle(self, scope: anyio.CancelScope) -> Iterator[None]:
        """Mark the enclosed wait for a request head as cancellable on drain."""
        self._idle.add(scope)
        try:
            yield
        finally:
            self._idle.discard(scope)

    def begin(self) -> None:
        self.inflight += 1

    def end(self) -> None:
        self.inflight -= 1
        if self.draining and self.inflight == 0:
            self._drained.set()

    def start_draining(self) -> None:
        self.draining = True
        for scope in list(self._idle):
            scope.cancel()
        if self.inflight == 0:
            self._drained.set()

    async def wait_drained(self, timeout: float) -> bool:
        """Wait for in-flight requests. Returns False if *timeout* ran out."""
        with anyio.move_on_after(timeout):
            await self._drained.wait()
            return True
        return False


class HTTPConnection:
    """Serves every request arriving on one client connection."""

    def __init__(
        self,
        stream: ByteStream,
        handler: RequestHandler,
        config: AppConfig,
        tracker: ConnectionTracker,
    ) -> None:
        self._stream = stream
        self._reader = BufferedByteReceiveStream(stream)
        self._handler = handler
        self._config = config
        self._tracker = tracker
        self._client = self._address(stream, SocketAttribute.remote_address)
        self._server = self._address(stream, SocketAttribute.local_address)

        # Per-request state, reset by _reset()
        self._head: RequestHead | None = None
        self._body_remaining = 0
        self._body_received = 0
        self._body_done = True
        self._delivered = False
        self._continue_sent = False
        self._must_close = False
        self._response_started = False
        self._response_complete = False
        self._chunked_response = False
        self._status = 0
        self._pending_headers: list[tuple[bytes, bytes]] = []
        self._bytes_sent = 0

    @staticmethod
    def _address(stream: ByteStream, attribute: Any) -> tuple[str, int] | None:
        address = stream.extra(attribute, None)
        if isinstance(address, tuple) and len(address) >= 2:
            return (str(address[0]), int(address[1]))
        return None

    async def serve(self) -> None:
        """Serve requests until the client leaves, an error closes the
        connection, the keep-alive timeout expires, or the worker drains."""
        async with self._stream:
            try:
                while await self._serve_one():
                    pass
            except _STREAM_ERRORS:
                logger.debug("Connection from %s closed by peer", self._client)

    async def _serve_one(self) -> bool:
        """Serve one request. Returns True to keep the connection open."""
        if self._tracker.draining:
            return False

        with anyio.move_on_after(self._config.keep_alive_timeout) as idle_scope:
            with self._tracker.idle(idle_scope):
                try:
                    data = await self._reader.receive_until(b"\r\n\r\n", self._config.max_header_size)
                except anyio.DelimiterNotFound:
                    await self._send_error(431, "Request header block too large")
                    return False
                except anyio.IncompleteRead:
                    return False
        if idle_scope.cancelled_caught:
            return False
        # receive_until only bounds the search, not the returned length.
        if len(data) > self._config.max_header_size:
            await self._send_error(431, "Request header block too large")
            return False

        try:
            head = parse_request_head(data.lstrip(b"\r\n"))
        except HTTPError as exc:
            await self._send_error(exc.status, exc.detail)
            return False

        if self._tracker.draining:
            unavailable = ServiceUnavailable()
            await self._send_error(unavailable.status, unavailable.detail)
            return False

        limit = self._config.max_content_length
        if head.content_length is not None and head.content_length > limit:
            await self._send_error(413, PayloadTooLarge(limit).detail)
            return False

        self._tracker.begin()
        try:
            return await self._run(head)
        finally:
            self._tracker.end()

    # -- One request --

    def _reset(self, head: RequestHead) -> None:
        self._head = head
        self._body_remaining = head.content_length or 0
        self._body_received = 0
        self._body_done = not head.chunked and self._body_remaining == 0
        self._delivered = False
        self._continue_sent = False
        self._must_close = not head.keep_alive
        self._response_started = False
        self._response_complete = False
        self._chunked_response = False
        self._status = 0
        self._pending_headers = []
        self._bytes_sent = 0

    def _scope(self, head: RequestHead) -> Scope:
        return {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "http_version": head.http_version,
            "method": head.method,
            "scheme": "http",
            "path": head.path,
            "raw_path": head.raw_path,
            "query_string": head.query_string,
            "root_path": "",
            "headers": list(head.headers),
            "client": self._client,
            "server": self._server,
        }

    async def _run(self, head: RequestHead) -> bool:
        self._reset(head)
        started = time.perf_counter()

        try:
            await self._handler(self._scope(head), self._receive, self._send)
        except _STREAM_ERRORS:
            raise
        except Exception:
            # Failures the app did not answer itself end this connection only.
            logger.exception("Unhandled error serving %s %s", head.method, head.path)
            if not self._response_started:
                await self._send_error(500, "Internal Server Error")
            return False

        if not self._response_started:
            await self._send_error(500, "Application sent no response")
            return False
        if not self._response_complete:
            # Response started but never finished; the framing is unknown.
            self._must_close = True

        if self._config.access_log:
            access_logger.info(
                '%s - "%s %s HTTP/%s" %d %d %.1fms',
                self._client[0] if self._client else "-",
                head.method,
                head.raw_path.decode("latin-1"),
                head.http_version,
                self._status,
                self._bytes_sent,
                (time.perf_counter() - started) * 1000,
            )
        return not self._must_close

    # -- ASGI receive --

    async def _receive(self) -> Message:
        if self._body_done:
            if self._delivered:
                return {"type": "http.disconnect"}
            self._delivered = True
            return {"type": "http.request", "body": b"", "more_body": False}

        assert self._head is not None
        if self._head.expect_continue and not self._continue_sent:
            self._continue_sent = True
            await self._stream.send(b"HTTP/1.1 100 Continue\r\n\r\n")

        try:
            if self._head.chunked:
                body = await self._read_chunk()
            else:
                body = await self._reader.receive(min(self._body_remaining, _READ_SIZE))
                self._body_remaining -= len(body)
                self._body_done = self._body_remaining == 0
        except (anyio.EndOfStream, anyio.IncompleteRead, anyio.DelimiterNotFound):
            self._body_done = True
            self._must_close = True
            return {"type": "http.disconnect"}
        except HTTPError:
            self._body_done = True
            self._must_close = True
            raise

        return {"type": "http.request", "body": body, "more_body": not self._body_done}

    async def _read_chunk(self) -> bytes:
        line = await self._reader.receive_until(b"\r\n", _CHUNK_LINE_LIMIT)
        try:
            size = int(line.split(b";", 1)[0].strip(), 16)
        except ValueError:
            raise _bad_request("Malformed chunk size") from None
        if size < 0:
            raise _bad_request("Malformed chunk size")

        if size == 0:
            # Skip trailer fields up to the terminating blank line.
            while await self._reader.receive_until(b"\r\n", self._config.max_header_size):
                pass
            self._body_done = True
            return b""

        limit = self._config.max_content_length
        if self._body_received + size > limit:
            raise PayloadTooLarge(limit)
        data = await self._reader.receive_exactly(size)
        if await self._reader.receive_exactly(2) != b"\r\n":
            raise _bad_request("Malformed chunk terminator")
        self._body_received += size
        return data

    # -- ASGI send --

    async def _send(self, message: Message) -> None:
        msg_type = message["type"]
        if msg_type == "http.response.start":
            if self._response_started:
                msg = "Response already started"
                raise RuntimeError(msg)
            self._status = int(message["status"])
            self._pending_headers = list(message.get("headers", []))
            return

        if msg_type != "http.response.body":
            return
        if self._response_complete:
            msg = "Response already complete"
            raise RuntimeError(msg)

        body: bytes = message.get("body", b"")
        more_body: bool = message.get("more_body", False)
        out = bytearray()
        if not self._response_started:
            out += self._encode_head(more_body)
            self._response_started = True

        assert self._head is not None
        if self._head.method != "HEAD":
            if self._chunked_response:
                if body:
                    out += f"{len(body):x}\r\n".encode("latin-1") + body + b"\r\n"
                if not more_body:
                    out += b"0\r\n\r\n"
            else:
                out += body
            self._bytes_sent += len(body)

        if not more_body:
            self._response_complete = True
        if out:
            await self._stream.send(bytes(out))

    def _encode_head(self, more_body: bool) -> bytes:
        # An unread request body leaves the stream unframed for the next request.
        if not self._body_done or self._tracker.draining:
            self._must_close = True

        has_length = any(name.lower() == b"content-length" for name, _ in self._pending_headers)
        if not has_length and more_body:
            if self._head is not None and self._head.http_version == "1.1":
                self._chunked_response = True
            else:
                self._must_close = True

        lines = [_status_line(self._status)]
        for name, value in self._pending_headers:
            if name.lower() == b"connection":
                continue
            lines.append(name + b": " + value + b"\r\n")
        if self._chunked_response:
            lines.append(b"transfer-encoding: chunked\r\n")
        lines.append(b"date: " + formatdate(usegmt=True).encode("latin-1") + b"\r\n")
        lines.append(b"server: trill\r\n")
        lines.append(b"connection: close\r\n" if self._must_close else b"connection: keep-alive\r\n")
        lines.append(b"\r\n")
        return b"".join(lines)

    async def _send_error(self, status: int, detail: str) -> None:
        """Write a plain-text error response that closes the connection."""
        body = (detail or _reason(status)).encode("utf-8")
        head = (
            _status_line(status)
            + b"content-type: text/plain; charset=utf-8\r\n"
            + f"content-length: {len(body)}\r\n".encode("latin-1")
            + b"date: " + formatdate(usegmt=True).encode("latin-1") + b"\r\n"
            + b"server: trill\r\n"
            + b"connection: close\r\n\r\n"
        )
        self._status = status
        try:
            await self._stream.send(head + body)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("Could not send %d to %s: connection gone", status, self._client)
