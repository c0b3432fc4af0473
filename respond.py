"""
Fixed-response HTTP/1.1 server.

Every request, regardless of method, target, headers or body, is answered with
the same response:

```
HTTP/1.1 200 OK
Content-Type: text/plain
Content-Length: 22

jenkins test 1 - road
```

Example:
```python
import respond

respond.run()  # Server running at http://localhost:3000/
```

Connections are served by a single asyncio event loop, one task per
connection. See the main :class:`ResponderServer` class for details.
"""

import asyncio
import errno
import logging
import sys
from contextlib import suppress
from http import HTTPStatus
from types import MappingProxyType
from typing import Callable, TypedDict

# As per https://www.rfc-editor.org/rfc/rfc9112.html#name-request-line
RequestLine = TypedDict(
    "RequestLine",
    {
        "method": bytes,
        "target": bytes,
        "version": tuple[int, int],  # major.minor
    },
)

# Called with the requested host and the actually bound port
ListeningCallback = Callable[[str, int], None]

HOSTNAME = "localhost"
PORT = 3000
BACKLOG = 16

# The fixed response
STATUS = 200
HEADERS = MappingProxyType({"Content-Type": "text/plain"})
BODY = b"jenkins test 1 - road\n"

_log = logging.getLogger("RESPOND")

# https://www.rfc-editor.org/rfc/rfc9110#name-tokens
_TCHARS = frozenset(
    b"!#$%&'*+-.^_`|~"
    b"0123456789"
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    b"abcdefghijklmnopqrstuvwxyz"
)
_HEXDIGITS = frozenset(b"0123456789abcdefABCDEF")

# body bytes are skipped in pieces of at most this size
_DISCARD_CHUNK = 64 * 1024

# total size of a header (or trailer) section
MAX_HEADER_BYTES = 16 * 1024


def _is_token(value: bytes) -> bool:
    return bool(value) and all(c in _TCHARS for c in value)


class BindError(OSError):
    """The listening socket could not be acquired.

    Wraps the underlying :class:`OSError` (address in use, permission denied,
    unresolvable host, ...) and keeps its ``errno``.
    """

    def __init__(self, host: str, port: int, cause: OSError):
        message = "cannot listen on %s:%s: %s" % (host, port, cause.strerror or cause)
        if cause.errno is None:
            super().__init__(message)
        else:
            super().__init__(cause.errno, message)
        self.host = host
        self.port = port


class HTTPException(Exception):
    """HTTP protocol exceptions"""

    def __init__(self, code=400):
        self.code = code


def _parse_request_line(line: bytes) -> RequestLine | None:
    """
    Parse an HTTP request line according to RFC 9112.

    As per https://www.rfc-editor.org/rfc/rfc9112.html#name-request-line
        request-line   = method SP request-target SP HTTP-version
    where SP is "single space"
    where method is any token (https://www.rfc-editor.org/rfc/rfc9110#section-9)
    where request-target is arbitrary for our purposes
    where HTTP-version is 'HTTP-version  = HTTP-name "/" DIGIT "." DIGIT'
        (https://www.rfc-editor.org/rfc/rfc9112.html#name-http-version)

    Parameters:
        line: The raw request line as bytes (e.g., b'GET / HTTP/1.1'), with or
            without the line terminator.

    Returns:
        A dictionary with 'method', 'target', and 'version', or None if invalid.
    """
    fragments = line.rstrip(b"\r\n").split(b" ")
    if len(fragments) != 3:
        return None

    if not _is_token(fragments[0]):
        return None

    if not fragments[1]:
        return None

    http_version_fragments = fragments[2].split(b"/")
    if len(http_version_fragments) != 2:
        return None

    if http_version_fragments[0] != b"HTTP":
        return None

    version_fragments = http_version_fragments[1].split(b".")
    if len(version_fragments) != 2:
        return None

    # exactly one DIGIT on each side of the dot
    for frag in version_fragments:
        if len(frag) != 1 or not frag.isdigit():
            return None

    return {
        "method": fragments[0],
        "target": fragments[1],
        "version": (int(version_fragments[0]), int(version_fragments[1])),
    }


class Request:
    """HTTP Request class

    Holds what was parsed off the wire for a single request. The fixed
    response never depends on it; it is only used for message framing
    (body length, persistence of the connection, HEAD).
    """

    def __init__(self, _reader):
        self.reader: asyncio.StreamReader = _reader
        # headers are 'None' until `_read_headers` is called
        self.headers: None | dict[bytes, bytes] = None
        self.method: bytes = b""
        self.path: bytes = b""
        self.version: tuple[int, int] = (1, 1)

    async def _readline(self) -> bytes:
        """
        Read one line and strip its terminator.

        Raises:
            HTTPException(431): If the line exceeds the stream limit.
            asyncio.IncompleteReadError: If the peer closed the stream.

        This is a coroutine.
        """
        try:
            line = await self.reader.readline()
        except ValueError:  # stream limit overrun
            raise HTTPException(431)

        if not line.endswith(b"\n"):
            raise asyncio.IncompleteReadError(line, None)

        return line.rstrip(b"\r\n")

    async def _read_request_line(self) -> bool:
        """
        Read and parse the HTTP request line from the client.

        Updates self.method, self.path and self.version.

        Returns:
            False if the peer closed the connection before sending anything,
            True otherwise.

        Raises:
            HTTPException(400): If the request line is malformed.
            HTTPException(505): If the HTTP major version is not 1.

        This is a coroutine.
        """
        while True:
            try:
                rl_raw = await self._readline()
            except asyncio.IncompleteReadError as e:
                if not e.partial:
                    return False
                raise
            # skip empty lines
            if rl_raw:
                break

        rl = _parse_request_line(rl_raw)
        if not rl:
            raise HTTPException(400)

        if rl["version"][0] != 1:
            raise HTTPException(505)

        self.method = rl["method"]
        self.version = rl["version"]

        self.path = rl["target"].split(b"?", 1)[0]

        return True

    async def _read_headers(self):
        """
        Read HTTP headers from the stream into self.headers.

        Header names are lower-cased; repeated headers are combined with a
        comma, as per https://www.rfc-editor.org/rfc/rfc9110#section-5.3

        Raises:
            HTTPException(400): If a header line is malformed.
            HTTPException(431): If the section exceeds MAX_HEADER_BYTES.

        This is a coroutine.
        """
        self.headers = {}
        size = 0
        while True:
            line = await self._readline()
            if not line:
                break

            size += len(line) + 2
            if size > MAX_HEADER_BYTES:
                raise HTTPException(431)

            frags = line.split(b":", 1)
            if len(frags) != 2 or not _is_token(frags[0]):
                raise HTTPException(400)

            name = frags[0].lower()
            value = frags[1].strip()
            if name in self.headers:
                self.headers[name] += b", " + value
            else:
                self.headers[name] = value

    async def _skip(self, n: int):
        while n > 0:
            data = await self.reader.readexactly(min(n, _DISCARD_CHUNK))
            n -= len(data)

    async def _discard_body(self):
        """
        Read and drop the request body so that the next request on the
        connection starts at a message boundary.

        Raises:
            HTTPException(400): On an invalid Content-Length, transfer coding
                or chunk size.
            HTTPException(431): If the trailer section exceeds MAX_HEADER_BYTES.

        This is a coroutine.
        """
        te = self.headers.get(b"transfer-encoding")
        if te is not None:
            codings = [c.strip().lower() for c in te.split(b",")]
            # chunked must be the final coding, otherwise the length is unknown
            if codings[-1] != b"chunked":
                raise HTTPException(400)
            await self._discard_chunked()
            return

        cl = self.headers.get(b"content-length")
        if cl is None:
            return

        if not cl.isdigit():
            raise HTTPException(400)

        await self._skip(int(cl))

    async def _discard_chunked(self):
        # https://www.rfc-editor.org/rfc/rfc9112.html#name-chunked-transfer-coding
        while True:
            size_field = (await self._readline()).split(b";", 1)[0].strip()
            if not size_field or not all(c in _HEXDIGITS for c in size_field):
                raise HTTPException(400)

            size = int(size_field, 16)
            if size == 0:
                break

            await self._skip(size)
            if await self._readline():
                raise HTTPException(400)

        # trailer section
        size = 0
        while True:
            line = await self._readline()
            if not line:
                break
            size += len(line) + 2
            if size > MAX_HEADER_BYTES:
                raise HTTPException(431)

    def keep_alive(self) -> bool:
        """
        Whether the connection persists after this request.

        HTTP/1.1 connections persist unless the client sent "Connection: close",
        HTTP/1.0 ones only if the client sent "Connection: keep-alive".
        """
        connection = (self.headers or {}).get(b"connection", b"")
        options = [o.strip().lower() for o in connection.split(b",")]

        if self.version >= (1, 1):
            return b"close" not in options

        return b"keep-alive" in options

    def expects_continue(self) -> bool:
        """
        Whether the client waits for an interim "100 Continue" before sending
        the body (https://www.rfc-editor.org/rfc/rfc9110#name-expect).
        HTTP/1.0 clients do not understand 1xx responses.
        """
        expect = (self.headers or {}).get(b"expect", b"")
        return self.version >= (1, 1) and expect.lower() == b"100-continue"


class Response:
    """HTTP Response class"""

    VERSION = b"1.1"

    def __init__(self, _writer, head=False):
        self._writer: asyncio.StreamWriter = _writer

        # When set, status line and headers are sent but the body is not
        self.head: bool = head

        # Status line fields

        self._status_code: int = 200

        # Set to 'True' once the status line has been sent
        self._status_line_sent: bool = False

        # Header fields

        self.headers: dict[str, str] = {}
        # Set to 'True' once the header lines have been sent
        self._headers_sent: bool = False

    async def _ensure_ready_for_body(self):
        """
        Ensure the status line and headers are sent before sending a response body.

        Raises:
            Exception: If headers are sent before the status line.

        This is a coroutine.
        """
        if not self._status_line_sent:
            if self._headers_sent:
                raise Exception("Headers were sent before status line")
            await self._send_status_line()

        if not self._headers_sent:
            await self._send_headers()

    def set_status_code(self, value: int):
        """
        Set the HTTP status code to send.

        Raises:
            Exception: If the status line has already been sent.
        """
        if self._status_line_sent:
            raise Exception("status line already sent")

        self._status_code = value

    def _reason_phrase(self) -> str:
        try:
            return HTTPStatus(self._status_code).phrase
        except ValueError:  # non-standard code
            return ""

    async def _send_status_line(self):
        if self._status_line_sent:
            raise Exception("status line already sent")

        # even if reason phrase is empty, the "preceding" space must be present
        # https://www.rfc-editor.org/rfc/rfc9112.html#section-4-9
        reason = self._reason_phrase()

        sl = "HTTP/%s %s %s\r\n" % (
            Response.VERSION.decode(),
            self._status_code,
            reason,
        )
        self._writer.write(sl.encode("latin-1"))
        self._status_line_sent = True
        await self._writer.drain()

    async def _send_headers(self):
        if self._headers_sent:
            raise Exception("Headers already sent")

        hdrs = ""
        for k, v in self.headers.items():
            hdrs += "%s: %s\r\n" % (k, v)
        hdrs += "\r\n"

        self._writer.write(hdrs.encode("latin-1"))
        self._headers_sent = True
        await self._writer.drain()

    async def send(self, content: bytes):
        """
        Send the response body content to the client.

        May be called as many times as needed, the content will be appended to the
        body. Nothing is written for responses to HEAD requests.

        This is a coroutine.
        """
        await self._ensure_ready_for_body()

        if self.head:
            return

        self._writer.write(content)
        await self._writer.drain()

    def add_header(self, key: str, value: str):
        """
        Add a header to the response.

        Raises:
            Exception: If headers have already been sent.
        """
        if self._headers_sent:
            raise Exception("Headers already sent")

        self.headers[key] = value


def _log_listening(host: str, port: int):
    _log.info("Server running at http://%s:%s/", host, port)


class ResponderServer:
    def __init__(self, backlog=BACKLOG):
        """
        ResponderServer class.

        Answers every request with the fixed response (:data:`STATUS`,
        :data:`HEADERS`, :data:`BODY`).

        See :func:`run` for starting the server.
        """
        self._backlog = backlog

    def run(self, hostname=HOSTNAME, port=PORT, on_listening=None):
        """
        Start the server (blocking) on the specified host and port and run forever.

        Raises:
            BindError: If the address cannot be listened on.
        """
        asyncio.run(self.arun(hostname, port, on_listening))

    async def handle(self, req: Request, resp: Response):
        """
        Write the fixed response. The request is not inspected.

        This is a coroutine.
        """
        resp.set_status_code(STATUS)
        for k, v in HEADERS.items():
            resp.add_header(k, v)
        resp.add_header("Content-Length", str(len(BODY)))
        await resp.send(BODY)

    async def _send_error(self, resp: Response, code: int):
        if resp._status_line_sent:
            # too late, the connection just gets closed
            return

        resp.set_status_code(code)
        resp.headers = {}
        resp.add_header("Content-Length", "0")
        resp.add_header("Connection", "close")
        await resp._ensure_ready_for_body()

    async def _handle_connection(self, reader, writer):
        """
        Handle a client TCP connection: read requests one after the other and
        answer each before reading the next, until either side closes.

        Parameters:
            reader: StreamReader for reading the connection.
            writer: StreamWriter for writing the connection.

        This is a coroutine.
        """
        peer = writer.get_extra_info("peername")
        resp = None

        try:
            while True:
                req = Request(reader)
                resp = Response(writer)

                try:
                    if not await req._read_request_line():
                        break
                    await req._read_headers()
                    if req.expects_continue():
                        writer.write(b"HTTP/1.1 100 Continue\r\n\r\n")
                        await writer.drain()
                    await req._discard_body()
                except HTTPException as e:
                    _log.debug("%s: rejected request (%s)", peer, e.code)
                    await self._send_error(resp, e.code)
                    break

                keep_alive = req.keep_alive()
                resp.head = req.method == b"HEAD"
                resp.add_header("Connection", "keep-alive" if keep_alive else "close")

                await self.handle(req, resp)

                # ensure the status line & headers are sent even if there
                # was no body
                await resp._ensure_ready_for_body()
                _log.debug(
                    "%s: %s %s -> %s",
                    peer,
                    req.method.decode(),
                    req.path.decode("latin-1"),
                    resp._status_code,
                )

                if not keep_alive:
                    break
        except asyncio.IncompleteReadError:
            # peer went away mid-request
            pass
        except OSError as e:
            # Do not send response for connection related errors - too late
            if e.errno not in (errno.ECONNABORTED, errno.ECONNRESET, errno.EPIPE):
                _log.exception("Connection error: %s", e)
        except Exception as e:
            _log.exception("Unhandled exception while serving %s: %s", peer, e)
            if resp is not None:
                with suppress(OSError):
                    await self._send_error(resp, 500)
        finally:
            writer.close()
            with suppress(OSError):
                await writer.wait_closed()

    async def arun(self, hostname=HOSTNAME, port=PORT, on_listening=None):
        """
        Asynchronously start the server and serve until cancelled.

        Raises:
            BindError: If the address cannot be listened on.

        This is a coroutine.
        """
        server = await self.start(hostname, port, on_listening)
        async with server:
            await server.serve_forever()

    async def start(
        self, hostname, port, on_listening: ListeningCallback | None = None
    ) -> asyncio.Server:
        """
        Bind the listening socket and return the asyncio.Server instance.

        Once bound, ``on_listening`` is called with the host and the bound port
        (which differs from ``port`` when ``port`` is 0). By default the
        startup notice is logged.

        Raises:
            BindError: If the address cannot be listened on. There is no retry.

        This is a coroutine.
        """
        try:
            server = await asyncio.start_server(
                self._handle_connection, hostname, port, backlog=self._backlog
            )
        except OSError as e:
            raise BindError(hostname, port, e) from e

        if server.sockets:
            port = server.sockets[0].getsockname()[1]

        (on_listening or _log_listening)(hostname, port)
        return server


def run(hostname=HOSTNAME, port=PORT):
    """
    Serve the fixed response on ``hostname:port`` forever.

    Logging is set up with :func:`init_logger` unless the module logger
    already has handlers, so the startup notice reaches stdout.
    """
    if not _log.handlers:
        init_logger()
    ResponderServer().run(hostname, port)


def init_logger(level=logging.INFO):
    """
    Route the module logger to the standard streams: records below WARNING
    (such as the startup notice) go to stdout, the rest to stderr.
    """
    fmt = logging.Formatter("%(message)s")

    out = logging.StreamHandler(sys.stdout)
    out.setLevel(level)
    out.addFilter(lambda record: record.levelno < logging.WARNING)
    out.setFormatter(fmt)

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.WARNING)
    err.setFormatter(fmt)

    _log.setLevel(level)
    _log.handlers[:] = [out, err]
    _log.propagate = False


def main(hostname=HOSTNAME, port=PORT) -> int:
    """
    Process entry point.

    Returns:
        0 once interrupted from the outside, 1 if the address could not be
        listened on.
    """
    init_logger()
    try:
        run(hostname, port)
    except BindError as e:
        _log.error("Error: %s", e)
        return 1
    except KeyboardInterrupt:
        pass

    return 0


if __name__ == "__main__":
    sys.exit(main())
