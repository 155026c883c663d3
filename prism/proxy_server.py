"""
proxy_server.py — HTTP/1.1 reverse proxy in front of one automation server.

Architecture
------------
``ReverseProxy`` binds the listening socket and hands every accepted
connection to an ``Http1Handler``.  The handler runs a keep-alive loop
per client connection and lazily opens one upstream connection that is
reused for as long as both sides keep the connection alive.

Two points in the exchange rewrite bodies (see ``capabilities``):

* every non-empty request body has its browser identity stripped before
  it is sent upstream;
* every ``200`` response that carries a body is buffered, has the
  canonical identity injected and is re-framed with a fresh
  ``Content-Length``.

Everything else (non-200 responses, replies to ``HEAD``, upgraded
connections) is streamed through byte-for-byte.

Threading model
~~~~~~~~~~~~~~~
Everything runs on a single asyncio event loop.  Connection tasks share
no mutable state besides the connection registry used for shutdown.
"""

from __future__ import annotations

import asyncio
import posixpath
import traceback
from dataclasses import dataclass, field
from typing import Optional

from prism.capabilities import (
    BadRequest,
    EncodeFailure,
    UpstreamDecodeFailure,
    decode_content,
    rewrite_request_body,
    rewrite_response_body,
)
from prism.config import Config
from prism.log import get_logger
from prism.readiness import Upstream

logger = get_logger(__name__)


# ============================================================================
# Routing
# ============================================================================


def join_path(base: str, path: str) -> str:
    """Join two URL paths segment-wise and clean the result.

    >>> join_path("/wd/hub/", "/session")
    '/wd/hub/session'
    >>> join_path("", "/")
    '/'
    """
    segments = [s for s in f"{base}/{path}".split("/") if s]
    return posixpath.normpath("/" + "/".join(segments))


def join_target(base: str, target: str) -> str:
    """Route a request-target (origin- or absolute-form) under *base*."""
    if not target.startswith("/"):
        _, sep, rest = target.partition("://")
        if sep:
            # absolute-form: drop scheme and authority
            slash = rest.find("/")
            target = rest[slash:] if slash != -1 else "/"
    path, sep, query = target.partition("?")
    path = path.split("#", 1)[0]
    return join_path(base, path) + (f"?{query}" if sep else "")


# ============================================================================
# Header Modification
# ============================================================================


class HeaderModifier:
    """Builds the header list sent upstream.

    Hop-by-hop headers only describe the client's connection to the
    proxy, so they are dropped.  ``Connection``/``Upgrade`` are kept for
    upgrade requests (WebDriver BiDi websockets) since the upstream has
    to see them to switch protocols.
    """

    HOP_BY_HOP: frozenset[str] = frozenset(
        {
            "connection",
            "keep-alive",
            "proxy-connection",
            "te",
            "trailer",
            "transfer-encoding",
            "upgrade",
        }
    )

    STRIP_PREFIXES: tuple[str, ...] = ("proxy-",)

    # Headers the proxy recomputes or consumes itself
    REFRAMED: frozenset[str] = frozenset({"content-length", "expect"})

    @staticmethod
    def get(headers: list[tuple[str, str]], name: str) -> Optional[str]:
        name = name.lower()
        for k, v in headers:
            if k.lower() == name:
                return v
        return None

    @staticmethod
    def connection_tokens(headers: list[tuple[str, str]]) -> set[str]:
        tokens: set[str] = set()
        for k, v in headers:
            if k.lower() == "connection":
                tokens.update(t.strip().lower() for t in v.split(",") if t.strip())
        return tokens

    @classmethod
    def is_upgrade(cls, headers: list[tuple[str, str]]) -> bool:
        return "upgrade" in cls.connection_tokens(headers) and cls.get(headers, "upgrade") is not None

    @classmethod
    def should_strip(cls, name: str, upgrade: bool = False) -> bool:
        lower = name.lower()
        if upgrade and lower in ("connection", "upgrade"):
            return False
        if lower in cls.HOP_BY_HOP or lower in cls.REFRAMED:
            return True
        return any(lower.startswith(p) for p in cls.STRIP_PREFIXES)

    @classmethod
    def prepare_request(
        cls,
        headers: list[tuple[str, str]],
        body: bytes,
        *,
        default_host: str,
        client_ip: Optional[str] = None,
        keep_alive: bool = True,
    ) -> list[tuple[str, str]]:
        """Return the headers to send upstream for a buffered *body*."""
        upgrade = cls.is_upgrade(headers)
        # Headers named in Connection are hop-by-hop as well
        extra = cls.connection_tokens(headers) - {"close", "keep-alive", "upgrade"}

        result: list[tuple[str, str]] = []
        forwarded_for: Optional[str] = None
        has_host = False
        framed = False
        for k, v in headers:
            lower = k.lower()
            if lower in ("content-length", "transfer-encoding"):
                framed = True
            if lower in extra or cls.should_strip(lower, upgrade):
                continue
            if lower == "x-forwarded-for":
                forwarded_for = v if forwarded_for is None else f"{forwarded_for}, {v}"
                continue
            if lower == "host":
                has_host = True
            result.append((k, v))

        if not has_host:
            result.insert(0, ("Host", default_host))
        if client_ip:
            forwarded_for = client_ip if forwarded_for is None else f"{forwarded_for}, {client_ip}"
        if forwarded_for is not None:
            result.append(("X-Forwarded-For", forwarded_for))
        if body or framed:
            result.append(("Content-Length", str(len(body))))
        if not keep_alive and not upgrade:
            result.append(("Connection", "close"))
        return result


# ============================================================================
# Connection Wrapper
# ============================================================================


class ManagedConnection:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    ``busy`` is set while a request is being served on the connection so
    that shutdown can tell idle keep-alive connections from in-flight
    ones.  ``served`` counts completed exchanges; a connection that has
    served none may still have its first request on the wire.
    """

    __slots__ = ("reader", "writer", "busy", "served", "_closed")

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self.busy = False
        self.served = 0
        self._closed = False

    @property
    def peer_ip(self) -> Optional[str]:
        peer = self.writer.get_extra_info("peername")
        if isinstance(peer, tuple) and peer:
            return str(peer[0])
        return None

    def abort(self) -> None:
        self._closed = True
        transport = self.writer.transport
        if transport is not None and not transport.is_closing():
            transport.abort()

    async def close(self) -> None:
        """Close the underlying transport.

        An SSL transport whose TCP connection was already reset by the
        peer is aborted instead, since a graceful close would only raise.
        """
        if self._closed:
            return
        self._closed = True
        try:
            transport = self.writer.transport
            if transport is None or transport.is_closing():
                return
            ssl_obj = transport.get_extra_info("ssl_object")
            if ssl_obj is not None:
                try:
                    ssl_obj.version()
                except Exception:
                    transport.abort()
                    return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except TimeoutError:
            transport = self.writer.transport
            if transport and not transport.is_closing():
                transport.abort()
            logger.trace("Connection close timed out, aborted")
        except Exception as e:
            logger.debug("Connection close error: %s", e)

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()


# ============================================================================
# Message Types
# ============================================================================


class _Malformed(Exception):
    """The client sent something that is not a parseable HTTP/1.x request."""


@dataclass
class BufferedH1Request:
    """A fully-read HTTP/1.x request, ready to be forwarded."""

    method: str
    target: str
    version: str
    headers: list[tuple[str, str]]
    body: bytes

    @property
    def keep_alive(self) -> bool:
        tokens = HeaderModifier.connection_tokens(self.headers)
        if self.version.upper() == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens


@dataclass
class ResponseHead:
    """Status line and headers of an upstream response, kept raw."""

    status_line: bytes
    version: str
    status: int
    lines: list[bytes] = field(default_factory=list)
    headers: list[tuple[str, str]] = field(default_factory=list)
    content_length: int = -1
    chunked: bool = False

    def add(self, line: bytes) -> None:
        """Record one raw header line, tracking body framing."""
        self.lines.append(line)
        decoded = line.decode("latin-1").strip()
        k, sep, v = decoded.partition(":")
        if not sep:
            return
        k, v = k.strip(), v.strip()
        self.headers.append((k, v))
        kl = k.lower()
        if kl == "content-length":
            length = int(v.split(",")[0].strip())
            if length < 0:
                raise ValueError(f"negative Content-Length: {v}")
            self.content_length = length
        elif kl == "transfer-encoding" and "chunked" in v.lower():
            self.chunked = True

    def header(self, name: str) -> Optional[str]:
        return HeaderModifier.get(self.headers, name)

    @property
    def keep_alive(self) -> bool:
        tokens = HeaderModifier.connection_tokens(self.headers)
        if self.version.upper() == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens

    def has_body(self, method: str) -> bool:
        if method == "HEAD":
            return False
        return not (100 <= self.status < 200 or self.status in (204, 304))

    def close_delimited(self, method: str) -> bool:
        return self.has_body(method) and not self.chunked and self.content_length == -1


# ============================================================================
# HTTP/1.1 Handler
# ============================================================================


class Http1Handler:
    """Forwards HTTP/1.x traffic between one client and the upstream."""

    __slots__ = ("config", "_proxy")

    REASONS: dict[int, str] = {
        400: "Bad Request",
        500: "Internal Server Error",
        502: "Bad Gateway",
        504: "Gateway Timeout",
    }

    def __init__(self, proxy: ReverseProxy, config: Config):
        self._proxy = proxy
        self.config = config

    async def handle(self, client: ManagedConnection) -> None:
        """Enter the keep-alive loop for *client*.

        Loops until either side closes, the idle timeout fires, the
        connection is upgraded, or the proxy starts shutting down.
        """
        target: Optional[ManagedConnection] = None
        try:
            while not client.closed:
                try:
                    request = await self._read_request(client)
                except _Malformed as e:
                    logger.warning("Malformed request from %s: %s", client.peer_ip, e)
                    await self._send_error(client, 400, str(e), keep_alive=False)
                    break
                if request is None:
                    break

                try:
                    keep_alive, target = await self._exchange(client, target, request)
                finally:
                    client.served += 1
                    client.busy = False
                if not keep_alive or self._proxy.closing:
                    break

        except asyncio.TimeoutError:
            logger.debug("[HTTP/1.1 %s] Timeout after %d reqs", client.peer_ip, client.served)
        except (ConnectionResetError, BrokenPipeError, asyncio.IncompleteReadError) as e:
            logger.debug("[HTTP/1.1 %s] Connection closed: %s", client.peer_ip, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "[HTTP/1.1 %s] Error: %s\n%s",
                client.peer_ip,
                e,
                traceback.format_exc(),
            )
        finally:
            if target:
                await target.close()

    # -- one request/response exchange -------------------------------------

    async def _exchange(
        self,
        client: ManagedConnection,
        target: Optional[ManagedConnection],
        request: BufferedH1Request,
    ) -> tuple[bool, Optional[ManagedConnection]]:
        """Forward *request* and relay its response.

        Returns ``(keep_alive, target)`` where *target* is the upstream
        connection to reuse for the next request, if any.
        """
        upstream = self._proxy.upstream
        path = join_target(upstream.path, request.target)
        url = f"{upstream.scheme}://{upstream.netloc}{path}"
        logger.trace("[REQ] %s %s", request.method, url)

        body = request.body
        if body:
            try:
                body = rewrite_request_body(body)
            except BadRequest as e:
                logger.warning("[REQ] %s %s rejected: %s", request.method, url, e)
                await self._send_error(client, 400, str(e), request.keep_alive)
                return request.keep_alive, target
            except EncodeFailure as e:
                logger.error("[REQ] %s %s: %s", request.method, url, e)
                await self._send_error(client, 500, str(e), request.keep_alive)
                return request.keep_alive, target

        headers = HeaderModifier.prepare_request(
            request.headers,
            body,
            default_host=upstream.netloc,
            client_ip=client.peer_ip,
            keep_alive=request.keep_alive,
        )

        try:
            if target is None or target.closed or target.reader.at_eof():
                if target is not None:
                    await target.close()
                target = await self._proxy.connect_upstream()
            async with asyncio.timeout(self.config.request_timeout):
                await self._send_request(target, request.method, path, request.version, headers, body)
                head = await self._read_response_head(target, client)
        except asyncio.TimeoutError:
            logger.warning("[RES] %s %s: upstream timed out", request.method, url)
            await self._drop(target)
            await self._send_error(client, 504, "upstream timed out", request.keep_alive)
            return request.keep_alive, None
        except (OSError, asyncio.IncompleteReadError, ValueError) as e:
            logger.warning("[RES] %s %s: upstream failed: %s", request.method, url, e)
            await self._drop(target)
            await self._send_error(client, 502, f"upstream failed: {e}", request.keep_alive)
            return request.keep_alive, None

        logger.trace("[RES] %s %s -> %d", request.method, url, head.status)

        if head.status == 101:
            client.writer.write(head.status_line + b"".join(head.lines) + b"\r\n")
            await client.writer.drain()
            await self._bidirectional_pipe(client, target)
            return False, target

        if head.status == 200 and head.has_body(request.method):
            try:
                ok = await self._rewrite_response(target, client, head, request.method)
            except UpstreamDecodeFailure as e:
                logger.error("[RES] %s %s: %s", request.method, url, e)
                await self._drop(target)
                await self._send_error(client, 502, str(e), request.keep_alive)
                return request.keep_alive, None
        else:
            ok = await self._forward_response(target, client, head, request.method)

        upstream_ka = ok and head.keep_alive and not head.close_delimited(request.method)
        if not upstream_ka:
            await self._drop(target)
            target = None
        return request.keep_alive and upstream_ka, target

    # -- client side -------------------------------------------------------

    async def _read_request(self, conn: ManagedConnection) -> Optional[BufferedH1Request]:
        """Read a complete HTTP/1.x request (line + headers + body).

        Returns ``None`` on EOF or idle timeout.  Marks *conn* busy once
        the request line has arrived.
        """
        try:
            async with asyncio.timeout(self.config.idle_timeout):
                line = await conn.reader.readline()
                while line == b"\r\n":
                    line = await conn.reader.readline()
        except asyncio.TimeoutError:
            return None
        if not line:
            return None

        conn.busy = True
        request_line = line.decode("latin-1").strip()
        parts = request_line.split(" ", 2)
        if len(parts) < 3 or not parts[2].upper().startswith("HTTP/1."):
            raise _Malformed(f"bad request line: {request_line[:100]!r}")
        method, target, version = parts

        async with asyncio.timeout(self.config.request_timeout):
            headers: list[tuple[str, str]] = []
            content_length = 0
            chunked = False

            while True:
                line = await conn.reader.readline()
                if not line:
                    raise asyncio.IncompleteReadError(b"", None)
                if line in (b"\r\n", b"\n"):
                    break
                decoded = line.decode("latin-1").strip()
                if ":" not in decoded:
                    raise _Malformed(f"bad header line: {decoded[:100]!r}")
                k, v = decoded.split(":", 1)
                k, v = k.strip(), v.strip()
                headers.append((k, v))
                kl = k.lower()
                if kl == "content-length":
                    try:
                        content_length = int(v)
                    except ValueError:
                        raise _Malformed(f"bad Content-Length: {v!r}") from None
                    if content_length < 0:
                        raise _Malformed(f"bad Content-Length: {v!r}")
                elif kl == "transfer-encoding" and "chunked" in v.lower():
                    chunked = True

            expect = HeaderModifier.get(headers, "expect")
            if expect and expect.lower() == "100-continue" and (chunked or content_length):
                conn.writer.write(b"HTTP/1.1 100 Continue\r\n\r\n")
                await conn.writer.drain()

            body = b""
            if chunked:
                body = await self._read_chunked(conn.reader)
            elif content_length > 0:
                body = await conn.reader.readexactly(content_length)

        return BufferedH1Request(method, target, version, headers, body)

    async def _read_chunked(self, reader: asyncio.StreamReader) -> bytes:
        """Read a chunked-encoded body, returning the reassembled bytes."""
        body = bytearray()
        while True:
            size_line = await reader.readline()
            try:
                size = int(size_line.split(b";", 1)[0].strip(), 16)
            except ValueError:
                raise _Malformed(f"bad chunk size: {size_line[:20]!r}") from None
            if size == 0:
                # trailers, up to the blank line
                while (await reader.readline()) not in (b"\r\n", b"\n", b""):
                    pass
                break
            body.extend(await reader.readexactly(size))
            await reader.readline()  # chunk-terminating CRLF
        return bytes(body)

    async def _send_error(
        self, client: ManagedConnection, status: int, message: str, keep_alive: bool = True
    ) -> None:
        """Answer *client* directly without involving the upstream."""
        if client.closed:
            return
        body = f"{message}\n".encode("utf-8")
        head = (
            f"HTTP/1.1 {status} {self.REASONS.get(status, '')}\r\n"
            "Content-Type: text/plain; charset=utf-8\r\n"
            "X-Content-Type-Options: nosniff\r\n"
            f"Content-Length: {len(body)}\r\n"
        )
        if not keep_alive or self._proxy.closing:
            head += "Connection: close\r\n"
        try:
            client.writer.write(head.encode() + b"\r\n" + body)
            await client.writer.drain()
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug("Could not send %d to client: %s", status, e)

    # -- upstream side -----------------------------------------------------

    async def _send_request(
        self,
        conn: ManagedConnection,
        method: str,
        path: str,
        version: str,
        headers: list[tuple[str, str]],
        body: bytes,
    ) -> None:
        """Serialise and send an HTTP/1.x request."""
        conn.writer.write(f"{method} {path} {version}\r\n".encode("latin-1"))
        for n, v in headers:
            conn.writer.write(f"{n}: {v}\r\n".encode("latin-1"))
        conn.writer.write(b"\r\n")
        if body:
            conn.writer.write(body)
        await conn.writer.drain()

    async def _read_response_head(
        self, source: ManagedConnection, client: ManagedConnection
    ) -> ResponseHead:
        """Read the status line and headers of the final response.

        Interim ``1xx`` responses (other than ``101``) are relayed to
        *client* as they arrive.
        """
        while True:
            status_line = await source.reader.readline()
            if not status_line:
                raise asyncio.IncompleteReadError(b"", None)
            parts = status_line.decode("latin-1").split(" ", 2)
            if len(parts) < 2 or not parts[0].upper().startswith("HTTP/"):
                raise ValueError(f"bad status line: {status_line[:100]!r}")
            head = ResponseHead(status_line, parts[0], int(parts[1]))

            while True:
                line = await source.reader.readline()
                if not line:
                    raise asyncio.IncompleteReadError(b"", None)
                if line in (b"\r\n", b"\n"):
                    break
                head.add(line)

            if 100 <= head.status < 200 and head.status != 101:
                client.writer.write(status_line + b"".join(head.lines) + b"\r\n")
                await client.writer.drain()
                continue
            return head

    async def _read_body(
        self, source: ManagedConnection, head: ResponseHead, method: str
    ) -> bytes:
        """Buffer a whole response body, de-chunked."""
        if not head.has_body(method):
            return b""
        if head.chunked:
            body = bytearray()
            while True:
                size_line = await source.reader.readline()
                size = int(size_line.split(b";", 1)[0].strip(), 16)
                if size == 0:
                    while (await source.reader.readline()) not in (b"\r\n", b"\n", b""):
                        pass
                    break
                body.extend(await source.reader.readexactly(size))
                await source.reader.readline()
            return bytes(body)
        if head.content_length >= 0:
            return await source.reader.readexactly(head.content_length)
        return await source.reader.read()

    def _write_head(
        self, dest: ManagedConnection, head: ResponseHead, skip: tuple[bytes, ...] = ()
    ) -> None:
        """Write status line and header lines, minus *skip*, without the blank line.

        While the proxy is shutting down the connection will not be
        reused, so the client is told with ``Connection: close``.
        """
        closing = self._proxy.closing
        dest.writer.write(head.status_line)
        for line in head.lines:
            name = line.split(b":", 1)[0].strip().lower()
            if name in skip or (closing and name in (b"connection", b"keep-alive")):
                continue
            dest.writer.write(line)
        if closing:
            dest.writer.write(b"Connection: close\r\n")

    async def _rewrite_response(
        self,
        source: ManagedConnection,
        dest: ManagedConnection,
        head: ResponseHead,
        method: str,
    ) -> bool:
        """Buffer a 200 response, inject the canonical identity, send it.

        Nothing is written to *dest* until the rewrite has succeeded.
        """
        try:
            async with asyncio.timeout(self.config.request_timeout):
                raw = await self._read_body(source, head, method)
        except (OSError, asyncio.IncompleteReadError, ValueError, asyncio.TimeoutError) as e:
            raise UpstreamDecodeFailure(f"read response body: {e!r}") from e

        raw = decode_content(raw, head.header("content-encoding") or "")
        body = rewrite_response_body(
            raw, self.config.browser_name, self.config.browser_version
        )

        self._write_head(
            dest, head, skip=(b"content-length", b"transfer-encoding", b"content-encoding")
        )
        dest.writer.write(f"Content-Length: {len(body)}\r\n\r\n".encode())
        dest.writer.write(body)
        await dest.writer.drain()
        return True

    async def _forward_response(
        self,
        source: ManagedConnection,
        dest: ManagedConnection,
        head: ResponseHead,
        method: str,
    ) -> bool:
        """Stream a response from *source* to *dest* unchanged.

        Returns ``False`` if the upstream broke off mid-body, in which
        case *dest* has received a truncated response and must be closed.

        Handles three body framing modes:
        1. ``Transfer-Encoding: chunked``
        2. ``Content-Length: N``
        3. **Close-delimited** — read until EOF (no length, not chunked)
        """
        self._write_head(dest, head)
        dest.writer.write(b"\r\n")

        if not head.has_body(method):
            await dest.writer.drain()
            return True

        try:
            async with asyncio.timeout(self.config.request_timeout):
                if head.chunked:
                    while True:
                        size_line = await source.reader.readline()
                        dest.writer.write(size_line)
                        size = int(size_line.split(b";", 1)[0].strip(), 16)
                        if size == 0:
                            while True:
                                trailer = await source.reader.readline()
                                dest.writer.write(trailer)
                                if trailer in (b"\r\n", b"\n", b""):
                                    break
                            break
                        dest.writer.write(await source.reader.readexactly(size))
                        dest.writer.write(await source.reader.readline())
                        await dest.writer.drain()

                elif head.content_length >= 0:
                    remaining = head.content_length
                    while remaining > 0:
                        chunk = await source.reader.read(
                            min(remaining, self.config.read_buffer_size)
                        )
                        if not chunk:
                            raise asyncio.IncompleteReadError(b"", remaining)
                        dest.writer.write(chunk)
                        await dest.writer.drain()
                        remaining -= len(chunk)

                else:
                    while True:
                        chunk = await source.reader.read(self.config.read_buffer_size)
                        if not chunk:
                            break
                        dest.writer.write(chunk)
                        await dest.writer.drain()

            await dest.writer.drain()
            return True
        except (asyncio.IncompleteReadError, ValueError, asyncio.TimeoutError, ConnectionResetError) as e:
            logger.warning("[RES] upstream broke off mid-body: %r", e)
            return False

    async def _bidirectional_pipe(
        self, client: ManagedConnection, target: ManagedConnection
    ) -> None:
        """Full-duplex byte pipe for upgraded connections (WebSocket, etc.)."""

        async def pipe(src: ManagedConnection, dst: ManagedConnection) -> None:
            try:
                while not src.closed and not dst.closed:
                    try:
                        async with asyncio.timeout(self.config.idle_timeout):
                            data = await src.reader.read(self.config.read_buffer_size)
                    except asyncio.TimeoutError:
                        break
                    if not data:
                        break
                    dst.writer.write(data)
                    await dst.writer.drain()
            except (ConnectionResetError, BrokenPipeError):
                pass

        t1 = asyncio.create_task(pipe(client, target))
        t2 = asyncio.create_task(pipe(target, client))
        try:
            done, pending = await asyncio.wait(
                [t1, t2], return_when=asyncio.FIRST_COMPLETED
            )
            for t in done:
                exc = t.exception()
                if exc is not None:
                    logger.debug("[PIPE] %s closed: %r", client.peer_ip, exc)
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        except asyncio.CancelledError:
            t1.cancel()
            t2.cancel()
            raise

    @staticmethod
    async def _drop(target: Optional[ManagedConnection]) -> None:
        if target is not None:
            await target.close()


# ============================================================================
# ReverseProxy
# ============================================================================


class ReverseProxy:
    """The listening side of prism.

    Usage::

        proxy = ReverseProxy(config, upstream)
        port = await proxy.start()
        serve = asyncio.create_task(proxy.serve_forever())
        ...
        proxy.close()                       # stop accepting, drop idle
        if not await proxy.drain(config.grace_period):
            await proxy.abort()
    """

    NEW_CONNECTION_GRACE = 1.0

    def __init__(self, config: Config, upstream: Upstream):
        self.config = config
        self.upstream = upstream
        self.closing = False
        self.port: int = config.listen_port

        self._handler = Http1Handler(self, config)
        self._server: Optional[asyncio.Server] = None
        self._connections: dict[ManagedConnection, asyncio.Task[None]] = {}
        self._timers: list[asyncio.TimerHandle] = []

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> int:
        """Bind the listening socket.  Returns the bound port number.

        Raises ``OSError`` if the address cannot be bound.
        """
        self._server = await asyncio.start_server(
            self._handle_client,
            self.config.listen_host,
            self.config.listen_port,
            reuse_address=True,
        )
        sock = self._server.sockets[0]
        self.port = sock.getsockname()[1]
        logger.info(
            "Serving prism on %s:%d -> %s",
            self.config.listen_host or "*",
            self.port,
            self.upstream.url,
        )
        return self.port

    async def serve_forever(self) -> None:
        if self._server is None:
            raise RuntimeError("ReverseProxy.start() was not called")
        await self._server.serve_forever()

    def close(self) -> None:
        """Stop accepting new connections and close idle keep-alive ones.

        Connections with a request in flight are left to finish; their
        keep-alive loop exits after the current response.  A connection
        that has not served a request yet gets ``NEW_CONNECTION_GRACE``
        seconds to deliver its first one before it is treated as idle.
        """
        self.closing = True
        if self._server is not None:
            self._server.close()

        loop = asyncio.get_running_loop()
        idle = fresh = 0
        for conn, task in self._connections.items():
            if conn.busy:
                continue
            if conn.served:
                task.cancel()
                idle += 1
            else:
                self._timers.append(
                    loop.call_later(self.NEW_CONNECTION_GRACE, self._cancel_if_idle, conn)
                )
                fresh += 1
        logger.debug(
            "Stopped accepting; closed %d idle, %d new, %d in flight",
            idle,
            fresh,
            len(self._connections) - idle - fresh,
        )

    def _cancel_if_idle(self, conn: ManagedConnection) -> None:
        task = self._connections.get(conn)
        if task is not None and not conn.busy:
            logger.trace("Closing new connection from %s with no request", conn.peer_ip)
            task.cancel()

    async def drain(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for every connection to finish."""
        tasks = list(self._connections.values())
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    async def abort(self) -> None:
        """Forcefully close all remaining connections."""
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        connections = list(self._connections.items())
        if connections:
            logger.warning("Force-closing %d active connection(s)", len(connections))
        for conn, task in connections:
            conn.abort()
            task.cancel()
        await asyncio.gather(*(task for _, task in connections), return_exceptions=True)

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    # -- connections -------------------------------------------------------

    async def connect_upstream(self) -> ManagedConnection:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(
                self.upstream.host,
                self.upstream.port,
                ssl=self.upstream.is_https or None,
            ),
            timeout=self.config.connect_timeout,
        )
        return ManagedConnection(reader, writer)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Entry point for each new client connection (called by ``asyncio.Server``)."""
        client = ManagedConnection(reader, writer)
        task = asyncio.current_task()
        assert task is not None
        self._connections[client] = task
        if self.closing:
            self._timers.append(
                asyncio.get_running_loop().call_later(
                    self.NEW_CONNECTION_GRACE, self._cancel_if_idle, client
                )
            )
        try:
            await self._handler.handle(client)
        finally:
            self._connections.pop(client, None)
            await client.close()
