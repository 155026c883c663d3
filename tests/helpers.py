"""Raw asyncio HTTP/1.1 peers used to drive the proxy in tests."""

from __future__ import annotations

import asyncio
import gzip
import json
import socket
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union


@dataclass
class Message:
    """A parsed HTTP/1.1 request or response."""

    start_line: str
    headers: list[tuple[str, str]]
    body: bytes
    raw: bytes = b""

    def header(self, name: str) -> Optional[str]:
        for k, v in self.headers:
            if k.lower() == name.lower():
                return v
        return None

    def header_names(self) -> list[str]:
        return [k.lower() for k, _ in self.headers]

    def json(self) -> Any:
        return json.loads(self.body)

    @property
    def status(self) -> int:
        return int(self.start_line.split(" ", 2)[1])

    @property
    def method(self) -> str:
        return self.start_line.split(" ", 1)[0]

    @property
    def target(self) -> str:
        return self.start_line.split(" ", 2)[1]


async def read_message(reader: asyncio.StreamReader, head_only: bool = False) -> Optional[Message]:
    """Read one message framed by Content-Length, chunking or EOF."""
    first = await reader.readline()
    if not first:
        return None
    raw = bytearray(first)
    headers: list[tuple[str, str]] = []
    while True:
        line = await reader.readline()
        raw.extend(line)
        if line in (b"\r\n", b"\n", b""):
            break
        k, v = line.decode("latin-1").split(":", 1)
        headers.append((k.strip(), v.strip()))

    msg = Message(first.decode("latin-1").strip(), headers, b"")
    length = msg.header("content-length")
    te = msg.header("transfer-encoding") or ""
    is_request = not msg.start_line.startswith("HTTP/")

    if head_only:
        pass
    elif "chunked" in te.lower():
        body = bytearray()
        while True:
            size_line = await reader.readline()
            raw.extend(size_line)
            size = int(size_line.strip(), 16)
            if size == 0:
                raw.extend(await reader.readline())
                break
            chunk = await reader.readexactly(size)
            raw.extend(chunk)
            body.extend(chunk)
            raw.extend(await reader.readline())
        msg.body = bytes(body)
    elif length is not None:
        msg.body = await reader.readexactly(int(length))
        raw.extend(msg.body)
    elif not is_request:
        msg.body = await reader.read()
        raw.extend(msg.body)

    msg.raw = bytes(raw)
    return msg


def build_request(
    method: str,
    path: str,
    body: bytes = b"",
    headers: Optional[list[tuple[str, str]]] = None,
    keep_alive: bool = False,
) -> bytes:
    lines = [f"{method} {path} HTTP/1.1", "Host: prism.test"]
    for k, v in headers or []:
        lines.append(f"{k}: {v}")
    if body:
        lines.append(f"Content-Length: {len(body)}")
    if not keep_alive:
        lines.append("Connection: close")
    return ("\r\n".join(lines) + "\r\n\r\n").encode() + body


async def request(
    port: int,
    method: str,
    path: str,
    body: Union[bytes, dict, None] = None,
    headers: Optional[list[tuple[str, str]]] = None,
) -> Message:
    """One request on a fresh connection to 127.0.0.1:*port*."""
    if isinstance(body, dict):
        body = json.dumps(body).encode()
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(build_request(method, path, body or b"", headers))
        await writer.drain()
        msg = await read_message(reader, head_only=method == "HEAD")
        assert msg is not None, "connection closed without a response"
        return msg
    finally:
        writer.close()
        await writer.wait_closed()


def response(
    status: int = 200,
    body: Union[bytes, dict, list, None] = None,
    headers: Optional[list[tuple[str, str]]] = None,
    reason: str = "OK",
    gzipped: bool = False,
) -> bytes:
    """Serialise a response the way an automation server would send it."""
    if body is None:
        payload = b""
    elif isinstance(body, (dict, list)):
        payload = json.dumps(body).encode()
    else:
        payload = body
    extra = list(headers or [])
    if gzipped:
        payload = gzip.compress(payload)
        extra.append(("Content-Encoding", "gzip"))
    lines = [f"HTTP/1.1 {status} {reason}", "Content-Type: application/json; charset=utf-8"]
    lines += [f"{k}: {v}" for k, v in extra]
    lines.append(f"Content-Length: {len(payload)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode() + payload


Responder = Callable[[Message], Union[bytes, Awaitable[bytes]]]


@dataclass
class FakeUpstream:
    """A WebDriver stand-in that records what it receives."""

    responder: Responder = field(default=lambda req: response(200, {"value": None}))
    requests: list[Message] = field(default_factory=list)
    received: asyncio.Event = field(default_factory=asyncio.Event)
    server: Optional[asyncio.Server] = None
    port: int = 0

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    async def start(self, port: int = 0) -> FakeUpstream:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        if self.server is not None:
            self.server.close()
            self.server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                req = await read_message(reader)
                if req is None:
                    break
                self.requests.append(req)
                if req.method == "HEAD":
                    out = response(200)
                else:
                    self.received.set()
                    out = self.responder(req)
                    if asyncio.iscoroutine(out):
                        out = await out
                writer.write(out)
                await writer.drain()
                if (req.header("connection") or "").lower() == "close":
                    break
        except (ConnectionResetError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    @property
    def session_requests(self) -> list[Message]:
        return [r for r in self.requests if r.method != "HEAD"]


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
