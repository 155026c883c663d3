from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from prism.log import get_logger

logger = get_logger(__name__)

RETRY_INTERVAL: float = 0.1


class ReadinessError(Exception):
    """The upstream could not be confirmed live; startup must not continue."""


class ReadinessTimeout(ReadinessError):
    pass


class ReadinessCancelled(ReadinessError):
    pass


@dataclass(frozen=True)
class Upstream:
    """The automation server every request is forwarded to."""

    scheme: str
    host: str
    port: int
    path: str = ""

    @classmethod
    def parse(cls, url: str) -> Upstream:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in ("http", "https"):
            raise ValueError(f"unsupported upstream scheme in {url!r}")
        if not parts.hostname:
            raise ValueError(f"no host in upstream url {url!r}")
        port = parts.port or (443 if scheme == "https" else 80)
        return cls(scheme, parts.hostname, port, parts.path.rstrip("/"))

    @property
    def is_https(self) -> bool:
        return self.scheme == "https"

    @property
    def netloc(self) -> str:
        default = 443 if self.is_https else 80
        host = f"[{self.host}]" if ":" in self.host else self.host
        return host if self.port == default else f"{host}:{self.port}"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.netloc}{self.path}"


async def probe(upstream: Upstream, timeout: Optional[float] = None) -> str:
    """Send one ``HEAD`` to *upstream* and return the status line.

    Raises ``OSError`` or ``asyncio.IncompleteReadError`` when nothing
    answered.  The status code itself is not inspected.
    """
    async with asyncio.timeout(timeout):
        reader, writer = await asyncio.open_connection(
            upstream.host, upstream.port, ssl=upstream.is_https or None
        )
        try:
            writer.write(
                f"HEAD {upstream.path or '/'} HTTP/1.1\r\n"
                f"Host: {upstream.netloc}\r\n"
                "Connection: close\r\n\r\n".encode()
            )
            await writer.drain()
            line = await reader.readuntil(b"\n")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
    return line.decode("latin-1").strip()


async def wait_until_ready(
    target: str, timeout: float, interval: float = RETRY_INTERVAL
) -> Upstream:
    """Poll *target* until it answers, for at most *timeout* seconds.

    Connection failures are treated as "still booting" and retried every
    *interval* seconds with no attempt limit.

    Raises
    ------
    ValueError
        *target* is not an http(s) URL.
    ReadinessTimeout
        Nothing answered before the deadline.
    """
    upstream = Upstream.parse(target)
    attempts = 0
    try:
        async with asyncio.timeout(timeout):
            while True:
                attempts += 1
                try:
                    status = await probe(upstream)
                except (OSError, asyncio.IncompleteReadError) as e:
                    logger.trace(
                        "Upstream %s not ready (attempt %d): %s",
                        upstream.url,
                        attempts,
                        e,
                    )
                    await asyncio.sleep(interval)
                    continue
                logger.debug(
                    "Upstream %s answered %r after %d attempt(s)",
                    upstream.url,
                    status,
                    attempts,
                )
                return upstream
    except TimeoutError as e:
        raise ReadinessTimeout(
            f"{upstream.url} not reachable within {timeout}s ({attempts} attempts)"
        ) from e
