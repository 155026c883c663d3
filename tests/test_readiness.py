"""Tests for the startup readiness probe."""

import asyncio
import time

import pytest

from prism.readiness import ReadinessTimeout, Upstream, probe, wait_until_ready
from tests.helpers import FakeUpstream, free_port, response


class TestUpstream:
    def test_parse_with_base_path(self):
        up = Upstream.parse("http://grid.local:4545/wd/hub/")

        assert up == Upstream("http", "grid.local", 4545, "/wd/hub")
        assert up.url == "http://grid.local:4545/wd/hub"

    def test_default_ports(self):
        assert Upstream.parse("http://grid.local").port == 80
        assert Upstream.parse("https://grid.local").port == 443
        assert Upstream.parse("https://grid.local").netloc == "grid.local"

    def test_ipv6_netloc(self):
        assert Upstream.parse("http://[::1]:4545").netloc == "[::1]:4545"

    @pytest.mark.parametrize("url", ["ftp://grid.local", "localhost:4545", "http://"])
    def test_rejects_non_http_targets(self, url):
        with pytest.raises(ValueError):
            Upstream.parse(url)


class TestWaitUntilReady:
    @pytest.mark.asyncio
    async def test_live_upstream_resolves_immediately(self, upstream):
        result = await wait_until_ready(upstream.url + "/wd/hub", timeout=2.0)

        assert result == Upstream("http", "127.0.0.1", upstream.port, "/wd/hub")
        assert [r.method for r in upstream.requests] == ["HEAD"]
        assert upstream.requests[0].target == "/wd/hub"
        assert upstream.requests[0].body == b""

    @pytest.mark.asyncio
    async def test_any_status_counts_as_ready(self):
        async def broken(reader, writer):
            await reader.readline()
            writer.write(b"HTTP/1.1 503 Service Unavailable\r\nContent-Length: 0\r\n\r\n")
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(broken, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            status = await probe(Upstream("http", "127.0.0.1", port))
            result = await wait_until_ready(f"http://127.0.0.1:{port}", timeout=2.0)
        finally:
            server.close()

        assert status.startswith("HTTP/1.1 503")
        assert result.port == port

    @pytest.mark.asyncio
    async def test_retries_until_upstream_comes_up(self):
        port = free_port()
        fake = FakeUpstream(responder=lambda req: response(200))

        async def boot_later():
            await asyncio.sleep(0.5)
            await fake.start(port)

        booting = asyncio.create_task(boot_later())
        started = time.monotonic()
        try:
            result = await wait_until_ready(f"http://127.0.0.1:{port}", timeout=5.0)
            elapsed = time.monotonic() - started
        finally:
            await booting
            await fake.stop()

        assert result.port == port
        assert 0.4 <= elapsed < 2.0

    @pytest.mark.asyncio
    async def test_never_ready_times_out(self):
        port = free_port()
        started = time.monotonic()

        with pytest.raises(ReadinessTimeout):
            await wait_until_ready(f"http://127.0.0.1:{port}", timeout=0.3)

        assert time.monotonic() - started < 1.5

    @pytest.mark.asyncio
    async def test_peer_closing_without_answer_is_retried(self):
        async def hang_up(reader, writer):
            writer.close()

        server = await asyncio.start_server(hang_up, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            with pytest.raises(ReadinessTimeout):
                await wait_until_ready(f"http://127.0.0.1:{port}", timeout=0.3)
        finally:
            server.close()

    @pytest.mark.asyncio
    async def test_invalid_target_fails_without_retrying(self):
        with pytest.raises(ValueError):
            await wait_until_ready("ftp://127.0.0.1:1", timeout=5.0)
