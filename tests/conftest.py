from __future__ import annotations

from dataclasses import replace
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

from prism.config import Config
from prism.proxy_server import ReverseProxy
from prism.readiness import Upstream
from tests.helpers import FakeUpstream

TEST_CONFIG = Config(
    listen_host="127.0.0.1",
    listen_port=0,
    wait_timeout=5.0,
    grace_period=5.0,
    browser_name="safari",
    browser_version="13.0",
    connect_timeout=2.0,
    request_timeout=5.0,
    idle_timeout=5.0,
)


@pytest.fixture
def config() -> Config:
    return TEST_CONFIG


@pytest_asyncio.fixture
async def upstream() -> AsyncGenerator[FakeUpstream, None]:
    fake = await FakeUpstream().start()
    yield fake
    await fake.stop()


@pytest_asyncio.fixture
async def start_proxy() -> AsyncGenerator[Callable[..., Awaitable[ReverseProxy]], None]:
    """Start a ReverseProxy in front of a given upstream URL."""
    started: list[ReverseProxy] = []

    async def _start(target: str, **overrides) -> ReverseProxy:
        cfg = replace(TEST_CONFIG, target=target, **overrides)
        proxy = ReverseProxy(cfg, Upstream.parse(target))
        await proxy.start()
        started.append(proxy)
        return proxy

    yield _start

    for proxy in started:
        proxy.close()
        await proxy.abort()
