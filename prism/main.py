from __future__ import annotations

import asyncio
import signal
import sys
from enum import Enum
from typing import Optional, Sequence

import uvloop

from prism.config import Config, ConfigError, load_config
from prism.log import get_logger, setup_logging
from prism.proxy_server import ReverseProxy
from prism.readiness import ReadinessCancelled, ReadinessError, Upstream, wait_until_ready

logger = get_logger(__name__)


class ServerFatal(Exception):
    pass


class ShutdownTimeout(Exception):
    pass


class State(Enum):
    STARTING = 0
    WAITING_FOR_UPSTREAM = 1
    SERVING = 2
    SHUTTING_DOWN = 3
    TERMINATED = 4


class Prism:
    """Owns the process: readiness gate, listening server, shutdown.

    ``terminated()`` is the single stop trigger.  The signal handlers call
    it; so does the server task's done-callback when serving fails.
    Before the server is up it cancels the readiness wait; after, it
    starts the graceful drain.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.state: State = State.STARTING
        self.upstream: Optional[Upstream] = None
        self.proxy: Optional[ReverseProxy] = None
        self.exit_code: Optional[int] = None
        self.fatal: Optional[Exception] = None

        self.ready: asyncio.Event = asyncio.Event()
        self._stop: asyncio.Event = asyncio.Event()
        self._force: asyncio.Event = asyncio.Event()
        self._wait_task: Optional[asyncio.Task[Upstream]] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    # -- stop triggers -----------------------------------------------------

    def terminated(self) -> None:
        if self._stop.is_set():
            logger.info('Received second stop request, exiting...')
            self._force.set()
            return

        logger.info("Stop requested in state %s", self.state.name)
        self._stop.set()
        if self._wait_task is not None and not self._wait_task.done():
            self._wait_task.cancel()

    def _server_done(self, task: asyncio.Task[None]) -> None:
        try:
            task.result()
        except asyncio.CancelledError:
            logger.debug("Server serve_forever() task cancelled.")
        except Exception as e:
            if self.state is not State.SERVING:
                logger.error("Server task failed during %s: %r", self.state.name, e)
                return
            self.fatal = ServerFatal(f"server: {e!r}")
            self.terminated()

    # -- lifecycle ---------------------------------------------------------

    def _transition(self, state: State) -> None:
        if state.value <= self.state.value:
            raise RuntimeError(f"illegal transition {self.state.name} -> {state.name}")
        logger.debug("%s -> %s", self.state.name, state.name)
        self.state = state

    def _terminate(self, code: int) -> int:
        self._transition(State.TERMINATED)
        self.exit_code = code
        return code

    async def wait_for_upstream(self) -> Upstream:
        """Block until the target answers.

        Raises
        ------
        ReadinessTimeout
            ``wait_timeout`` elapsed first.
        ReadinessCancelled
            A stop was requested while waiting.
        """
        self._wait_task = asyncio.create_task(
            wait_until_ready(self.config.target, self.config.wait_timeout),
            name="WaitTarget",
        )
        if self._stop.is_set():
            self._wait_task.cancel()
        try:
            return await self._wait_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            raise ReadinessCancelled(
                f"stopped while waiting for {self.config.target}"
            ) from None

    async def serve(self, install_signals: bool = True) -> int:
        """Run the whole lifecycle and return the process exit status."""
        loop = asyncio.get_running_loop()
        if install_signals:
            loop.add_signal_handler(signal.SIGTERM, self.terminated)
            loop.add_signal_handler(signal.SIGINT, self.terminated)
        try:
            return await self._serve()
        finally:
            if install_signals:
                loop.remove_signal_handler(signal.SIGTERM)
                loop.remove_signal_handler(signal.SIGINT)

    async def _serve(self) -> int:
        self._transition(State.WAITING_FOR_UPSTREAM)
        logger.info("Waiting up to %.1fs for %s", self.config.wait_timeout, self.config.target)
        try:
            self.upstream = await self.wait_for_upstream()
        except (ReadinessError, ValueError) as e:
            self.fatal = e
            logger.critical("wait target: %s", e)
            return self._terminate(1)

        self.proxy = ReverseProxy(self.config, self.upstream)
        try:
            await self.proxy.start()
        except OSError as e:
            self.fatal = ServerFatal(f"listen on {self.config.listen}: {e}")
            logger.critical("server: %s", self.fatal)
            return self._terminate(1)

        self._transition(State.SERVING)
        self._server_task = asyncio.create_task(self.proxy.serve_forever(), name="ServerTask")
        self._server_task.add_done_callback(self._server_done)
        self.ready.set()

        await self._stop.wait()

        if self.fatal is not None:
            logger.critical("%s", self.fatal)
            self.proxy.close()
            await self.proxy.abort()
            await self._finish_server_task()
            return self._terminate(1)

        return await self.shutdown()

    async def shutdown(self) -> int:
        """Stop accepting, then wait ``grace_period`` for in-flight requests."""
        assert self.proxy is not None
        self._transition(State.SHUTTING_DOWN)
        logger.info(
            "Shutting down, waiting up to %.1fs for %d connection(s)",
            self.config.grace_period,
            self.proxy.active_connections,
        )
        self.proxy.close()

        drain = asyncio.create_task(self.proxy.drain(self.config.grace_period), name="Drain")
        force = asyncio.create_task(self._force.wait(), name="Force")
        done, _ = await asyncio.wait({drain, force}, return_when=asyncio.FIRST_COMPLETED)

        clean = drain in done and drain.result()
        for task in (drain, force):
            task.cancel()
        await asyncio.gather(drain, force, return_exceptions=True)

        if not clean:
            if self._force.is_set():
                self.fatal = ShutdownTimeout("shutdown interrupted by a second stop request")
            else:
                self.fatal = ShutdownTimeout(
                    f"in-flight requests still running after {self.config.grace_period}s"
                )
            logger.critical("graceful shutdown: %s", self.fatal)
            await self.proxy.abort()

        await self._finish_server_task()
        if clean:
            logger.info("Shutdown complete.")
            return self._terminate(0)
        return self._terminate(1)

    async def _finish_server_task(self) -> None:
        task = self._server_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            async with asyncio.timeout(5):
                await asyncio.gather(task, return_exceptions=True)
        except TimeoutError:
            logger.warning("Server task did not finish")

    def run(self) -> int:
        loop = uvloop.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(self.serve())
        finally:
            loop.close()


def main(argv: Optional[Sequence[str]] = None) -> None:
    try:
        config = load_config(argv)
    except ConfigError as e:
        setup_logging()
        logger.critical("config: %s", e)
        sys.exit(2)

    setup_logging(config.log_level)
    sys.exit(Prism(config).run())


if __name__ == "__main__":
    main()
