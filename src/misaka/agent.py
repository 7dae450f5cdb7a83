"""Misaka agent: one long-running process per node, connected to last order."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from misaka.brain import Brain
from misaka.config import MisakaConfig
from misaka.errors import ConfigError
from misaka.jobs import JobEngine
from misaka.plugins import PluginManager
from misaka.router import Router
from misaka.session import Session

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class MisakaAgent:
    """Wires session, router, job engine, brain and plugins together."""

    def __init__(self, config: MisakaConfig | None = None, node: str | None = None):
        self.config = config or MisakaConfig.load()
        if node:
            self.config.node = node
        self.config.validate()

        timing = self.config.timing
        self.jobs = JobEngine(watcher_delay=timing.watcher_delay)
        self.router = Router(self.jobs)
        self.brain = Brain(
            lambda patches: self.session.request("brain-patch", patches),
            retry_interval=timing.save_retry_interval,
            save_timeout=timing.save_timeout,
        )
        self.plugins = PluginManager(self.config, self.router, brain=self.brain, say=self.say)
        self.session = Session(self.config, self.router, self.jobs, plugins=self.plugins)
        self.session.brain = self.brain

        self.plugins.load()
        self._running = False
        self._stop_event = asyncio.Event()
        self._stop_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    def say(self, text: str, to: str = "") -> None:
        self.session.say(text, to)

    async def start(self) -> None:
        """Connect and serve until stopped."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_stop)

        self.plugins.start()
        self.session.ensure_connected()

        self._running = True
        logger.info("misaka %s started with %d routes", self.config.node, len(self.router.routes))

        # Block until stop is requested
        await self._stop_event.wait()

    def _request_stop(self) -> None:
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.get_running_loop().create_task(self.stop())

    async def stop(self) -> None:
        """Stop jobs and plugins, then drop the connection."""
        if not self._running:
            self._stop_event.set()
            return
        logger.info("misaka %s stopping", self.config.node)

        self.jobs.stop_all()
        self.plugins.stop()
        await self.brain.close()
        try:
            await self.session.close()
        except Exception as e:
            logger.exception("Session shutdown error: %s", e)

        self._running = False
        self._stop_event.set()


def main():
    """Entry point for python -m misaka.agent."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    node = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        agent = MisakaAgent(node=node)
    except ConfigError as e:
        logger.error("%s", e)
        sys.exit(1)
    asyncio.run(agent.start())


if __name__ == "__main__":
    main()
