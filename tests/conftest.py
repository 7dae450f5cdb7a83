"""Shared test fixtures for Misaka test suite."""

import asyncio

import pytest

from misaka.config import MisakaConfig, TimingConfig
from misaka.jobs import JobEngine
from misaka.router import Router


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.misaka and the caller's environment."""
    monkeypatch.setenv("MISAKA_HOME", str(tmp_path / "misaka_home"))
    for var in ("LAST_ORDER_URL", "SISTERS_SHARED_SECRET", "MISAKA_NODE"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def config():
    """A complete config with short timings."""
    return MisakaConfig(
        server_url="http://last-order.test",
        shared_secret="s3cret",
        node="sister-10032",
        timing=TimingConfig(
            login_retry_interval=0.01,
            save_retry_interval=0.01,
            save_timeout=0.5,
            watcher_delay=0.05,
            log_scan_interval=0.05,
        ),
    )


@pytest.fixture
def jobs():
    return JobEngine(watcher_delay=0.05)


@pytest.fixture
def router(jobs):
    return Router(jobs)


@pytest.fixture
def replies():
    """A reply callable that records every payload it is given."""

    class Replies(list):
        def __call__(self, payload):
            self.append(payload)

    return Replies()


@pytest.fixture
def eventually():
    """Wait until ``predicate()`` is true, failing after ``timeout`` seconds."""

    async def wait(predicate, timeout=3.0, interval=0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return wait
