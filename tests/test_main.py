"""Tests for parley/main.py -- component shutdown."""

import asyncio
import logging

import pytest

from parley.main import shutdown_components


class Closable:
    """Records close/stop calls made during shutdown."""

    def __init__(self, log: list[str], name: str) -> None:
        self.log = log
        self.name = name

    async def close(self) -> None:
        self.log.append(f"{self.name}.close")

    async def stop(self) -> None:
        self.log.append(f"{self.name}.stop")


async def _crash() -> None:
    raise RuntimeError("getUpdates exploded")


class TestShutdown:
    @pytest.mark.asyncio
    async def test_failed_poller_does_not_block_cleanup(self, caplog):
        log: list[str] = []
        poller = asyncio.create_task(_crash())
        await asyncio.sleep(0)
        assert poller.done()

        components = {
            "poller": poller,
            "orchestrator": Closable(log, "orchestrator"),
            "approval": Closable(log, "approval"),
            "bot": Closable(log, "bot"),
            "client": Closable(log, "client"),
        }
        with caplog.at_level(logging.ERROR, logger="parley.main"):
            await shutdown_components(components)

        assert log == ["orchestrator.close", "approval.stop", "bot.close", "client.close"]
        assert "Telegram poller failed" in caplog.text

    @pytest.mark.asyncio
    async def test_running_poller_is_cancelled(self):
        log: list[str] = []
        poller = asyncio.create_task(asyncio.sleep(60))

        await shutdown_components({"poller": poller, "client": Closable(log, "client")})

        assert poller.cancelled()
        assert log == ["client.close"]
