"""Parley entry point.

Initializes all components and starts the server:
  Settings -> LLM client -> Failover -> Tools -> Runner -> Orchestrator -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn; the Telegram poller runs as a task on that loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from parley.api.builtin_tools import register_builtin_tools
from parley.api.runner import AgentRunner
from parley.api.tools import ToolRegistry
from parley.approval import ApprovalGate
from parley.config import Settings
from parley.llm.client import OpenAICompatibleClient
from parley.llm.failover import CooldownTable, FailoverProvider
from parley.orchestrator import ConversationOrchestrator
from parley.session import InMemorySessionStore
from parley.telegram_bot import ParleyTelegramBot
from parley.transport import LogTransport, Transport

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    client = OpenAICompatibleClient(settings)
    await client.start()

    cooldowns = CooldownTable(settings.model_cooldown)
    failover = FailoverProvider(client, cooldowns=cooldowns, timeout=settings.provider_timeout)

    bot: ParleyTelegramBot | None = None
    transport: Transport
    if settings.telegram_bot_token:
        bot = ParleyTelegramBot(
            settings.telegram_bot_token,
            set(settings.allowed_users) or None,
            agent_name=settings.agent_name,
        )
        transport = bot
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set -- replies are only logged")
        transport = LogTransport()

    approval = ApprovalGate(
        transport,
        timeout=settings.approval_timeout,
        retention=settings.approval_retention,
    )
    await approval.start()

    registry = ToolRegistry()
    register_builtin_tools(registry, settings, approval)

    runner = AgentRunner(failover, registry, settings)
    orchestrator = ConversationOrchestrator(
        settings,
        transport,
        runner,
        InMemorySessionStore(),
        approval=approval,
        cooldowns=cooldowns,
    )

    poller: asyncio.Task | None = None
    if bot is not None:
        bot.set_orchestrator(orchestrator, registry.describe())
        poller = asyncio.create_task(bot.start(), name="telegram-poller")
        poller.add_done_callback(_log_poller_exit)

    return {
        "client": client,
        "cooldowns": cooldowns,
        "approval": approval,
        "registry": registry,
        "runner": runner,
        "orchestrator": orchestrator,
        "bot": bot,
        "poller": poller,
    }


def _log_poller_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Telegram poller stopped: %s", exc, exc_info=exc)


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Parley...")

    poller = components.get("poller")
    if poller:
        poller.cancel()
        try:
            await poller
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Telegram poller failed")

    orchestrator = components.get("orchestrator")
    if orchestrator:
        await orchestrator.close()

    approval = components.get("approval")
    if approval:
        await approval.stop()

    bot = components.get("bot")
    if bot:
        await bot.close()

    client = components.get("client")
    if client:
        await client.close()

    logger.info("Parley shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the admin Starlette app; components live in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components

        logger.info("Parley started: %s", settings.agent_name)
        logger.info(
            "Models: %s, max_iterations=%d, workspace=%s",
            " -> ".join(settings.model_chain),
            settings.max_iterations,
            settings.workspace_dir,
        )
        yield

        await shutdown_components(components)

    from parley.api.rest import create_app

    return create_app(
        orchestrator=_lazy_component(components, "orchestrator"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str):
    """Create a lazy proxy for a component that will be initialized in lifespan."""
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Parley: %s", settings.agent_name)
    logger.info("LLM endpoint: %s", settings.llm_base_url)

    if not settings.llm_api_key:
        logger.warning("LLM_API_KEY is not set -- provider calls will fail")
    if not settings.admin_token:
        logger.warning("PARLEY_ADMIN_TOKEN not set -- admin API is unauthenticated")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
