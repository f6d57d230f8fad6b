"""Telegram transport for Parley.

Long-polls the Bot API, turns text messages into InboundMessages for the
orchestrator, and answers inline approve/deny buttons. Also serves as the
orchestrator's Transport: replies are split at Telegram's 4096-char limit.

Commands:
    /start, /help   - greeting and command list
    /new            - forget the prior session text
    /stop           - cancel the active run
    /queue [mode] [debounce_ms] - show or set the queue mode / debounce window
    /tools          - list available tools
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from parley.schemas import InboundMessage, QueueMode
from parley.session import MAX_DEBOUNCE_MS

if TYPE_CHECKING:
    from parley.orchestrator import ConversationOrchestrator

logger = logging.getLogger(__name__)

# Telegram Bot API base
TG_API = "https://api.telegram.org/bot{token}/{method}"

# Max Telegram message length
TG_MAX_LEN = 4096

HELP_TEXT = """Commands:

/start - Start the bot
/help - Show this help
/new - Start a new session
/stop - Stop the current run
/queue [collect|steer|interrupt] [debounce_ms] - Queue mode for messages sent during a run
/tools - List available tools"""


def split_message(text: str, limit: int = TG_MAX_LEN) -> list[str]:
    """Split text into chunks of at most ``limit`` chars, preferring newlines."""
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) + 1 > limit:
            if current:
                chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


def parse_callback_data(data: str) -> tuple[str, bool] | None:
    """Parse "approve|<id>" / "deny|<id>" into (request_id, approved)."""
    parts = data.split("|")
    if len(parts) != 2 or parts[0] not in ("approve", "deny") or not parts[1]:
        return None
    return parts[1], parts[0] == "approve"


class ParleyTelegramBot:
    """Long-polling Telegram bot implementing the Transport protocol."""

    def __init__(
        self,
        bot_token: str,
        allowed_users: set[int] | None = None,
        *,
        agent_name: str = "Parley",
        http: httpx.AsyncClient | None = None,
    ):
        self.bot_token = bot_token
        self.allowed_users = allowed_users
        self.agent_name = agent_name
        self._offset = 0
        self._orchestrator: ConversationOrchestrator | None = None
        self._tool_names: list[tuple[str, str]] = []
        self._http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=60, write=10, pool=10)
        )

    def set_orchestrator(
        self,
        orchestrator: ConversationOrchestrator,
        tools: list[tuple[str, str]] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._tool_names = tools or []

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def send(self, conversation_id: str, text: str) -> None:
        """Send a message, splitting it if needed."""
        chunks = split_message(text)
        for i, chunk in enumerate(chunks):
            await self._send(int(conversation_id), chunk)
            if i < len(chunks) - 1:
                await asyncio.sleep(0.3)  # Rate limit

    async def send_approval_prompt(
        self, conversation_id: str, request_id: str, command: str
    ) -> None:
        text = (
            "⚠️ Dangerous Command Detected\n\n"
            f"Command: {command}\n\n"
            "This command may cause irreversible changes. Do you want to proceed?"
        )
        keyboard = {
            "inline_keyboard": [
                [
                    {"text": "✅ Approve", "callback_data": f"approve|{request_id}"},
                    {"text": "❌ Deny", "callback_data": f"deny|{request_id}"},
                ]
            ]
        }
        await self._tg(
            "sendMessage",
            params={
                "chat_id": int(conversation_id),
                "text": text,
                "reply_markup": json.dumps(keyboard),
            },
            raise_on_error=True,
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start polling loop. Runs until cancelled."""
        me = await self._tg("getMe")
        logger.info("Bot started: @%s (%s)", me.get("username"), me.get("id"))

        while True:
            try:
                updates = await self._tg(
                    "getUpdates",
                    params={"offset": self._offset, "timeout": 30},
                )
                for update in updates:
                    self._offset = update["update_id"] + 1
                    await self._handle_update(update)
            except asyncio.CancelledError:
                raise
            except httpx.ReadTimeout:
                continue  # Normal for long polling
            except Exception as e:
                logger.error("Polling error: %s", e)
                await asyncio.sleep(5)

    async def _handle_update(self, update: dict[str, Any]) -> None:
        """Handle a single Telegram update."""
        callback = update.get("callback_query")
        if callback:
            await self._handle_callback(callback)
            return

        message = update.get("message")
        if not message:
            return

        chat_id = message["chat"]["id"]
        user_id = message.get("from", {}).get("id")
        text = message.get("text", "")

        if not text.strip():
            return

        # Access control
        if self.allowed_users and user_id not in self.allowed_users:
            await self._send(chat_id, "⛔ Not authorized.")
            return

        if text.startswith("/"):
            await self._handle_command(chat_id, text.strip())
            return

        if self._orchestrator is None:
            logger.warning("Message for %s dropped: no orchestrator attached", chat_id)
            return

        await self._orchestrator.handle_message(
            InboundMessage(
                conversation_id=str(chat_id),
                author_id=str(user_id),
                sequence_number=message.get("message_id", 0),
                text=text,
            )
        )

    async def _handle_command(self, chat_id: int, text: str) -> None:
        command, *args = text.split()
        command = command.split("@", 1)[0]  # /cmd@botname in groups
        orchestrator = self._orchestrator
        cid = str(chat_id)

        if command == "/start":
            await self._send(chat_id, f"👋 {self.agent_name} is ready. Send me a message!")
        elif command == "/help":
            await self._send(chat_id, HELP_TEXT)
        elif command == "/tools":
            if not self._tool_names:
                await self._send(chat_id, "No tools available.")
                return
            lines = [f"• {name} - {description}" for name, description in self._tool_names]
            await self._send(chat_id, "🔧 Available Tools:\n\n" + "\n".join(lines))
        elif orchestrator is None:
            await self._send(chat_id, "⚠️ Not ready yet.")
        elif command == "/new":
            orchestrator.new_session(cid)
            await self._send(chat_id, "🔄 New session started.")
        elif command == "/stop":
            await orchestrator.stop(cid)
        elif command == "/queue":
            await self._handle_queue(chat_id, args)
        else:
            await self._send(chat_id, "Unknown command. See /help.")

    async def _handle_queue(self, chat_id: int, args: list[str]) -> None:
        assert self._orchestrator is not None
        cid = str(chat_id)

        if not args:
            mode = self._orchestrator.queue_mode(cid)
            debounce_ms = self._orchestrator.debounce_ms(cid)
            await self._send(
                chat_id,
                f"🪢 Queue: {mode} (debounce {debounce_ms}ms)\n\n"
                "Usage: /queue <mode> [debounce_ms]\n"
                "Modes: collect, steer, interrupt",
            )
            return

        mode = args[0].lower()
        if mode not in {m.value for m in QueueMode}:
            await self._send(chat_id, "❌ Invalid mode. Use: collect, steer, interrupt")
            return

        debounce_ms: int | None = None
        if len(args) > 1:
            try:
                debounce_ms = int(args[1])
            except ValueError:
                debounce_ms = None
            if debounce_ms is None or not 0 <= debounce_ms <= MAX_DEBOUNCE_MS:
                await self._send(
                    chat_id, f"❌ Invalid debounce_ms. Use an integer from 0 to {MAX_DEBOUNCE_MS}."
                )
                return

        self._orchestrator.set_queue_options(cid, mode=mode, debounce_ms=debounce_ms)
        await self._send(chat_id, f"✅ Queue mode set to: {mode}")

    async def _handle_callback(self, callback: dict[str, Any]) -> None:
        callback_id = callback.get("id")
        parsed = parse_callback_data(callback.get("data", ""))
        if parsed is None:
            await self._tg(
                "answerCallbackQuery",
                params={"callback_query_id": callback_id, "text": "Invalid callback data"},
            )
            return

        user_id = callback.get("from", {}).get("id")
        if self.allowed_users and user_id not in self.allowed_users:
            await self._tg(
                "answerCallbackQuery",
                params={"callback_query_id": callback_id, "text": "⛔ Not authorized."},
            )
            return

        request_id, approved = parsed
        if self._orchestrator is None or not self._orchestrator.decide(request_id, approved):
            await self._tg(
                "answerCallbackQuery",
                params={"callback_query_id": callback_id, "text": "Request not found or expired"},
            )
            return

        message = callback.get("message") or {}
        if message:
            await self._tg(
                "editMessageText",
                params={
                    "chat_id": message["chat"]["id"],
                    "message_id": message["message_id"],
                    "text": "✅ Command approved and executing..."
                    if approved
                    else "❌ Command denied",
                },
            )
        await self._tg("answerCallbackQuery", params={"callback_query_id": callback_id})

    # ------------------------------------------------------------------
    # Bot API
    # ------------------------------------------------------------------

    async def _send(self, chat_id: int, text: str, parse_mode: str | None = None) -> dict:
        """Send a message to Telegram."""
        params: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            params["parse_mode"] = parse_mode
        return await self._tg("sendMessage", params=params, raise_on_error=True)

    async def _tg(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        raise_on_error: bool = False,
    ) -> Any:
        """Call Telegram Bot API."""
        url = TG_API.format(token=self.bot_token, method=method)
        response = await self._http.post(url, json=params or {})
        data = response.json()
        if not data.get("ok"):
            logger.warning("Telegram API error on %s: %s", method, data.get("description", data))
            if raise_on_error:
                raise RuntimeError(f"Telegram {method} failed: {data.get('description')}")
            return data.get("result", [])
        return data.get("result", {})

    async def close(self) -> None:
        """Cleanup."""
        await self._http.aclose()
