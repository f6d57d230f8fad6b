"""Narrow interface to the messaging front end.

The orchestrator and the approval gate only ever deliver text and ask
for an approve/deny decision; formatting, attachments and platform
metadata stay inside the concrete transport.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, conversation_id: str, text: str) -> None:
        """Deliver ``text`` to the conversation."""

    async def send_approval_prompt(
        self, conversation_id: str, request_id: str, command: str
    ) -> None:
        """Show an interactive approve/deny prompt for ``command``."""


async def safe_send(transport: Transport, conversation_id: str, text: str) -> bool:
    """Deliver text, logging (never raising) on failure. Returns success."""
    try:
        await transport.send(conversation_id, text)
        return True
    except Exception as e:
        logger.warning("Delivery to %s failed: %s", conversation_id, e)
        return False


class LogTransport:
    """Transport that only logs. Used when no messaging front end is configured."""

    async def send(self, conversation_id: str, text: str) -> None:
        logger.info("[%s] %s", conversation_id, text)

    async def send_approval_prompt(
        self, conversation_id: str, request_id: str, command: str
    ) -> None:
        logger.info(
            "[%s] approval %s requested for: %s (POST /approvals/%s to decide)",
            conversation_id,
            request_id,
            command,
            request_id,
        )
