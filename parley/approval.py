"""Approval gate for destructive shell commands.

A command matching the denylist is held until a human approves or denies
it through the transport's interactive prompt. Unanswered requests are
denied automatically after the approval timeout and the conversation is
told so. Every request resolves exactly once; anything ambiguous (send
failure, unknown request, cancellation) resolves to denied.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

from parley.intake.timers import KeyedTimers
from parley.transport import Transport, safe_send

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0  # seconds before an unanswered request is denied
DEFAULT_RETENTION = 120.0  # pending entries older than this are swept
_SWEEP_INTERVAL = 300.0
_WAIT_MARGIN = 5.0  # extra slack on the caller's wait beyond the auto-deny timer

# Case-insensitive substrings that mark a command as destructive
DANGEROUS_PATTERNS: tuple[str, ...] = (
    "rm -rf",
    "rm -r",
    "rm -f",
    "kill ",
    "killall",
    "pkill",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
    "init 0",
    "init 6",
    "dd ",
    "mkfs",
    "fdisk",
    "parted",
    "cfdisk",
    "sfdisk",
    "wipefs",
    "format ",
    "passwd",
    "chmod 777",
    "chown",
    "iptables",
    "systemctl stop",
    "systemctl disable",
    "docker rm",
    "drop table",
    "delete from",
    "truncate ",
    "> /dev/",
)

TIMEOUT_NOTICE = "⏱️ Command approval timed out. Request denied."


def is_dangerous(command: str) -> bool:
    lowered = command.lower()
    return any(pattern in lowered for pattern in DANGEROUS_PATTERNS)


@dataclass
class PendingApproval:
    request_id: str
    conversation_id: str
    command: str
    result: asyncio.Future[bool]
    created_at: float = field(default_factory=time.monotonic)


class ApprovalGate:
    def __init__(
        self,
        transport: Transport,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        retention: float = DEFAULT_RETENTION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self.timeout = timeout
        self.retention = retention
        self._clock = clock
        self._pending: dict[str, PendingApproval] = {}
        self._timers = KeyedTimers("approval")
        self._sweeper: asyncio.Task | None = None

    def is_dangerous(self, command: str) -> bool:
        return is_dangerous(command)

    async def request_approval(
        self, conversation_id: str, command: str
    ) -> tuple[asyncio.Future[bool], str]:
        """Register a pending approval and send the approve/deny prompt.

        Returns the result future and the request id used in decisions.
        """
        request_id = uuid4().hex[:16]
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingApproval(
            request_id=request_id,
            conversation_id=conversation_id,
            command=command,
            result=future,
            created_at=self._clock(),
        )

        async def expire() -> None:
            await self._expire(request_id)

        self._timers.schedule(request_id, self.timeout, expire)
        logger.info("Approval %s requested for %s: %s", request_id, conversation_id, command)

        try:
            await self._transport.send_approval_prompt(conversation_id, request_id, command)
        except Exception as e:
            logger.warning("Approval prompt for %s failed, denying: %s", request_id, e)
            self._resolve(request_id, False)

        return future, request_id

    def handle_decision(self, request_id: str, approved: bool) -> bool:
        """Resolve a pending request. False if it is unknown or already resolved."""
        resolved = self._resolve(request_id, approved)
        if resolved:
            logger.info("Approval %s %s", request_id, "approved" if approved else "denied")
        else:
            logger.debug("Decision for unknown/expired approval %s ignored", request_id)
        return resolved

    async def wait_for_approval(self, conversation_id: str, command: str) -> bool:
        """Gate ``command``: True for safe commands, otherwise the human's decision.

        The wait is bounded slightly past the auto-deny timer. Cancellation
        of the waiting run denies the request before propagating.
        """
        if not self.is_dangerous(command):
            return True

        future, request_id = await self.request_approval(conversation_id, command)
        try:
            return await asyncio.wait_for(
                asyncio.shield(future), timeout=self.timeout + _WAIT_MARGIN
            )
        except TimeoutError:
            logger.warning("Approval %s wait timed out, denying", request_id)
            self._resolve(request_id, False)
            return False
        except asyncio.CancelledError:
            self._resolve(request_id, False)
            raise

    def _resolve(self, request_id: str, approved: bool) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        self._timers.cancel(request_id)
        if pending.result.done():
            return False
        pending.result.set_result(approved)
        return True

    async def _expire(self, request_id: str) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        if not self._resolve(request_id, False):
            return
        logger.warning("Approval %s timed out for %s", request_id, pending.conversation_id)
        await safe_send(self._transport, pending.conversation_id, TIMEOUT_NOTICE)

    def pending_count(self) -> int:
        return len(self._pending)

    def get(self, request_id: str) -> PendingApproval | None:
        return self._pending.get(request_id)

    def sweep_stale(self) -> int:
        """Deny and drop pending requests older than the retention age."""
        cutoff = self._clock() - self.retention
        stale = [rid for rid, p in self._pending.items() if p.created_at < cutoff]
        for rid in stale:
            self._resolve(rid, False)
        if stale:
            logger.info("Swept %d stale approval request(s)", len(stale))
        return len(stale)

    async def start(self) -> None:
        """Start the periodic stale-request sweep."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="approval-sweeper")

    async def stop(self) -> None:
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for rid in list(self._pending):
            self._resolve(rid, False)
        self._timers.cancel_all()

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(_SWEEP_INTERVAL)
                self.sweep_stale()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Approval sweep failed")
