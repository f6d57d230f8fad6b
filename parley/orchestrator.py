"""Conversation orchestrator -- wires intake, run state and the agent loop.

Flow for each inbound message:

    stop phrase? -> RateLimiter -> RunCoordinator -> FragmentReassembler
        -> Debouncer -> AgentRunner (as a cancellable task) -> Transport

Every conversation progresses independently. Per-conversation steps
that must not interleave (append + timer reset, Idle -> Running) are
synchronous, so no lock is needed on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from parley.api.runner import AgentRunner
from parley.approval import ApprovalGate
from parley.config import Settings
from parley.intake import Debouncer, FragmentReassembler, RateLimiter
from parley.llm.failover import CooldownTable
from parley.runs import CancellationRegistry, Disposition, RunCoordinator
from parley.schemas import InboundMessage, QueueMode, Usage
from parley.session import DEBOUNCE_MS_OPTION, MAX_DEBOUNCE_MS, QUEUE_MODE_OPTION, SessionStore
from parley.transport import Transport, safe_send

logger = logging.getLogger(__name__)

STOP_PHRASES = frozenset({"стоп", "stop", "остановись", "halt", "pause"})
_STOP_SUBSTRINGS = ("стоп", "остановись")

STOPPED_MESSAGE = "🛑 Stopped current run."
NOTHING_TO_STOP_MESSAGE = "ℹ️ No active run to stop."
STOP_PHRASE_ACK = "Ок, жду"
ERROR_MESSAGE = "❌ Sorry, I encountered an error processing your request."
RATE_LIMIT_MESSAGE = "⏱️ Please wait {seconds} seconds before sending another message."
SILENT_REPLY = "SILENT_REPLY"


def is_stop_phrase(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in STOP_PHRASES:
        return True
    return any(s in lowered for s in _STOP_SUBSTRINGS)


def format_usage_footer(usage: Usage) -> str:
    """Format token usage as a compact footer string."""
    inp = usage.prompt_tokens
    out = usage.completion_tokens
    inp_str = f"{inp / 1000:.1f}K" if inp >= 1000 else str(inp)
    out_str = f"{out / 1000:.1f}K" if out >= 1000 else str(out)
    return f"\U0001f4ca {inp_str} in / {out_str} out"


class ConversationOrchestrator:
    def __init__(
        self,
        settings: Settings,
        transport: Transport,
        runner: AgentRunner,
        sessions: SessionStore,
        *,
        approval: ApprovalGate | None = None,
        cooldowns: CooldownTable | None = None,
        rate_limiter: RateLimiter | None = None,
        fragments: FragmentReassembler | None = None,
        debouncer: Debouncer | None = None,
        coordinator: RunCoordinator | None = None,
        usage_footer: bool = True,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._runner = runner
        self._sessions = sessions
        self._approval = approval
        self._cooldowns = cooldowns
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.rate_limit_max_requests, settings.rate_limit_window
        )
        self.fragments = fragments or FragmentReassembler(
            start_threshold=settings.fragment_start_threshold,
            max_parts=settings.fragment_max_parts,
            max_chars=settings.fragment_max_chars,
            time_gap=settings.fragment_time_gap,
            id_gap=settings.fragment_id_gap,
        )
        self.debouncer = debouncer or Debouncer(settings.debounce_window)
        self.coordinator = coordinator or RunCoordinator()
        self._usage_footer = usage_footer
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def cancellations(self) -> CancellationRegistry:
        return self.coordinator.cancellations

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, message: InboundMessage) -> None:
        """Entry point for every inbound (non-command) message."""
        cid = message.conversation_id

        if is_stop_phrase(message.text):
            stopped = self.cancellations.cancel(cid, reason="stop")
            await safe_send(self._transport, cid, STOPPED_MESSAGE if stopped else STOP_PHRASE_ACK)
            return

        if not self.rate_limiter.allow(cid):
            seconds = max(1, int(self.rate_limiter.remaining_cooldown(cid)))
            logger.warning("Rate limit exceeded for %s, %ds left", cid, seconds)
            await safe_send(self._transport, cid, RATE_LIMIT_MESSAGE.format(seconds=seconds))
            return

        self.submit(message)

    def submit(self, message: InboundMessage) -> Disposition:
        """Apply queue mode, then feed the message to fragment reassembly."""
        cid = message.conversation_id
        mode = self.queue_mode(cid)
        if (
            mode is not QueueMode.INTERRUPT
            and self.coordinator.is_running(cid)
            and (self.fragments.has_open_entry(cid) or self.debouncer.has_pending(cid))
        ):
            # Earlier input is still in intake; its flush reaches the run queue first
            disposition = Disposition.QUEUED
            self._intake(message)
            return disposition

        disposition = self.coordinator.handle_during_run(cid, message.text, mode)
        if disposition is Disposition.QUEUED:
            return disposition
        if disposition is Disposition.RESUBMIT:
            logger.info("Interrupted active run for %s, resubmitting message", cid)
        self._intake(message)
        return disposition

    def _intake(self, message: InboundMessage) -> None:
        cid = message.conversation_id

        async def on_assembled(unit: str) -> None:
            self._debounce(cid, unit)

        for unit in self.fragments.observe(
            cid, message.author_id, message.sequence_number, message.text, on_assembled
        ):
            self._debounce(cid, unit)

    def _debounce(self, conversation_id: str, unit: str) -> None:
        async def on_flush(combined: str) -> None:
            self._start_run(conversation_id, combined)

        self.debouncer.debounce(
            conversation_id, unit, on_flush, window=self.debounce_ms(conversation_id) / 1000
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _start_run(self, conversation_id: str, unit: str) -> None:
        if self._closed:
            return
        if self.coordinator.is_running(conversation_id):
            # An interrupted run can still be unwinding when the next unit flushes
            self.coordinator.enqueue(conversation_id, unit)
            logger.debug("Run still active for %s, queued flushed unit", conversation_id)
            return

        self.coordinator.start_run(conversation_id)
        task = asyncio.get_running_loop().create_task(
            self._run(conversation_id, unit), name=f"run:{conversation_id}"
        )
        handle = self.cancellations.register(conversation_id, task)
        self._tasks.add(task)

        def on_done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            self.cancellations.unregister(conversation_id, handle)
            queued = self.coordinator.end_run(conversation_id)
            if queued and not self._closed:
                logger.debug("Replaying %d queued unit(s) for %s", len(queued), conversation_id)
                for q in queued:
                    self._debounce(conversation_id, q)

        task.add_done_callback(on_done)

    async def _run(self, conversation_id: str, unit: str) -> None:
        logger.info("Run started for %s (%d chars)", conversation_id, len(unit))

        async def notify(text: str) -> None:
            await safe_send(self._transport, conversation_id, text)

        try:
            result = await self._runner.run(
                conversation_id,
                unit,
                self._sessions.get_history(conversation_id),
                notify=notify,
            )
        except asyncio.CancelledError:
            handle = self.cancellations.get(conversation_id)
            reason = handle.cancel_reason if handle else None
            logger.info("Run for %s cancelled (%s)", conversation_id, reason or "shutdown")
            return
        except Exception:
            logger.exception("Run for %s failed", conversation_id)
            await safe_send(self._transport, conversation_id, ERROR_MESSAGE)
            return

        logger.info(
            "Run finished for %s: %d iteration(s), tools=%s, model=%s",
            conversation_id,
            result.iterations,
            result.tools_used,
            result.model,
        )
        self._sessions.set_history(conversation_id, result.final_text)

        if result.final_text.strip() == SILENT_REPLY:
            logger.debug("Silent reply for %s suppressed", conversation_id)
            return

        text = result.final_text
        if self._usage_footer and result.usage.total_tokens:
            text = f"{text}\n\n{format_usage_footer(result.usage)}"
        await safe_send(self._transport, conversation_id, text)

    # ------------------------------------------------------------------
    # Administrative actions
    # ------------------------------------------------------------------

    def queue_mode(self, conversation_id: str) -> QueueMode:
        raw = self._sessions.get_option(conversation_id, QUEUE_MODE_OPTION)
        try:
            return QueueMode(raw) if raw else QueueMode.COLLECT
        except ValueError:
            return QueueMode.COLLECT

    def set_queue_options(
        self,
        conversation_id: str,
        mode: QueueMode | str | None = None,
        debounce_ms: int | None = None,
    ) -> None:
        """Set the queue mode and/or debounce window (0..10000 ms) for a conversation.

        Raises ValueError for an unknown mode or out-of-range window.
        """
        if mode is not None:
            mode = QueueMode(mode)
        if debounce_ms is not None and not 0 <= debounce_ms <= MAX_DEBOUNCE_MS:
            raise ValueError(f"debounce_ms must be between 0 and {MAX_DEBOUNCE_MS}")

        if mode is not None:
            self._sessions.set_option(conversation_id, QUEUE_MODE_OPTION, mode.value)
        if debounce_ms is not None:
            self._sessions.set_option(conversation_id, DEBOUNCE_MS_OPTION, str(debounce_ms))
        logger.info(
            "Queue options for %s: mode=%s debounce_ms=%s",
            conversation_id,
            self.queue_mode(conversation_id),
            self.debounce_ms(conversation_id),
        )

    def debounce_ms(self, conversation_id: str) -> int:
        """Debounce window from the session options, else the configured default."""
        raw = self._sessions.get_option(conversation_id, DEBOUNCE_MS_OPTION)
        try:
            value = int(raw) if raw is not None else None
        except ValueError:
            value = None
        if value is None or not 0 <= value <= MAX_DEBOUNCE_MS:
            return int(self.debouncer.window_for(conversation_id) * 1000)
        return value

    async def stop(self, conversation_id: str) -> bool:
        """Cancel the active run and tell the conversation. False if nothing ran."""
        stopped = self.cancellations.cancel(conversation_id, reason="stop")
        await safe_send(
            self._transport,
            conversation_id,
            STOPPED_MESSAGE if stopped else NOTHING_TO_STOP_MESSAGE,
        )
        return stopped

    def decide(self, request_id: str, approved: bool) -> bool:
        """Approve or deny a pending command. False if unknown or already resolved."""
        if self._approval is None:
            return False
        return self._approval.handle_decision(request_id, approved)

    def new_session(self, conversation_id: str) -> None:
        self._sessions.clear(conversation_id)

    def status(self) -> dict[str, Any]:
        running = self.coordinator.running()
        return {
            "running": running,
            "queued": {cid: self.coordinator.queue_depth(cid) for cid in running},
            "debounce_pending": self.debouncer.pending_count(),
            "pending_approvals": self._approval.pending_count() if self._approval else 0,
            "model_cooldowns": self._cooldowns.snapshot() if self._cooldowns else {},
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait until pending timers, in-flight runs and their replays finish."""
        while True:
            await self.fragments.drain()
            await self.debouncer.drain()
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop timers, cancel active runs and wait for them to unwind."""
        self._closed = True
        self.fragments.stop()
        self.debouncer.stop()
        for cid in self.cancellations.active():
            self.cancellations.cancel(cid, reason="shutdown")
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Orchestrator closed")
