"""Tests for parley/approval.py -- destructive command gating."""

import asyncio

import pytest

from parley.approval import TIMEOUT_NOTICE, ApprovalGate, is_dangerous


class TestIsDangerous:
    """Denylist matching."""

    @pytest.mark.parametrize(
        "command",
        ["rm -rf /tmp/x", "sudo REBOOT", "echo 1 > /dev/sda", "psql -c 'DROP TABLE users'", "killall node"],
    )
    def test_dangerous(self, command):
        assert is_dangerous(command)

    @pytest.mark.parametrize("command", ["ls -la", "cat notes.txt", "git status"])
    def test_safe(self, command):
        assert not is_dangerous(command)


class TestRequestAndDecide:
    """Prompting and exactly-once resolution."""

    @pytest.mark.asyncio
    async def test_approve(self, transport):
        gate = ApprovalGate(transport, timeout=5)

        future, request_id = await gate.request_approval("c", "rm -rf build")

        assert transport.prompts == [("c", request_id, "rm -rf build")]
        assert gate.pending_count() == 1
        assert gate.handle_decision(request_id, True)
        assert await future is True
        assert gate.pending_count() == 0

    @pytest.mark.asyncio
    async def test_second_decision_is_noop(self, transport):
        gate = ApprovalGate(transport, timeout=5)
        future, request_id = await gate.request_approval("c", "rm -rf build")

        assert gate.handle_decision(request_id, False)
        assert not gate.handle_decision(request_id, True)
        assert await future is False

    @pytest.mark.asyncio
    async def test_unknown_request(self, transport):
        gate = ApprovalGate(transport)
        assert not gate.handle_decision("nope", True)

    @pytest.mark.asyncio
    async def test_timeout_denies_once_and_notifies(self, transport):
        gate = ApprovalGate(transport, timeout=0.02)

        future, request_id = await gate.request_approval("c", "rm -rf build")
        assert await asyncio.wait_for(future, 1) is False
        await asyncio.sleep(0.01)

        assert transport.texts("c") == [TIMEOUT_NOTICE]
        assert not gate.handle_decision(request_id, True)

    @pytest.mark.asyncio
    async def test_prompt_failure_denies(self, transport):
        transport.fail = True
        gate = ApprovalGate(transport, timeout=5)
        future, _ = await gate.request_approval("c", "rm -rf build")
        assert future.done() and future.result() is False


class TestWaitForApproval:
    """The blocking path used by the command tool."""

    @pytest.mark.asyncio
    async def test_safe_command_skips_prompt(self, transport):
        gate = ApprovalGate(transport)
        assert await gate.wait_for_approval("c", "ls") is True
        assert transport.prompts == []

    @pytest.mark.asyncio
    async def test_waits_for_decision(self, transport):
        gate = ApprovalGate(transport, timeout=5)

        waiter = asyncio.create_task(gate.wait_for_approval("c", "rm -rf build"))
        while not transport.prompts:
            await asyncio.sleep(0)
        gate.handle_decision(transport.prompts[0][1], True)

        assert await waiter is True

    @pytest.mark.asyncio
    async def test_cancelled_wait_denies(self, transport):
        gate = ApprovalGate(transport, timeout=5)

        waiter = asyncio.create_task(gate.wait_for_approval("c", "rm -rf build"))
        while not transport.prompts:
            await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert gate.pending_count() == 0
        assert not gate.handle_decision(transport.prompts[0][1], True)


class TestSweep:
    """Stale pending requests are dropped."""

    @pytest.mark.asyncio
    async def test_sweep_stale(self, transport):
        now = [0.0]
        gate = ApprovalGate(transport, timeout=600, retention=120, clock=lambda: now[0])

        old, _ = await gate.request_approval("c", "rm -rf a")
        now[0] = 100.0
        fresh, _ = await gate.request_approval("c", "rm -rf b")
        now[0] = 150.0

        assert gate.sweep_stale() == 1
        assert old.result() is False
        assert not fresh.done()
        await gate.stop()
        assert fresh.result() is False
