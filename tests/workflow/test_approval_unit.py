"""Unit tests for the approval gate and the approval queue."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from stageflow.approval.gate import ApprovalGate, ApprovalPolicy
from stageflow.approval.queue import ApprovalNotFoundError, ApprovalQueue
from stageflow.state.context import ProjectContext
from stageflow.state.models import RunState


def run_async(coro):
    return asyncio.run(coro)


def _make_snapshot(request: str = "Build a todo app") -> RunState:
    return ProjectContext.create(request).snapshot()


# ---------------------------------------------------------------------------
# ApprovalGate
# ---------------------------------------------------------------------------


class TestApprovalGate:
    def test_auto_approve_skips_handler(self):
        handler = MagicMock(return_value=False)
        gate = ApprovalGate(handler, ApprovalPolicy(auto_approve=True))

        assert run_async(gate.decide("step_1", "Approve?", None, _make_snapshot()))
        handler.assert_not_called()

    def test_no_handler_declines_by_default(self):
        gate = ApprovalGate()
        assert not run_async(gate.decide("step_1", "Approve?", None, _make_snapshot()))

    def test_no_handler_fail_open(self):
        gate = ApprovalGate(policy=ApprovalPolicy(fail_open=True))
        assert run_async(gate.decide("step_1", "Approve?", None, _make_snapshot()))

    def test_sync_handler(self):
        snapshot = _make_snapshot()
        handler = MagicMock(return_value=True)
        gate = ApprovalGate(handler)

        approved = run_async(gate.decide("step_1", "Approve?", {"plan": 1}, snapshot))

        assert approved is True
        handler.assert_called_once_with("step_1", "Approve?", {"plan": 1}, snapshot)

    def test_async_handler(self):
        handler = AsyncMock(return_value=False)
        gate = ApprovalGate(handler)

        approved = run_async(gate.decide("step_1", "Approve?", None, _make_snapshot()))

        assert approved is False
        handler.assert_awaited_once()

    def test_truthy_decision_is_coerced(self):
        gate = ApprovalGate(lambda *args: "yes")
        assert run_async(gate.decide("step_1", "Approve?", None, _make_snapshot())) is True

    def test_handler_errors_propagate(self):
        gate = ApprovalGate(MagicMock(side_effect=RuntimeError("reviewer offline")))
        with pytest.raises(RuntimeError):
            run_async(gate.decide("step_1", "Approve?", None, _make_snapshot()))


# ---------------------------------------------------------------------------
# ApprovalQueue
# ---------------------------------------------------------------------------


class TestApprovalQueue:
    def test_resolve_delivers_decision(self):
        queue = ApprovalQueue()
        snapshot = _make_snapshot()

        async def scenario():
            waiter = asyncio.ensure_future(
                queue("step_1", "Approve?", {"plan": 1}, snapshot)
            )
            await asyncio.sleep(0)
            pending = queue.pending(snapshot.id)
            queue.resolve(snapshot.id, "step_1", True)
            return pending, await waiter

        pending, approved = run_async(scenario())

        assert approved is True
        assert [(p.run_id, p.step_id, p.payload) for p in pending] == [
            (snapshot.id, "step_1", {"plan": 1})
        ]
        assert queue.pending() == []

    def test_pending_filters_by_run(self):
        queue = ApprovalQueue()
        first, second = _make_snapshot("first"), _make_snapshot("second")

        async def scenario():
            waiters = [
                asyncio.ensure_future(queue("step_1", "Approve?", None, first)),
                asyncio.ensure_future(queue("step_2", "Approve?", None, second)),
            ]
            await asyncio.sleep(0)
            listed = (queue.pending(), queue.pending(first.id))
            queue.resolve(first.id, "step_1", False)
            queue.resolve(second.id, "step_2", True)
            return listed, await asyncio.gather(*waiters)

        (everything, only_first), decisions = run_async(scenario())

        assert len(everything) == 2
        assert [p.step_id for p in only_first] == ["step_1"]
        assert decisions == [False, True]

    def test_resolve_unknown_raises(self):
        queue = ApprovalQueue()
        with pytest.raises(ApprovalNotFoundError) as exc_info:
            queue.resolve("run_x", "step_1", True)
        assert exc_info.value.run_id == "run_x"
        assert exc_info.value.step_id == "step_1"

    def test_cancel_run_declines_waiting_approvals(self):
        queue = ApprovalQueue()
        snapshot = _make_snapshot()

        async def scenario():
            waiter = asyncio.ensure_future(queue("step_1", "Approve?", None, snapshot))
            await asyncio.sleep(0)
            declined = queue.cancel_run(snapshot.id)
            return declined, await waiter

        declined, approved = run_async(scenario())

        assert declined == 1
        assert approved is False
        assert queue.pending() == []

    def test_cancel_run_without_waiters(self):
        assert ApprovalQueue().cancel_run("run_x") == 0
