"""Approval gate tests."""

from __future__ import annotations

import asyncio

import pytest

from rolloutgate.approvals import InMemoryApprovalGate
from rolloutgate.errors import ApprovalNotPending


@pytest.mark.asyncio
async def test_grant_resolves_waiting_phase() -> None:
    gate = InMemoryApprovalGate()
    waiter = asyncio.create_task(gate.await_approval("r-1", 0))
    await asyncio.sleep(0)

    assert gate.is_pending("r-1", 0)
    assert gate.list_pending()[0]["rollout_id"] == "r-1"
    gate.grant("r-1", 0, "  Alice@Example.com ", "looks good")
    decision = await asyncio.wait_for(waiter, 1)

    assert decision.approved is True
    assert decision.approver == "alice@example.com"
    assert decision.comment == "looks good"
    assert gate.is_pending("r-1", 0) is False
    assert gate.list_pending() == []


@pytest.mark.asyncio
async def test_deny_resolves_with_rejection() -> None:
    gate = InMemoryApprovalGate()
    waiter = asyncio.create_task(gate.await_approval("r-1", 2))
    await asyncio.sleep(0)

    gate.deny("r-1", 2, "bob")

    decision = await asyncio.wait_for(waiter, 1)
    assert decision.approved is False


def test_decision_without_pending_request_is_rejected() -> None:
    gate = InMemoryApprovalGate()

    with pytest.raises(ApprovalNotPending):
        gate.grant("r-1", 0, "alice")


@pytest.mark.asyncio
async def test_blank_approver_is_rejected() -> None:
    gate = InMemoryApprovalGate()
    waiter = asyncio.create_task(gate.await_approval("r-1", 0))
    await asyncio.sleep(0)

    with pytest.raises(ValueError):
        gate.grant("r-1", 0, "   ")

    assert gate.is_pending("r-1", 0)
    waiter.cancel()


@pytest.mark.asyncio
async def test_rewaiting_reuses_outstanding_request() -> None:
    gate = InMemoryApprovalGate()
    first = asyncio.create_task(gate.await_approval("r-1", 0))
    await asyncio.sleep(0)
    first.cancel()
    await asyncio.gather(first, return_exceptions=True)

    # A cancelled waiter leaves the request open for the next poll.
    assert gate.is_pending("r-1", 0)
    second = asyncio.create_task(gate.await_approval("r-1", 0))
    await asyncio.sleep(0)
    gate.grant("r-1", 0, "alice")

    assert (await asyncio.wait_for(second, 1)).approved is True


@pytest.mark.asyncio
async def test_cancel_drops_requests_for_rollout() -> None:
    gate = InMemoryApprovalGate()
    waiter = asyncio.create_task(gate.await_approval("r-1", 0))
    other = asyncio.create_task(gate.await_approval("r-2", 0))
    await asyncio.sleep(0)

    gate.cancel("r-1")
    await asyncio.sleep(0)

    assert gate.is_pending("r-1", 0) is False
    assert gate.is_pending("r-2", 0) is True
    with pytest.raises(asyncio.CancelledError):
        await waiter
    other.cancel()
