"""Approval gate for phases that need human sign-off before advancing."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Protocol

from rolloutgate.errors import ApprovalNotPending
from rolloutgate.models import ApprovalDecision


class ApprovalGate(Protocol):
    async def await_approval(self, rollout_id: str, phase_index: int) -> ApprovalDecision:
        """Suspend until an approval verdict arrives. No deadline is imposed."""
        ...


def _normalize_identity(value: str) -> str:
    return value.strip().lower()


@dataclass
class _PendingApproval:
    rollout_id: str
    phase_index: int
    requested_at: datetime
    future: asyncio.Future[ApprovalDecision]
    loop: asyncio.AbstractEventLoop


class InMemoryApprovalGate:
    """Approval requests held in process, resolved by grant/deny calls.

    Safe to resolve from any thread; the waiting controller is woken on its
    own event loop.
    """

    def __init__(self) -> None:
        self._pending: dict[tuple[str, int], _PendingApproval] = {}
        self._lock = RLock()

    async def await_approval(self, rollout_id: str, phase_index: int) -> ApprovalDecision:
        loop = asyncio.get_running_loop()
        key = (rollout_id, phase_index)
        with self._lock:
            existing = self._pending.get(key)
            if existing is not None and not existing.future.done():
                future = existing.future
            else:
                future = loop.create_future()
                self._pending[key] = _PendingApproval(
                    rollout_id=rollout_id,
                    phase_index=phase_index,
                    requested_at=datetime.now(UTC),
                    future=future,
                    loop=loop,
                )
        try:
            return await asyncio.shield(future)
        finally:
            with self._lock:
                current = self._pending.get(key)
                if current is not None and current.future is future and future.done():
                    self._pending.pop(key, None)

    def grant(
        self, rollout_id: str, phase_index: int, approver: str, comment: str | None = None
    ) -> ApprovalDecision:
        return self._resolve(rollout_id, phase_index, True, approver, comment)

    def deny(
        self, rollout_id: str, phase_index: int, approver: str, comment: str | None = None
    ) -> ApprovalDecision:
        return self._resolve(rollout_id, phase_index, False, approver, comment)

    def is_pending(self, rollout_id: str, phase_index: int) -> bool:
        with self._lock:
            pending = self._pending.get((rollout_id, phase_index))
            return pending is not None and not pending.future.done()

    def cancel(self, rollout_id: str) -> None:
        """Drop outstanding requests for a rollout (abort or shutdown)."""
        with self._lock:
            keys = [key for key in self._pending if key[0] == rollout_id]
            for key in keys:
                pending = self._pending.pop(key)
                if not pending.future.done():
                    pending.loop.call_soon_threadsafe(pending.future.cancel)

    def list_pending(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "rollout_id": pending.rollout_id,
                    "phase_index": pending.phase_index,
                    "requested_at": pending.requested_at.isoformat(),
                }
                for pending in sorted(
                    self._pending.values(), key=lambda item: item.requested_at
                )
                if not pending.future.done()
            ]

    def _resolve(
        self,
        rollout_id: str,
        phase_index: int,
        approved: bool,
        approver: str,
        comment: str | None,
    ) -> ApprovalDecision:
        identity = _normalize_identity(approver)
        if not identity:
            raise ValueError("approver must be non-empty")
        decision = ApprovalDecision(
            approved=approved,
            approver=identity,
            comment=comment,
        )
        with self._lock:
            pending = self._pending.get((rollout_id, phase_index))
            if pending is None or pending.future.done():
                raise ApprovalNotPending(rollout_id, phase_index)
            pending.loop.call_soon_threadsafe(_set_result, pending.future, decision)
        return decision


def _set_result(future: asyncio.Future[ApprovalDecision], decision: ApprovalDecision) -> None:
    if not future.done():
        future.set_result(decision)
